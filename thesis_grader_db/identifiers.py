import re
from psycopg import sql

SAFE_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class UnsafeIdentifierError(ValueError):
	"""
	Raised when a table/column name is not a plain SQL identifier.

	Identifiers come from code, never from request bodies, so this always points at a
	programming defect and is not meant to be shown to end users.
	"""


def split_identifier(identifier) -> tuple[str, ...]:
	"""
	Validate 'name' or 'qualifier.name' and return its segments.

	Segments are matched as given: surrounding whitespace is rejected, never trimmed.
	"""
	if not isinstance(identifier, str):
		raise UnsafeIdentifierError(f"Unsafe SQL identifier: {identifier!r}")
	parts = identifier.split(".")
	if len(parts) > 2:
		raise UnsafeIdentifierError(f"Unsafe SQL identifier: {identifier!r}")
	for part in parts:
		if not SAFE_IDENTIFIER.fullmatch(part):
			raise UnsafeIdentifierError(f"Unsafe SQL identifier: {identifier!r}")
	return tuple(parts)


def ident(identifier: str) -> sql.Identifier:
	"""
	Composable for a validated identifier, for use inside psycopg sql.SQL(...).format(...) templates.
	"""
	return sql.Identifier(*split_identifier(identifier))


def quote(identifier: str) -> str:
	"""
	Return the double-quoted form of a validated identifier, e.g. 'public.users' -> '"public"."users"'.
	"""
	return ident(identifier).as_string(None)
