from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Generic, Literal, Optional, TypeVar, Union
from psycopg import sql
from psycopg.types.json import Jsonb

from thesis_grader_db.identifiers import ident

RowT = TypeVar("RowT")
SortDirection = Literal["asc", "desc"]

# Filter values of these types mean "column is a member of".
VALUE_SET_TYPES = (list, tuple, set, frozenset)


class _Unset:
	"""
	Marker for "field not provided". Stripped from payloads and filters before SQL is built,
	unlike None which always means SQL NULL.
	"""
	_instance: Optional["_Unset"] = None

	def __new__(cls):
		if cls._instance is None:
			cls._instance = super().__new__(cls)
		return cls._instance

	def __repr__(self) -> str:
		return "UNSET"

	def __bool__(self) -> bool:
		return False


UNSET: Any = _Unset()


@dataclass(frozen=True)
class SqlFragment:
	"""
	Piece of SQL together with the values for its placeholders, in placeholder order.
	"""
	sql: sql.Composable
	params: tuple[Any, ...] = ()

	@property
	def placeholder_count(self) -> int:
		return len(self.params)

	def as_string(self) -> str:
		return self.sql.as_string(None)


@dataclass(frozen=True)
class ListQuery:
	"""
	Declarative filter/sort/paging descriptor accepted by the readonly accessors.
	"""
	where: Optional[Mapping[str, Any]] = None
	order_by: Optional[str] = None
	order_direction: Optional[str] = None
	limit: Any = None
	offset: Any = None

	_KEYS = ("where", "order_by", "order_direction", "limit", "offset")

	@classmethod
	def coerce(cls, query: Union["ListQuery", Mapping[str, Any], None]) -> "ListQuery":
		"""
		Accept a ListQuery, a plain mapping with the same keys, or None.
		"""
		if query is None:
			return cls()
		if isinstance(query, cls):
			return query
		if isinstance(query, Mapping):
			unknown = sorted(set(query.keys()) - set(cls._KEYS))
			if unknown:
				raise ValueError(f"Unknown query descriptor keys: {unknown}")
			return cls(**dict(query))
		raise TypeError("query must be a ListQuery, a mapping, or None.")

	def with_where(self, where: Optional[Mapping[str, Any]]) -> "ListQuery":
		return replace(self, where=where)


@dataclass
class PageResult(Generic[RowT]):
	items: list[RowT]
	total: int
	limit: int
	offset: int


def strip_unset(record: Optional[Mapping[str, Any]]) -> dict[str, Any]:
	if not record:
		return {}
	return {k: v for k, v in record.items() if v is not UNSET}


def adapt_value(value: Any) -> Any:
	"""
	Wrap mapping values as JSONB; everything else is left to the driver's adapters.
	"""
	if isinstance(value, Mapping):
		return Jsonb(dict(value))
	return value


def normalize_limit(value: Any) -> Optional[int]:
	if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
		return None
	return value


def normalize_offset(value: Any) -> Optional[int]:
	if isinstance(value, bool) or not isinstance(value, int) or value < 0:
		return None
	return value


def compose(*parts: Union[SqlFragment, sql.Composable, str, None], sep: str = " ") -> SqlFragment:
	"""
	Join fragments into one statement, concatenating their parameters in the same order.

	This is the only place placeholders from different clauses meet, so the parameter list
	always lines up with the %s markers left to right (SET values before WHERE values, etc.).
	None parts are skipped, which lets optional clauses be passed through unchanged.
	"""
	pieces: list[sql.Composable] = []
	params: list[Any] = []
	for part in parts:
		if part is None:
			continue
		if isinstance(part, str):
			part = SqlFragment(sql.SQL(part))
		elif isinstance(part, sql.Composable):
			part = SqlFragment(part)
		pieces.append(part.sql)
		params.extend(part.params)
	return SqlFragment(sql.SQL(sep).join(pieces), tuple(params))


def build_where(where: Optional[Mapping[str, Any]]) -> Optional[SqlFragment]:
	"""
	Compile an equality filter mapping into a WHERE clause.

	    {"status": "active"}     -> "status" = %s
	    {"id": ["a", "b"]}       -> "id" = ANY(%s)
	    {"id": []}               -> FALSE
	    {"read_at": None}        -> "read_at" IS NULL

	UNSET entries are skipped; returns None when no predicate remains (matches all rows).
	"""
	entries = strip_unset(where)
	if not entries:
		return None

	predicates: list[sql.Composable] = []
	params: list[Any] = []
	for column, value in entries.items():
		col = ident(column)
		if value is None:
			predicates.append(sql.SQL("{} IS NULL").format(col))
		elif isinstance(value, VALUE_SET_TYPES):
			if not value:
				predicates.append(sql.SQL("FALSE"))
				continue
			predicates.append(sql.SQL("{} = ANY({})").format(col, sql.Placeholder()))
			params.append([adapt_value(v) for v in value])
		else:
			predicates.append(sql.SQL("{} = {}").format(col, sql.Placeholder()))
			params.append(adapt_value(value))

	return SqlFragment(sql.SQL("WHERE ") + sql.SQL(" AND ").join(predicates), tuple(params))


def build_assignments(patch: Optional[Mapping[str, Any]]) -> Optional[SqlFragment]:
	"""
	Compile a patch mapping into a SET clause; None when nothing is left after stripping UNSET.
	"""
	entries = strip_unset(patch)
	if not entries:
		return None
	assignments = [
		sql.SQL("{} = {}").format(ident(column), sql.Placeholder())
		for column in entries
	]
	return SqlFragment(
		sql.SQL("SET ") + sql.SQL(", ").join(assignments),
		tuple(adapt_value(v) for v in entries.values()),
	)


def build_order_by(order_by: Optional[str], order_direction: Optional[str] = None) -> Optional[SqlFragment]:
	if not isinstance(order_by, str) or not order_by.strip():
		return None
	direction = "DESC" if order_direction == "desc" else "ASC"
	return SqlFragment(sql.SQL("ORDER BY {} {}").format(ident(order_by), sql.SQL(direction)))


def build_paging(limit: Any = None, offset: Any = None) -> Optional[SqlFragment]:
	"""
	LIMIT/OFFSET bound as parameters; values that are not valid integers are left out.
	"""
	limit = normalize_limit(limit)
	offset = normalize_offset(offset)
	parts: list[SqlFragment] = []
	if limit is not None:
		parts.append(SqlFragment(sql.SQL("LIMIT {}").format(sql.Placeholder()), (limit,)))
	if offset is not None:
		parts.append(SqlFragment(sql.SQL("OFFSET {}").format(sql.Placeholder()), (offset,)))
	if not parts:
		return None
	return compose(*parts)
