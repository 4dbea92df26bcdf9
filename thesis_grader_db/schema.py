from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from psycopg import sql

from thesis_grader_db.identifiers import ident, quote, split_identifier

logger = logging.getLogger(__name__)


def _column_type_sql(c: Mapping[str, Any]) -> str:
    t = str(c["type"]).lower()

    if t in {"uuid", "text", "boolean", "timestamp", "timestamptz", "date", "json", "jsonb"}:
        return t

    if t in {"varchar", "character varying"}:
        n = c.get("length")
        if not n:
            raise ValueError(f"varchar column '{c['name']}' missing length")
        return f"varchar({int(n)})"

    if t in {"int", "integer"}:
        return "integer"

    if t in {"bigint", "smallint"}:
        return t

    if t in {"numeric", "decimal"}:
        prec = c.get("precision")
        scale = c.get("scale")
        if prec is not None and scale is not None:
            return f"numeric({int(prec)},{int(scale)})"
        if prec is not None:
            return f"numeric({int(prec)})"
        return "numeric"

    raise ValueError(f"Unsupported column type: {c['type']} (column {c.get('name')})")


def _default_sql(value: Any) -> str:
    """
    Defaults are SQL expressions taken from trusted table configs (NOW(), '{}'::jsonb, ...),
    never from request data.
    """
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if value is None:
        return "NULL"
    return str(value)


def _column_sql(c: Mapping[str, Any]) -> str:
    bits = [quote(c["name"]), _column_type_sql(c)]
    if c.get("primary_key", False):
        bits.append("PRIMARY KEY")
    elif not c.get("nullable", True):
        bits.append("NOT NULL")
    else:
        bits.append("NULL")
    if c.get("unique", False) and not c.get("primary_key", False):
        bits.append("UNIQUE")
    if c.get("default") is not None:
        bits.append(f"DEFAULT {_default_sql(c['default'])}")

    fk = c.get("foreign_key")
    if fk:
        bits.append(f"REFERENCES {quote(fk['table'])}({quote(fk['column'])})")
        on_delete = fk.get("on_delete")
        if on_delete:
            bits.append(f"ON DELETE {on_delete.upper()}")
    return " ".join(bits)


def qualified_table_name(config: Mapping[str, Any]) -> str:
    table = config["table_name"]
    schema = config.get("schema")
    if schema and len(split_identifier(table)) == 1:
        return f"{schema}.{table}"
    return table


def create_table_sql(config: Mapping[str, Any]) -> sql.Composable:
    """
    CREATE TABLE IF NOT EXISTS statement for a table config dict:

        {
            "table_name": "push_subscriptions",
            "schema": "public",
            "columns": [{"name": "id", "type": "uuid", "primary_key": True}, ...],
            "indexes": [{"name": "idx_x", "columns": ["user_id"]}],
        }
    """
    columns_cfg = config.get("columns", [])
    if not columns_cfg:
        raise ValueError(f"Table config for {config.get('table_name')!r} has no columns.")
    columns = ",\n  ".join(_column_sql(c) for c in columns_cfg)
    return sql.SQL("CREATE TABLE IF NOT EXISTS {} (\n  {}\n)").format(
        ident(qualified_table_name(config)),
        sql.SQL(columns),
    )


def create_index_sql(config: Mapping[str, Any], index: Mapping[str, Any]) -> sql.Composable:
    """
    Index columns may be "name" or "name DESC".
    """
    parts = []
    for col in index["columns"]:
        name, _, direction = str(col).partition(" ")
        direction = direction.strip().upper()
        if direction not in {"", "ASC", "DESC"}:
            raise ValueError(f"Unsupported index direction: {col!r}")
        parts.append(quote(name) + (f" {direction}" if direction else ""))
    unique = "UNIQUE " if index.get("unique", False) else ""
    return sql.SQL("CREATE {}INDEX IF NOT EXISTS {} ON {} ({})").format(
        sql.SQL(unique),
        ident(index["name"]),
        ident(qualified_table_name(config)),
        sql.SQL(", ".join(parts)),
    )


async def ensure_table(executor, config: Mapping[str, Any]) -> None:
    """Create the configured table and its indexes when they do not exist yet."""
    await executor.query(create_table_sql(config))
    for index in config.get("indexes", []):
        await executor.query(create_index_sql(config, index))
    logger.debug("Ensured table %s", qualified_table_name(config))


class SchemaGate:
    """
    Runs a provisioning coroutine at most once successfully.

    Concurrent callers wait on the same attempt. A failed attempt is not remembered, so the
    next caller tries again.
    """

    def __init__(self, provision: Callable[[], Awaitable[None]]):
        self._provision = provision
        self._lock = asyncio.Lock()
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def ensure(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if self._ready:
                return
            await self._provision()
            self._ready = True


PUSH_SUBSCRIPTIONS_TABLE: dict[str, Any] = {
    "table_name": "push_subscriptions",
    "schema": "public",
    "columns": [
        {"name": "id", "type": "uuid", "primary_key": True},
        {
            "name": "user_id",
            "type": "uuid",
            "nullable": False,
            "foreign_key": {"table": "public.users", "column": "id", "on_delete": "cascade"},
        },
        {"name": "endpoint", "type": "text", "nullable": False, "unique": True},
        {"name": "p256dh", "type": "text", "nullable": False},
        {"name": "auth", "type": "text", "nullable": False},
        {"name": "content_encoding", "type": "text", "nullable": True},
        {"name": "subscription", "type": "jsonb", "nullable": False, "default": "'{}'::jsonb"},
        {"name": "created_at", "type": "timestamptz", "nullable": False, "default": "NOW()"},
        {"name": "updated_at", "type": "timestamptz", "nullable": False, "default": "NOW()"},
    ],
    "indexes": [
        {"name": "idx_push_subscriptions_user_id", "columns": ["user_id"]},
        {"name": "idx_push_subscriptions_updated_at", "columns": ["updated_at DESC"]},
    ],
}
