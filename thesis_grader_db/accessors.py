import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Generic, Iterable, Optional, TypeVar, Union
from psycopg import sql

from thesis_grader_db.client import Queryable
from thesis_grader_db.identifiers import ident
from thesis_grader_db.sql_builder import (
	ListQuery,
	PageResult,
	SqlFragment,
	adapt_value,
	build_assignments,
	build_order_by,
	build_paging,
	build_where,
	compose,
	normalize_limit,
	normalize_offset,
	strip_unset,
)

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT")
InsertT = TypeVar("InsertT")
PatchT = TypeVar("PatchT")

QueryArg = Union[ListQuery, Mapping[str, Any], None]


def _parse_count(row: Optional[Mapping[str, Any]]) -> int:
	if not row:
		return 0
	raw = row.get("count")
	try:
		return int(raw)
	except (TypeError, ValueError):
		return 0


class ReadonlyTableService(Generic[RowT]):
	"""
	Generic read access to one table or view.

	The relation name is validated when the service is constructed, so a bad name fails
	before any query is attempted.
	"""

	def __init__(self, executor: Queryable, relation: str):
		self.executor = executor
		self.relation = relation
		self._relation_sql = ident(relation)

	def __repr__(self) -> str:
		return f"<{self.__class__.__name__} {self.relation}>"

	async def _fetch(self, fragment: SqlFragment) -> list[RowT]:
		result = await self.executor.query(fragment.sql, fragment.params)
		return result.rows

	async def _fetch_one(self, fragment: SqlFragment) -> Optional[RowT]:
		rows = await self._fetch(fragment)
		return rows[0] if rows else None

	async def _rowcount(self, fragment: SqlFragment) -> int:
		result = await self.executor.query(fragment.sql, fragment.params)
		return result.rowcount

	async def find_one(self, where: Optional[Mapping[str, Any]] = None) -> Optional[RowT]:
		"""First row matching the filter, or None."""
		return await self._fetch_one(compose(
			sql.SQL("SELECT * FROM {}").format(self._relation_sql),
			build_where(where),
			"LIMIT 1",
		))

	async def find_many(self, query: QueryArg = None) -> list[RowT]:
		"""
		All rows matching query.where, sorted by query.order_by and paged by limit/offset.
		"""
		q = ListQuery.coerce(query)
		return await self._fetch(compose(
			sql.SQL("SELECT * FROM {}").format(self._relation_sql),
			build_where(q.where),
			build_order_by(q.order_by, q.order_direction),
			build_paging(q.limit, q.offset),
		))

	async def count(self, where: Optional[Mapping[str, Any]] = None) -> int:
		rows = await self._fetch(compose(
			sql.SQL("SELECT COUNT(*)::int AS count FROM {}").format(self._relation_sql),
			build_where(where),
		))
		return _parse_count(rows[0] if rows else None)

	async def exists(self, where: Optional[Mapping[str, Any]] = None) -> bool:
		inner = compose(
			sql.SQL("SELECT 1 FROM {}").format(self._relation_sql),
			build_where(where),
		)
		rows = await self._fetch(compose(
			SqlFragment(sql.SQL("SELECT EXISTS(")),
			inner,
			SqlFragment(sql.SQL(') AS "exists"')),
			sep="",
		))
		return bool(rows and rows[0].get("exists"))

	async def find_page(self, query: QueryArg = None) -> PageResult[RowT]:
		"""
		One page of rows plus the total count of rows matching the filter (ignoring paging).
		"""
		q = ListQuery.coerce(query)
		items, total = await asyncio.gather(self.find_many(q), self.count(q.where))
		limit = normalize_limit(q.limit)
		offset = normalize_offset(q.offset)
		return PageResult(
			items=items,
			total=total,
			limit=limit if limit is not None else len(items),
			offset=offset if offset is not None else 0,
		)


class _InsertMixin:
	relation: str
	_relation_sql: sql.Composable

	def _insert_fragment(self, record: dict[str, Any]) -> SqlFragment:
		if not record:
			return SqlFragment(
				sql.SQL("INSERT INTO {} DEFAULT VALUES RETURNING *").format(self._relation_sql)
			)
		columns = sql.SQL(", ").join(ident(column) for column in record)
		placeholders = sql.SQL(", ").join([sql.Placeholder()] * len(record))
		return SqlFragment(
			sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
				self._relation_sql, columns, placeholders,
			),
			tuple(adapt_value(v) for v in record.values()),
		)

	def _delete_fragment(self, where: Optional[Mapping[str, Any]]) -> SqlFragment:
		return compose(
			sql.SQL("DELETE FROM {}").format(self._relation_sql),
			build_where(where),
		)


class TableService(_InsertMixin, ReadonlyTableService[RowT], Generic[RowT, InsertT, PatchT]):
	"""
	Readonly access plus create/update/delete/upsert.

	Payload keys set to UNSET (or missing) are left out of the generated statement;
	None is written as NULL.
	"""

	async def create(self, payload: InsertT) -> RowT:
		record = strip_unset(payload)
		return await self._fetch_one(self._insert_fragment(record))

	async def create_many(self, payloads: Iterable[InsertT]) -> list[RowT]:
		"""
		Insert rows one at a time, in order. Rows inserted before a failure stay inserted unless
		the caller runs this inside a transaction.
		"""
		out: list[RowT] = []
		for payload in payloads:
			out.append(await self.create(payload))
		return out

	async def update(self, where: Optional[Mapping[str, Any]], patch: PatchT) -> list[RowT]:
		"""
		Apply patch to every row matching where and return the updated rows.

		An empty patch is a no-op and issues no statement.
		"""
		assignments = build_assignments(patch)
		if assignments is None:
			return []
		return await self._fetch(compose(
			sql.SQL("UPDATE {}").format(self._relation_sql),
			assignments,
			build_where(where),
			"RETURNING *",
		))

	async def update_one(self, where: Optional[Mapping[str, Any]], patch: PatchT) -> Optional[RowT]:
		rows = await self.update(where, patch)
		return rows[0] if rows else None

	async def delete(self, where: Optional[Mapping[str, Any]]) -> int:
		"""Delete matching rows; returns the number removed."""
		return await self._rowcount(self._delete_fragment(where))

	async def upsert(
		self,
		where: Mapping[str, Any],
		create: InsertT,
		patch: Optional[PatchT] = None,
	) -> RowT:
		"""
		Return the row matching where, creating it from create when absent.

		Not atomic: two concurrent callers may both miss and both insert. Rely on a unique
		constraint (or ON CONFLICT in a dedicated method) where that matters.
		"""
		existing = await self.find_one(where)
		if existing is None:
			return await self.create(create)
		if patch is None:
			return existing
		updated = await self.update_one(where, patch)
		return updated if updated is not None else existing


class JoinTableService(_InsertMixin, ReadonlyTableService[RowT], Generic[RowT, InsertT]):
	"""
	Association table: rows are created and deleted, never updated.
	"""

	async def create(self, payload: InsertT) -> RowT:
		record = strip_unset(payload)
		if not record:
			raise ValueError(f"Cannot insert empty payload into {self.relation}")
		return await self._fetch_one(self._insert_fragment(record))

	async def create_many(self, payloads: Iterable[InsertT]) -> list[RowT]:
		out: list[RowT] = []
		for payload in payloads:
			out.append(await self.create(payload))
		return out

	async def delete(self, where: Optional[Mapping[str, Any]]) -> int:
		return await self._rowcount(self._delete_fragment(where))
