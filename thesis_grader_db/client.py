import asyncio
import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Iterable, Optional, Protocol
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from thesis_grader_db.config import DatabaseConfig, assert_database_config

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
	"""
	Rows (as dicts) and affected-row count of one executed statement.
	"""
	rows: list[dict] = field(default_factory=list)
	rowcount: int = 0


class Queryable(Protocol):
	async def query(self, query, params: Optional[Iterable] = None) -> QueryResult:
		...


async def _rows_from_cursor(cur) -> list[dict]:
	if cur.description is None:
		return []
	colnames = [d[0] for d in cur.description]
	rows = await cur.fetchall()
	return [dict(zip(colnames, r)) for r in rows]


async def run_query(conn, query, params: Optional[Iterable] = None) -> QueryResult:
	"""
	Execute one statement (str or psycopg sql.Composable) on an already-acquired connection.
	"""
	if logger.isEnabledFor(logging.DEBUG):
		text = query if isinstance(query, str) else query.as_string(None)
		logger.debug("SQL: %s", " ".join(text.split()))
	async with conn.cursor() as cur:
		await cur.execute(query, list(params or []))
		rows = await _rows_from_cursor(cur)
		rowcount = cur.rowcount if cur.rowcount and cur.rowcount > 0 else 0
	return QueryResult(rows=rows, rowcount=rowcount)


class BoundConnection:
	"""
	Transaction-scoped executor that reuses one checked-out connection.

	It deliberately has no acquire()/close(): code that receives it is already inside a
	transaction and must nest with savepoints instead of borrowing another connection.
	"""

	def __init__(self, conn: AsyncConnection):
		self.conn = conn

	def __repr__(self) -> str:
		return f"<BoundConnection {self.conn!r}>"

	async def query(self, query, params: Optional[Iterable] = None) -> QueryResult:
		return await run_query(self.conn, query, params)


class PgPool:
	"""
	Process-wide PostgreSQL executor backed by psycopg_pool.AsyncConnectionPool.

	Create directly:
		db = PgPool("postgresql://postgres@localhost/thesis", min_size=1, max_size=10)

	Or reuse an existing pool for the same parameters via the cache:
		db = PgPool.get(conninfo="postgresql://postgres@localhost/thesis")

	Connections run in autocommit mode; statements issued through query() commit on their
	own and multi-statement units of work go through the transaction coordinator.
	Call `await close()` on shutdown, or `await PgPool.closeall()` to close every cached pool.
	"""

	_cache: dict[tuple, "PgPool"] = {}
	_cache_lock = RLock()

	@staticmethod
	def _freeze_conn_kwargs(conn_kwargs: dict[str, Any]) -> tuple[tuple[str, Any], ...] | None:
		"""
		Build a deterministic, hashable representation of extra connect kwargs.
		"""
		if not conn_kwargs:
			return None
		frozen: list[tuple[str, Any]] = []
		for key, value in sorted(conn_kwargs.items()):
			try:
				hash(value)
				frozen.append((key, value))
			except TypeError:
				frozen.append((key, repr(value)))
		return tuple(frozen)

	@classmethod
	def get(
		cls,
		*,
		conninfo: str,
		min_size: int = 1,
		max_size: int = 10,
		**conn_kwargs
	) -> "PgPool":
		"""
		Return a cached pool for the same connection parameters, creating it if needed.
		Extra psycopg connect kwargs can be passed via **conn_kwargs (e.g., sslmode="require").
		"""
		key = (conninfo, cls._freeze_conn_kwargs(conn_kwargs), min_size, max_size)
		with cls._cache_lock:
			pool = cls._cache.get(key)
			if pool is None or pool._closed:
				pool = cls(conninfo, min_size=min_size, max_size=max_size, **conn_kwargs)
				pool._cache_key = key
				cls._cache[key] = pool
				logger.debug("Created new cached PgPool for %r", pool)
			else:
				logger.debug("Reusing cached PgPool %r", pool)
			return pool

	@classmethod
	def from_config(cls, config: DatabaseConfig, *, cached: Optional[bool] = None) -> "PgPool":
		"""
		Build the pool described by config. Outside production the pool is cached so module
		reloads keep using the same connections.
		"""
		assert_database_config(config)
		conn_kwargs: dict[str, Any] = {}
		if config.database_ssl:
			conn_kwargs["sslmode"] = "require"
		if cached is None:
			cached = not config.is_production
		if cached:
			return cls.get(
				conninfo=config.database_url,
				min_size=config.pool_min_size,
				max_size=config.pool_max_size,
				**conn_kwargs,
			)
		return cls(
			config.database_url,
			min_size=config.pool_min_size,
			max_size=config.pool_max_size,
			**conn_kwargs,
		)

	@classmethod
	async def closeall(cls) -> None:
		"""Close all cached pools and clear the cache."""
		with cls._cache_lock:
			pools = list(cls._cache.values())
			cls._cache.clear()
		for pool in pools:
			try:
				await pool.close()
			except Exception:
				logger.exception("Error closing cached pool")

	def __init__(
		self,
		conninfo: str,
		*,
		min_size: int = 1,
		max_size: int = 10,
		**conn_kwargs
	):
		self.conninfo = conninfo
		self.min_size = min_size
		self.max_size = max_size
		self._closed = False
		self._opened = False
		self._open_lock = asyncio.Lock()
		self._cache_key: tuple | None = None
		self._conn_kwargs = dict(conn_kwargs)
		self._conn_kwargs["autocommit"] = True

		self.pool = AsyncConnectionPool(
			conninfo,
			min_size=min_size,
			max_size=max_size,
			kwargs=self._conn_kwargs,
			open=False,
		)

	def __repr__(self) -> str:
		dsn = self.conninfo.rsplit("@", 1)[-1]
		return f"<PgPool {dsn} pool={self.min_size}-{self.max_size}>"

	async def __aenter__(self) -> "PgPool":
		await self.open()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.close()

	# ---------- Pool plumbing ----------
	async def open(self) -> None:
		if self._closed:
			raise RuntimeError("PgPool is closed.")
		if self._opened:
			return
		async with self._open_lock:
			if not self._opened:
				await self.pool.open()
				self._opened = True
				logger.debug("Opened %r", self)

	async def close(self) -> None:
		"""Close this pool."""
		if self._closed:
			return
		self._closed = True
		try:
			await self.pool.close()
		except Exception:
			logger.exception("Error closing connection pool")
		finally:
			cache_key = self._cache_key
			if cache_key is not None:
				with self.__class__._cache_lock:
					cached = self.__class__._cache.get(cache_key)
					if cached is self:
						self.__class__._cache.pop(cache_key, None)

	async def acquire(self) -> AsyncConnection:
		if self._closed:
			raise RuntimeError("PgPool is closed.")
		await self.open()
		return await self.pool.getconn()

	async def release(self, conn: AsyncConnection) -> None:
		try:
			await self.pool.putconn(conn)
		except Exception:
			# The pool may already be closed while a connection is returned.
			if not self._closed:
				raise

	# ---------- Execution ----------
	async def query(self, query, params: Optional[Iterable] = None) -> QueryResult:
		"""
		Execute one statement on a pooled connection (autocommit) and return its result.
		"""
		conn = await self.acquire()
		try:
			return await run_query(conn, query, params)
		finally:
			await self.release(conn)

	async def execute_query(self, query, params: Optional[Iterable] = None) -> list[dict]:
		"""
		Public wrapper returning only the rows of a raw statement.
		"""
		return (await self.query(query, params)).rows
