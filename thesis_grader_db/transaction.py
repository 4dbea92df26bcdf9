import itertools
import logging
from threading import Lock
from typing import Any, Awaitable, Callable, TypeVar

from thesis_grader_db.client import BoundConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

_savepoint_counter = itertools.count(1)
_savepoint_lock = Lock()

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
	if n == 0:
		return "0"
	digits = []
	while n:
		n, rem = divmod(n, 36)
		digits.append(_BASE36[rem])
	return "".join(reversed(digits))


def next_savepoint_name() -> str:
	"""Process-wide unique savepoint name: sp_1, sp_2, ... sp_a, ... (base 36)."""
	with _savepoint_lock:
		n = next(_savepoint_counter)
	return f"sp_{_base36(n)}"


def is_pool(executor: Any) -> bool:
	"""
	True for executors that can hand out connections (acquire) and be shut down (close).
	A BoundConnection has neither, which is what routes nested calls to savepoints.
	"""
	return callable(getattr(executor, "acquire", None)) and callable(getattr(executor, "close", None))


async def _quietly(conn_or_executor, statement: str) -> None:
	try:
		await conn_or_executor.query(statement)
	except Exception:
		logger.exception("Error running %s during transaction abort; keeping original error", statement)


async def run_transaction(
	executor,
	work: Callable[[Any], Awaitable[T]],
	services_factory: Callable[[Any], Any],
) -> T:
	"""
	Run work(services) as one unit.

	On a pool: borrow a connection, BEGIN, and COMMIT when work returns or ROLLBACK when it
	raises; the connection always goes back to the pool.
	On a connection that is already inside a transaction: wrap work in a SAVEPOINT that is
	released on success and rolled back to on failure, leaving the outer transaction usable.

	work receives a fresh service registry bound to the transaction's connection, built by
	services_factory. The original exception is re-raised after cleanup.
	"""
	if is_pool(executor):
		conn = await executor.acquire()
		try:
			bound = BoundConnection(conn)
			await bound.query("BEGIN")
			logger.debug("BEGIN on %r", bound)
			try:
				out = await work(services_factory(bound))
				await bound.query("COMMIT")
			except BaseException:
				await _quietly(bound, "ROLLBACK")
				raise
			logger.debug("COMMIT on %r", bound)
			return out
		finally:
			await executor.release(conn)

	savepoint = next_savepoint_name()
	await executor.query(f"SAVEPOINT {savepoint}")
	try:
		out = await work(services_factory(executor))
		await executor.query(f"RELEASE SAVEPOINT {savepoint}")
	except BaseException:
		await _quietly(executor, f"ROLLBACK TO SAVEPOINT {savepoint}")
		raise
	return out
