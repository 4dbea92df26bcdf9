import sys
import unittest
from pathlib import Path
from unittest import mock

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from tests.fakes import FakeConnectionPool, FakeDatabase, RecordingExecutor  # noqa: E402
from thesis_grader_db import registry  # noqa: E402
from thesis_grader_db.client import BoundConnection, PgPool  # noqa: E402
from thesis_grader_db.config import DatabaseConfig  # noqa: E402
from thesis_grader_db.registry import (  # noqa: E402
    ENTITY_NAMES,
    DatabaseServices,
    build_entity_services,
    get_database_services,
    open_database_services,
)
from thesis_grader_db.services import GroupMembersService, ThesisGroupRankingsService, UsersService  # noqa: E402

CONFIG = DatabaseConfig(database_url="postgresql://db.local/thesis", database_ssl=False, pool_max_size=3)


class Boom(Exception):
    pass


class TestRegistryShape(unittest.TestCase):
    def test_every_entity_is_registered(self):
        self.assertEqual(len(ENTITY_NAMES), 24)
        self.assertEqual(len(set(ENTITY_NAMES)), 24)
        self.assertEqual(ENTITY_NAMES[0], "users")
        self.assertIn("push_subscriptions", ENTITY_NAMES)
        self.assertIn("v_thesis_group_rankings", ENTITY_NAMES)

    def test_services_share_one_executor(self):
        executor = RecordingExecutor()
        services = DatabaseServices(executor)
        for name in ENTITY_NAMES:
            service = services.get(name)
            self.assertIs(getattr(services, name), service)
            self.assertIs(service.executor, executor)
        self.assertIsInstance(services.users, UsersService)
        self.assertIsInstance(services.group_members, GroupMembersService)
        self.assertIsInstance(services.v_thesis_group_rankings, ThesisGroupRankingsService)
        self.assertEqual(executor.calls, [])

    def test_unknown_entity(self):
        with self.assertRaisesRegex(KeyError, "Unknown entity: 'grades'"):
            DatabaseServices(RecordingExecutor()).get("grades")

    def test_build_entity_services_returns_fresh_instances(self):
        executor = RecordingExecutor()
        first = build_entity_services(executor)
        second = build_entity_services(executor)
        self.assertEqual(list(first), list(ENTITY_NAMES))
        self.assertIsNot(first["users"], second["users"])


class RegistryPoolTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        patcher = mock.patch("thesis_grader_db.client.AsyncConnectionPool", FakeConnectionPool)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.db = FakeDatabase({"users": [], "thesis_groups": [], "group_members": []})
        FakeConnectionPool.database = self.db

    async def asyncTearDown(self):
        await PgPool.closeall()
        registry._default_services = None
        FakeConnectionPool.instances.clear()
        FakeConnectionPool.database = None

    def statements(self) -> list[str]:
        return [text for text, _ in self.db.statements]


class TestTransactions(RegistryPoolTestCase):
    async def test_transaction_binds_a_new_registry_to_one_connection(self):
        services = DatabaseServices(PgPool("postgresql://db/thesis", max_size=2))

        async def assign(tx):
            self.assertIsNot(tx, services)
            self.assertIsInstance(tx.executor, BoundConnection)
            self.assertIs(tx.thesis_groups.executor, tx.group_members.executor)
            group = await tx.thesis_groups.create({"title": "Robotics"})
            await tx.group_members.create({"group_id": group["id"], "student_id": "s1"})
            return group

        group = await services.transaction(assign)
        self.assertEqual(group["title"], "Robotics")
        self.assertEqual(await services.group_members.count({"group_id": group["id"]}), 1)
        self.assertEqual(self.statements()[0], "BEGIN")
        self.assertIn("COMMIT", self.statements())
        await services.executor.close()

    async def test_failed_transaction_leaves_nothing_behind(self):
        services = DatabaseServices(PgPool("postgresql://db/thesis", max_size=2))

        async def assign(tx):
            await tx.thesis_groups.create({"title": "Robotics"})
            raise Boom("member lookup failed")

        with self.assertRaises(Boom):
            await services.transaction(assign)
        self.assertEqual(await services.thesis_groups.count(), 0)
        await services.executor.close()

    async def test_nested_transaction_through_the_registry(self):
        services = DatabaseServices(PgPool("postgresql://db/thesis", max_size=2))

        async def add_member(tx):
            await tx.group_members.create({"group_id": "g1", "student_id": "s1"})
            raise Boom("student already assigned")

        async def outer(tx):
            await tx.users.create({"name": "Ana"})
            with self.assertRaises(Boom):
                await tx.transaction(add_member)
            return await tx.users.count()

        self.assertEqual(await services.transaction(outer), 1)
        self.assertEqual(await services.group_members.count(), 0)
        self.assertTrue(any(s.startswith("ROLLBACK TO SAVEPOINT sp_") for s in self.statements()))
        await services.executor.close()


class TestDefaults(RegistryPoolTestCase):
    async def test_get_database_services_is_shared_until_closed(self):
        first = get_database_services(CONFIG)
        self.assertIs(first, get_database_services(CONFIG))
        self.assertEqual(first.executor.max_size, 3)
        self.assertFalse(first.executor.pool.opened)

        await first.executor.close()
        second = get_database_services(CONFIG)
        self.assertIsNot(first, second)

    async def test_get_database_services_reads_config_when_not_given(self):
        with mock.patch.object(registry, "get_config", return_value=CONFIG) as get_config:
            services = get_database_services()
        get_config.assert_called_once_with()
        self.assertIn("db.local/thesis", repr(services))

    async def test_open_database_services_closes_its_pool(self):
        async with open_database_services(CONFIG) as services:
            pool = services.executor
            self.assertTrue(pool.pool.opened)
            self.assertIsNone(pool._cache_key)
            self.assertEqual(await services.users.find_many(), [])
        self.assertTrue(pool.pool.closed)

    async def test_open_database_services_closes_on_error(self):
        with self.assertRaises(Boom):
            async with open_database_services(CONFIG) as services:
                pool = services.executor
                raise Boom("request failed")
        self.assertTrue(pool.pool.closed)

    async def test_missing_url_fails_before_connecting(self):
        bad = DatabaseConfig(database_url=None, database_ssl=False)
        with self.assertRaisesRegex(ValueError, "DATABASE_URL"):
            async with open_database_services(bad):
                pass
        self.assertEqual(FakeConnectionPool.instances, [])


if __name__ == "__main__":
    unittest.main()
