import sys
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from psycopg.types.json import Jsonb  # noqa: E402

from tests.fakes import FakeConnection, FakeDatabase, RecordingExecutor, result  # noqa: E402
from thesis_grader_db.accessors import JoinTableService, ReadonlyTableService, TableService  # noqa: E402
from thesis_grader_db.client import BoundConnection  # noqa: E402
from thesis_grader_db.identifiers import UnsafeIdentifierError  # noqa: E402
from thesis_grader_db.sql_builder import UNSET, ListQuery  # noqa: E402


def seeded_users() -> FakeDatabase:
    return FakeDatabase({
        "users": [
            {"id": "u1", "name": "Ana", "status": "active", "avatar_key": None},
            {"id": "u2", "name": "Ben", "status": "active", "avatar_key": "a.png"},
            {"id": "u3", "name": "Cid", "status": "active", "avatar_key": None},
            {"id": "u4", "name": "Dee", "status": "disabled", "avatar_key": None},
            {"id": "u5", "name": "Eve", "status": "disabled", "avatar_key": "e.png"},
        ]
    })


class AccessorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = seeded_users()
        self.conn = FakeConnection(self.db)
        self.executor = BoundConnection(self.conn)
        self.users = TableService(self.executor, "users")


class TestConstruction(unittest.TestCase):
    def test_relation_is_validated_eagerly(self):
        executor = RecordingExecutor()
        with self.assertRaises(UnsafeIdentifierError):
            ReadonlyTableService(executor, "users; DROP TABLE users")
        self.assertEqual(executor.calls, [])
        self.assertEqual(repr(TableService(executor, "public.users")), "<TableService public.users>")


class TestReadonly(AccessorTestCase):
    async def test_find_many_and_count_by_status(self):
        rows = await self.users.find_many({"where": {"status": "active"}})
        self.assertEqual([r["id"] for r in rows], ["u1", "u2", "u3"])
        self.assertEqual(await self.users.count({"status": "active"}), 3)
        self.assertEqual(await self.users.count(), 5)

    async def test_find_one(self):
        row = await self.users.find_one({"name": "Ben"})
        self.assertEqual(row["id"], "u2")
        self.assertIsNone(await self.users.find_one({"name": "Zed"}))
        self.assertEqual(self.conn.statements()[0], 'SELECT * FROM "users" WHERE "name" = %s LIMIT 1')

    async def test_value_set_filters(self):
        rows = await self.users.find_many(ListQuery(where={"id": ["u1", "u4", "nope"]}))
        self.assertEqual([r["id"] for r in rows], ["u1", "u4"])
        self.assertIn('"id" = ANY(%s)', self.conn.statements()[-1])

        self.assertEqual(await self.users.find_many({"where": {"id": []}}), [])
        self.assertIn("WHERE FALSE", self.conn.statements()[-1])
        self.assertEqual(await self.users.count({"id": []}), 0)

    async def test_null_filter_and_unset_filter(self):
        rows = await self.users.find_many({"where": {"avatar_key": None}})
        self.assertEqual([r["id"] for r in rows], ["u1", "u3", "u4"])
        rows = await self.users.find_many({"where": {"avatar_key": UNSET}})
        self.assertEqual(len(rows), 5)

    async def test_sorting_and_paging(self):
        rows = await self.users.find_many(ListQuery(order_by="name", order_direction="desc", limit=2, offset=1))
        self.assertEqual([r["name"] for r in rows], ["Dee", "Cid"])
        text, params = self.conn.executed[-1]
        self.assertEqual(text, 'SELECT * FROM "users" ORDER BY "name" DESC LIMIT %s OFFSET %s')
        self.assertEqual(params, [2, 1])

    async def test_invalid_paging_values_are_ignored(self):
        rows = await self.users.find_many({"limit": -3, "offset": "x"})
        self.assertEqual(len(rows), 5)
        self.assertEqual(self.conn.statements()[-1], 'SELECT * FROM "users"')

    async def test_exists(self):
        self.assertTrue(await self.users.exists({"status": "disabled"}))
        self.assertFalse(await self.users.exists({"status": "archived"}))
        self.assertEqual(
            self.conn.statements()[-1],
            'SELECT EXISTS(SELECT 1 FROM "users" WHERE "status" = %s) AS "exists"',
        )

    async def test_find_page(self):
        page = await self.users.find_page(ListQuery(where={"status": "active"}, order_by="name", limit=2))
        self.assertEqual([r["name"] for r in page.items], ["Ana", "Ben"])
        self.assertEqual((page.total, page.limit, page.offset), (3, 2, 0))

        page = await self.users.find_page({"where": {"status": "disabled"}, "offset": 1})
        self.assertEqual([r["id"] for r in page.items], ["u5"])
        self.assertEqual((page.total, page.limit, page.offset), (2, 1, 1))

    async def test_unsafe_column_never_reaches_database(self):
        with self.assertRaises(UnsafeIdentifierError):
            await self.users.find_many({"where": {"status OR 1=1": "x"}})
        with self.assertRaises(UnsafeIdentifierError):
            await self.users.find_many({"order_by": "name; --"})
        self.assertEqual(self.conn.executed, [])

    async def test_count_parses_missing_row(self):
        executor = RecordingExecutor(result())
        self.assertEqual(await ReadonlyTableService(executor, "users").count(), 0)
        self.assertEqual(executor.statements, ['SELECT COUNT(*)::int AS count FROM "users"'])


class TestMutations(AccessorTestCase):
    async def test_create_omits_unset_and_keeps_none(self):
        row = await self.users.create({"name": "Fay", "status": "active", "avatar_key": None, "email": UNSET})
        self.assertEqual(row["name"], "Fay")
        self.assertIsNone(row["avatar_key"])
        self.assertNotIn("email", row)
        text, params = self.conn.executed[-1]
        self.assertEqual(
            text,
            'INSERT INTO "users" ("name", "status", "avatar_key") VALUES (%s, %s, %s) RETURNING *',
        )
        self.assertEqual(params, ["Fay", "active", None])

    async def test_create_with_empty_payload_uses_defaults(self):
        row = await self.users.create({"name": UNSET})
        self.assertIn("id", row)
        self.assertEqual(self.conn.statements()[-1], 'INSERT INTO "users" DEFAULT VALUES RETURNING *')

    async def test_create_wraps_mappings_as_jsonb(self):
        await self.users.create({"name": "Gus", "prefs": {"theme": "dark"}})
        _, params = self.conn.executed[-1]
        self.assertIsInstance(params[1], Jsonb)
        self.assertEqual(self.db.rows("users")[-1]["prefs"], {"theme": "dark"})

    async def test_create_many_keeps_input_order(self):
        rows = await self.users.create_many([{"name": "X"}, {"name": "Y"}, {"name": "Z"}])
        self.assertEqual([r["name"] for r in rows], ["X", "Y", "Z"])
        self.assertEqual(await self.users.create_many([]), [])
        self.assertEqual(len(self.conn.executed), 3)

    async def test_update_with_empty_patch_issues_no_sql(self):
        self.assertEqual(await self.users.update({"id": "x"}, {}), [])
        self.assertEqual(await self.users.update({"id": "u1"}, {"name": UNSET}), [])
        self.assertEqual(self.conn.executed, [])

    async def test_update_set_parameters_precede_where_parameters(self):
        rows = await self.users.update({"status": "disabled"}, {"status": "active", "avatar_key": None})
        self.assertEqual(sorted(r["id"] for r in rows), ["u4", "u5"])
        text, params = self.conn.executed[-1]
        self.assertEqual(
            text,
            'UPDATE "users" SET "status" = %s, "avatar_key" = %s WHERE "status" = %s RETURNING *',
        )
        self.assertEqual(params, ["active", None, "disabled"])
        self.assertEqual(await self.users.count({"status": "active"}), 5)

    async def test_update_one(self):
        row = await self.users.update_one({"id": "u2"}, {"name": "Benny"})
        self.assertEqual(row["name"], "Benny")
        self.assertIsNone(await self.users.update_one({"id": "missing"}, {"name": "Nobody"}))

    async def test_delete_returns_rowcount(self):
        self.assertEqual(await self.users.delete({"status": "disabled"}), 2)
        self.assertEqual(await self.users.delete({"status": "disabled"}), 0)
        self.assertEqual(await self.users.count(), 3)

    async def test_upsert_creates_once(self):
        where = {"name": "Hal"}
        first = await self.users.upsert(where, {"name": "Hal", "status": "active"})
        second = await self.users.upsert(where, {"name": "Hal", "status": "active"})
        self.assertEqual(first, second)
        self.assertEqual(await self.users.count(where), 1)

    async def test_upsert_patches_existing_row(self):
        row = await self.users.upsert({"id": "u1"}, {"name": "unused"}, {"status": "disabled"})
        self.assertEqual(row["status"], "disabled")

        # A patch that strips to nothing leaves the existing row as it was.
        row = await self.users.upsert({"id": "u2"}, {"name": "unused"}, {"status": UNSET})
        self.assertEqual(row["status"], "active")


class TestJoinTable(unittest.IsolatedAsyncioTestCase):
    async def test_create_find_delete(self):
        db = FakeDatabase()
        members = JoinTableService(BoundConnection(FakeConnection(db)), "group_members")
        rows = await members.create_many([
            {"group_id": "g1", "student_id": "s1"},
            {"group_id": "g1", "student_id": "s2"},
        ])
        self.assertEqual(rows[0], {"group_id": "g1", "student_id": "s1"})
        self.assertEqual(await members.count({"group_id": "g1"}), 2)
        self.assertEqual(await members.delete({"group_id": "g1", "student_id": "s1"}), 1)
        self.assertEqual(await members.find_many(), [{"group_id": "g1", "student_id": "s2"}])
        self.assertFalse(hasattr(members, "update"))

    async def test_empty_payload_is_rejected(self):
        executor = RecordingExecutor()
        members = JoinTableService(executor, "group_members")
        with self.assertRaisesRegex(ValueError, "group_members"):
            await members.create({"group_id": UNSET})
        self.assertEqual(executor.calls, [])


if __name__ == "__main__":
    unittest.main()
