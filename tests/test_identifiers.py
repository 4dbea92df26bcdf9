import sys
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from psycopg import sql  # noqa: E402

from thesis_grader_db.identifiers import UnsafeIdentifierError, ident, quote, split_identifier  # noqa: E402
from thesis_grader_db.sql_builder import build_order_by, build_where  # noqa: E402


class TestQuote(unittest.TestCase):
    def test_simple_and_qualified_names(self):
        self.assertEqual(quote("users"), '"users"')
        self.assertEqual(quote("public.users"), '"public"."users"')
        self.assertEqual(quote("_private9"), '"_private9"')

    def test_rejects_unsafe_names(self):
        for bad in [
            "",
            "1users",
            "users;drop",
            'us"ers',
            "a.b.c",
            "a..b",
            ".users",
            "users.",
            "user name",
            "üsers",
            "users--",
            " users",
            "users ",
            "users\n",
            "\tid",
            "public .users",
            "public. users",
            "us ers",
        ]:
            with self.subTest(identifier=bad):
                with self.assertRaises(UnsafeIdentifierError):
                    quote(bad)

    def test_rejects_non_strings(self):
        for bad in [None, 1, ["users"], b"users"]:
            with self.subTest(identifier=bad):
                with self.assertRaises(UnsafeIdentifierError):
                    quote(bad)

    def test_error_is_value_error_and_names_input(self):
        with self.assertRaises(ValueError) as ctx:
            quote("x; DROP TABLE users")
        self.assertIn("x; DROP TABLE users", str(ctx.exception))

    def test_split_and_ident(self):
        self.assertEqual(split_identifier("public.users"), ("public", "users"))
        self.assertEqual(ident("public.users").as_string(None), '"public"."users"')
        self.assertIsInstance(ident("users"), sql.Identifier)
        self.assertEqual(quote("public.users"), ident("public.users").as_string(None))

    def test_padded_column_never_reaches_sql(self):
        with self.assertRaises(UnsafeIdentifierError):
            build_where({"status ": "x"})
        with self.assertRaises(UnsafeIdentifierError):
            build_order_by(" name", "asc")


if __name__ == "__main__":
    unittest.main()
