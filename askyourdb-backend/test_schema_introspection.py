"""
Tests for schema introspection and its 5-minute cache.
"""

import unittest
from unittest.mock import AsyncMock, MagicMock

from config import Settings
from errors import DatabaseError
from query_plan import Engine
from schema_introspection import SchemaCache, introspect_schema


def pg_adapter(described=None, error=None):
    adapter = MagicMock()
    adapter.engine = Engine.POSTGRES
    adapter.describe_tables = AsyncMock(return_value=described, side_effect=error)
    return adapter


def mongo_adapter(collections=None, error=None):
    adapter = MagicMock()
    adapter.engine = Engine.MONGO
    adapter.list_collections = AsyncMock(return_value=collections, side_effect=error)
    adapter.sample_fields = AsyncMock(return_value=["_id", "name"])
    return adapter


class TestIntrospectSchema(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.settings = Settings()

    async def test_postgres_tables_and_columns(self):
        adapter = pg_adapter({
            "users": [{"name": "id", "type": "INTEGER", "nullable": False}, {"name": "email", "type": "TEXT", "nullable": True}],
            "orders": [{"name": "id", "type": "INTEGER", "nullable": False}],
        })

        schema = await introspect_schema(adapter, self.settings)

        adapter.describe_tables.assert_awaited_once_with(schema="public")
        self.assertEqual(schema.tables, ["orders", "users"])
        self.assertEqual(schema.columns["users"], ["id", "email"])
        self.assertTrue(schema.introspected)

    async def test_postgres_failure_falls_back_to_defaults(self):
        schema = await introspect_schema(pg_adapter(error=RuntimeError("permission denied")), self.settings)
        self.assertEqual(schema.tables, self.settings.default_tables)
        self.assertFalse(schema.introspected)

    async def test_mongo_collections(self):
        schema = await introspect_schema(mongo_adapter(["orders", "users"]), self.settings)
        self.assertEqual(schema.collections, ["orders", "users"])
        self.assertEqual(schema.columns["users"], ["_id", "name"])

    async def test_mongo_failure_falls_back_to_defaults(self):
        schema = await introspect_schema(mongo_adapter(error=RuntimeError("not authorized")), self.settings)
        self.assertEqual(schema.collections, self.settings.default_collections)

    async def test_unsupported_engine(self):
        adapter = MagicMock()
        adapter.engine = "sqlite"
        with self.assertRaises(DatabaseError):
            await introspect_schema(adapter, self.settings)


class TestSchemaCache(unittest.IsolatedAsyncioTestCase):

    async def test_cached_within_ttl(self):
        adapter = mongo_adapter(["users"])
        cache = SchemaCache(Settings(), ttl_seconds=300)

        first = await cache.get_schema(adapter)
        second = await cache.get_schema(adapter)

        self.assertIs(first, second)
        adapter.list_collections.assert_awaited_once()

    async def test_refreshed_after_ttl(self):
        adapter = mongo_adapter(["users"])
        cache = SchemaCache(Settings(), ttl_seconds=300)

        await cache.get_schema(adapter)
        cache._last_refresh -= 301
        await cache.get_schema(adapter)

        self.assertEqual(adapter.list_collections.await_count, 2)

    async def test_invalidate(self):
        adapter = mongo_adapter(["users"])
        cache = SchemaCache(Settings())
        await cache.get_schema(adapter)
        cache.invalidate()
        await cache.get_schema(adapter)
        self.assertEqual(adapter.list_collections.await_count, 2)


if __name__ == "__main__":
    unittest.main()
