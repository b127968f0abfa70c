"""
Tests for the MongoDB adapter with a mocked Motor client.
"""

import unittest
from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING

from config import Settings
from errors import DatabaseError
from mongo_adapter import MongoAdapter, mask_uri, normalize_sort, to_jsonable
from query_plan import Operation, QueryPlan


def make_cursor(documents):
    cursor = MagicMock()
    cursor.limit.return_value = cursor
    cursor.sort.return_value = cursor
    cursor.max_time_ms.return_value = cursor
    cursor.to_list = AsyncMock(return_value=documents)
    return cursor


class TestHelpers(unittest.TestCase):

    def test_normalize_sort(self):
        self.assertEqual(
            normalize_sort({"total": -1, "name": 1, "date": "desc"}),
            [("total", DESCENDING), ("name", ASCENDING), ("date", DESCENDING)],
        )
        self.assertEqual(normalize_sort(None), [])

    def test_object_ids_rendered_as_strings(self):
        oid = ObjectId()
        doc = {"_id": oid, "items": [{"product": oid}], "name": "x"}
        self.assertEqual(to_jsonable(doc), {"_id": str(oid), "items": [{"product": str(oid)}], "name": "x"})

    def test_mask_uri(self):
        self.assertEqual(mask_uri("mongodb://user:pw@db:27017/app"), "mongodb://***@db:27017/app")
        self.assertEqual(mask_uri("mongodb://localhost:27017"), "mongodb://localhost:27017")


class TestMongoAdapter(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.collection = MagicMock()
        self.db = MagicMock()
        self.db.__getitem__.return_value = self.collection
        self.client = MagicMock()
        self.client.admin.command = AsyncMock(return_value={"ok": 1})
        self.client.__getitem__.return_value = self.db

        self.adapter = MongoAdapter(Settings(db_engine="mongo"), client=self.client)
        await self.adapter.connect()

    async def test_connect_pings_server(self):
        self.client.admin.command.assert_awaited_once_with("ping")
        self.assertTrue(self.adapter.is_connected)

    async def test_connect_failure_raises_database_error(self):
        client = MagicMock()
        client.admin.command = AsyncMock(side_effect=RuntimeError("no servers"))
        adapter = MongoAdapter(Settings(), client=client)
        with self.assertRaises(DatabaseError) as ctx:
            await adapter.connect()
        self.assertEqual(ctx.exception.message, "MongoDB connection failed")
        self.assertFalse(adapter.is_connected)

    async def test_find_passes_filter_projection_sort_limit(self):
        cursor = make_cursor([{"_id": ObjectId(), "name": "ana"}])
        self.collection.find.return_value = cursor

        result = await self.adapter.execute(QueryPlan(
            operation=Operation.FIND, collection="users",
            filter={"status": "active"}, projection={"name": 1}, sort={"name": -1}, limit=5,
        ))

        self.collection.find.assert_called_once_with({"status": "active"}, {"name": 1})
        cursor.limit.assert_called_once_with(5)
        cursor.sort.assert_called_once_with([("name", DESCENDING)])
        cursor.max_time_ms.assert_called_once_with(30000)
        self.assertEqual(result.rows[0]["name"], "ana")
        self.assertIsInstance(result.rows[0]["_id"], str)

    async def test_find_defaults(self):
        cursor = make_cursor([])
        self.collection.find.return_value = cursor

        await self.adapter.execute(QueryPlan(operation=Operation.FIND, collection="users"))

        self.collection.find.assert_called_once_with({}, None)
        cursor.limit.assert_not_called()
        cursor.sort.assert_not_called()

    async def test_aggregate_passes_pipeline_natively(self):
        pipeline = [{"$unwind": "$items"}, {"$group": {"_id": "$items.category", "n": {"$sum": 1}}}]
        agg_cursor = MagicMock()
        agg_cursor.to_list = AsyncMock(return_value=[{"_id": "books", "n": 2}])
        self.collection.aggregate.return_value = agg_cursor

        result = await self.adapter.execute(QueryPlan(
            operation=Operation.AGGREGATE, collection="orders", pipeline=pipeline,
        ))

        self.collection.aggregate.assert_called_once_with(pipeline)
        self.assertEqual(result.rows, [{"_id": "books", "n": 2}])

    async def test_aggregate_requires_pipeline(self):
        with self.assertRaises(DatabaseError):
            await self.adapter.execute(QueryPlan(operation=Operation.AGGREGATE, collection="orders"))

    async def test_count(self):
        self.collection.count_documents = AsyncMock(return_value=3)
        result = await self.adapter.execute(QueryPlan(
            operation=Operation.COUNT, collection="orders", filter={"status": "paid"},
        ))
        self.collection.count_documents.assert_awaited_once_with({"status": "paid"})
        self.assertEqual(result.rows, [{"count": 3}])

    async def test_collection_required_no_table_fallback(self):
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.FIND, table="users"))
        self.assertEqual(ctx.exception.message, "MongoDB operations require a collection name")

    async def test_raw_sql_refused(self):
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.RAW_SQL, collection="users"))
        self.assertEqual(ctx.exception.message, "Raw SQL queries are not permitted")

    async def test_reserved_operation_refused(self):
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.INSERT, collection="users"))
        self.assertEqual(ctx.exception.message, "Unsupported database operation: insert")

    async def test_driver_errors_are_wrapped(self):
        self.collection.count_documents = AsyncMock(side_effect=RuntimeError("socket closed"))
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.COUNT, collection="orders"))
        self.assertEqual(ctx.exception.message, "MongoDB query execution failed")

    async def test_disconnect_is_idempotent(self):
        await self.adapter.disconnect()
        await self.adapter.disconnect()
        self.client.close.assert_called_once()
        self.assertFalse(self.adapter.is_connected)

    async def test_execute_after_disconnect(self):
        await self.adapter.disconnect()
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.COUNT, collection="orders"))
        self.assertEqual(ctx.exception.message, "Database connection not initialized")


if __name__ == "__main__":
    unittest.main()
