"""
Tests for the PostgreSQL adapter.

SQL translation is checked by compiling statements with the PostgreSQL
dialect (no server needed). Execution paths run against an in-memory
SQLite database through aiosqlite.
"""

import re
import unittest

from sqlalchemy import text
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from errors import DatabaseError
from pg_adapter import (
    PgAdapter,
    build_aggregate_query,
    build_conditions,
    build_count_query,
    build_find_query,
)
from query_plan import Operation, QueryPlan


BIND_CAST = re.compile(r"::[A-Z][A-Z0-9_]*(\(\d+(, ?\d+)?\))?(\[\])?")


def compile_pg(clause):
    """SQL text with whitespace collapsed and driver bind casts (::INTEGER) removed."""
    compiled = clause.compile(dialect=postgresql.dialect())
    return BIND_CAST.sub("", " ".join(str(compiled).split())), compiled.params


def find_plan(**kwargs):
    return QueryPlan(operation=Operation.FIND, table="orders", **kwargs)


class TestFilterTranslation(unittest.TestCase):

    def test_value_is_bound_not_inlined(self):
        sql, params = compile_pg(build_find_query(find_plan(filter={"price": {"$gt": 100}}), "products"))
        self.assertIn("price > %(price_1)s", sql)
        self.assertEqual(params["price_1"], 100)
        self.assertNotIn("100", sql)

    def test_equality_and_null(self):
        sql, params = compile_pg(build_find_query(
            find_plan(filter={"status": "active", "shipped_at": None}), "orders"
        ))
        self.assertIn("status = %(status_1)s", sql)
        self.assertIn("shipped_at IS NULL", sql)
        self.assertEqual(params["status_1"], "active")

    def test_comparison_operators(self):
        conditions = build_conditions({
            "a": {"$eq": 1}, "b": {"$ne": 2}, "c": {"$gte": 3}, "d": {"$lt": 4}, "e": {"$lte": 5},
        })
        rendered = [compile_pg(c)[0] for c in conditions]
        self.assertEqual(rendered, [
            "a = %(a_1)s", "b != %(b_1)s", "c >= %(c_1)s", "d < %(d_1)s", "e <= %(e_1)s",
        ])

    def test_in_and_not_in(self):
        sql, params = compile_pg(build_find_query(
            find_plan(filter={"status": {"$in": ["a", "b"]}, "role": {"$nin": ["admin"]}}), "users"
        ))
        self.assertIn("status IN", sql)
        self.assertIn("role NOT IN", sql)
        self.assertEqual(params["status_1"], ["a", "b"])

    def test_like_and_regex_become_substring_ilike(self):
        sql, params = compile_pg(build_find_query(
            find_plan(filter={"name": {"$like": "john"}, "email": {"$regex": "example"}}), "users"
        ))
        self.assertIn("name ILIKE %(name_1)s", sql)
        self.assertIn("email ILIKE %(email_1)s", sql)
        self.assertEqual(params["name_1"], "%john%")
        self.assertEqual(params["email_1"], "%example%")

    def test_unknown_operator_skipped(self):
        with self.assertLogs("pg_adapter", level="WARNING") as logs:
            conditions = build_conditions({"age": {"$exists": True, "$gt": 18}})
        self.assertEqual(len(conditions), 1)
        self.assertTrue(any("$exists" in line for line in logs.output))

    def test_conditions_are_anded(self):
        sql, _ = compile_pg(build_find_query(find_plan(filter={"a": 1, "b": 2}), "orders"))
        self.assertIn("a = %(a_1)s AND b = %(b_1)s", sql)

    def test_identifiers_are_quoted(self):
        sql, _ = compile_pg(build_find_query(find_plan(filter={"order": 1}), "user"))
        self.assertIn('FROM "user"', sql)
        self.assertIn('"order" = ', sql)


class TestFindTranslation(unittest.TestCase):

    def test_default_limit_is_100(self):
        sql, params = compile_pg(build_find_query(find_plan(), "orders"))
        self.assertTrue(sql.startswith("SELECT * FROM orders"))
        self.assertIn("LIMIT", sql)
        self.assertIn(100, params.values())

    def test_plan_limit_used(self):
        _, params = compile_pg(build_find_query(find_plan(limit=7), "orders"))
        self.assertIn(7, params.values())

    def test_projection_selects_included_columns(self):
        sql, _ = compile_pg(build_find_query(
            find_plan(projection={"name": 1, "email": True, "password": 0}), "users"
        ))
        self.assertTrue(sql.startswith("SELECT name, email FROM users"))

    def test_sort_directions(self):
        sql, _ = compile_pg(build_find_query(find_plan(sort={"total": -1, "name": 1, "id": "desc"}), "orders"))
        self.assertIn("ORDER BY total DESC, name ASC, id DESC", sql)

    def test_schema_qualified_table(self):
        sql, _ = compile_pg(build_find_query(find_plan(), "information_schema.tables"))
        self.assertIn("FROM information_schema.tables", sql)


class TestCountAndAggregateTranslation(unittest.TestCase):

    def test_count(self):
        sql, params = compile_pg(build_count_query(
            QueryPlan(operation=Operation.COUNT, table="orders", filter={"status": "paid"}), "orders"
        ))
        self.assertIn("SELECT count(*) AS count", sql)
        self.assertIn("WHERE status = %(status_1)s", sql)
        self.assertNotIn("LIMIT", sql)

    def test_group_by_with_sum(self):
        sql, _ = compile_pg(build_aggregate_query(
            [{"$group": {"_id": "$category", "total": {"$sum": "$price"}}}], "products"
        ))
        self.assertIn("sum(price) AS total", sql)
        self.assertIn("GROUP BY category", sql)
        self.assertRegex(sql, r'category AS "?_id"?')

    def test_sum_one_is_count(self):
        sql, _ = compile_pg(build_aggregate_query(
            [{"$group": {"_id": "$status", "n": {"$sum": 1}}}], "orders"
        ))
        self.assertIn("count(*) AS n", sql)

    def test_global_aggregate(self):
        sql, _ = compile_pg(build_aggregate_query(
            [{"$group": {"_id": None, "avg_total": {"$avg": "$total"}, "max_total": {"$max": "$total"}}}],
            "orders",
        ))
        self.assertIn("avg(total) AS avg_total", sql)
        self.assertIn("max(total) AS max_total", sql)
        self.assertNotIn("GROUP BY", sql)

    def test_match_applied_with_group(self):
        sql, params = compile_pg(build_aggregate_query(
            [{"$match": {"status": "paid"}}, {"$group": {"_id": "$customer", "spent": {"$sum": "$total"}}}],
            "orders",
        ))
        self.assertIn("WHERE status = %(status_1)s", sql)
        self.assertIn("GROUP BY customer", sql)
        self.assertEqual(params["status_1"], "paid")

    def test_sort_stage_is_not_applied(self):
        sql, _ = compile_pg(build_aggregate_query(
            [{"$group": {"_id": "$status", "n": {"$sum": 1}}}, {"$sort": {"n": -1}}], "orders"
        ))
        self.assertNotIn("ORDER BY", sql)

    def test_limit_stage_and_plan_limit(self):
        _, params = compile_pg(build_aggregate_query([{"$match": {}}, {"$limit": 50}], "orders", 10))
        self.assertIn(10, params.values())
        self.assertNotIn(50, params.values())

    def test_count_and_min_accumulators(self):
        sql, _ = compile_pg(build_aggregate_query(
            [{"$group": {"_id": "$status", "orders": {"$count": {}}, "smallest": {"$min": "$total"}}}],
            "orders",
        ))
        self.assertIn("count(*) AS orders", sql)
        self.assertIn("min(total) AS smallest", sql)
        self.assertIn("GROUP BY status", sql)

    def test_default_limit_without_limit_stage(self):
        sql, params = compile_pg(build_aggregate_query([{"$match": {"status": "paid"}}], "orders"))
        self.assertIn("LIMIT", sql)
        self.assertIn(100, params.values())

    def test_limit_stage_below_default(self):
        _, params = compile_pg(build_aggregate_query([{"$limit": 5}], "orders"))
        self.assertIn(5, params.values())
        self.assertNotIn(100, params.values())

    def test_unknown_stage_leaves_query_ungrouped(self):
        sql, _ = compile_pg(build_aggregate_query([{"$unwind": "$items"}], "orders"))
        self.assertTrue(sql.startswith("SELECT * FROM orders"))


class TestPgAdapterExecution(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
        async with self.engine.begin() as conn:
            await conn.execute(text(
                "CREATE TABLE orders (id INTEGER PRIMARY KEY, customer TEXT, status TEXT, total REAL)"
            ))
            await conn.execute(
                text("INSERT INTO orders (customer, status, total) VALUES (:customer, :status, :total)"),
                [
                    {"customer": "ana", "status": "paid", "total": 120.0},
                    {"customer": "bob", "status": "paid", "total": 80.0},
                    {"customer": "ana", "status": "pending", "total": 45.5},
                ],
            )
        self.adapter = PgAdapter(Settings(db_engine="postgres"), engine=self.engine)
        await self.adapter.connect()

    async def asyncTearDown(self):
        await self.adapter.disconnect()

    async def test_count_scenario(self):
        result = await self.adapter.execute(QueryPlan(operation=Operation.COUNT, table="orders"))
        self.assertEqual(result.rows, [{"count": 3}])
        self.assertEqual(result.raw, {"count": 3})

    async def test_count_active_customers(self):
        async with self.engine.begin() as conn:
            await conn.execute(text("CREATE TABLE customers (id INTEGER PRIMARY KEY, status TEXT)"))
            await conn.execute(
                text("INSERT INTO customers (status) VALUES (:status)"),
                [{"status": "active" if i < 3 else "inactive"} for i in range(10)],
            )

        result = await self.adapter.execute(QueryPlan(
            operation=Operation.COUNT, table="customers", filter={"status": "active"},
        ))
        self.assertEqual(result.rows, [{"count": 3}])

    async def test_find_without_limit_caps_at_100(self):
        async with self.engine.begin() as conn:
            await conn.execute(text("CREATE TABLE events (id INTEGER PRIMARY KEY)"))
            await conn.execute(text("INSERT INTO events (id) VALUES (:id)"), [{"id": i} for i in range(150)])

        result = await self.adapter.execute(QueryPlan(operation=Operation.FIND, table="events"))
        self.assertEqual(result.row_count, 100)

    async def test_match_only_aggregate_caps_at_100(self):
        async with self.engine.begin() as conn:
            await conn.execute(text("CREATE TABLE events (id INTEGER PRIMARY KEY, kind TEXT)"))
            await conn.execute(
                text("INSERT INTO events (id, kind) VALUES (:id, :kind)"),
                [{"id": i, "kind": "a"} for i in range(150)],
            )

        result = await self.adapter.execute(QueryPlan(
            operation=Operation.AGGREGATE, table="events", pipeline=[{"$match": {"kind": "a"}}],
        ))
        self.assertEqual(result.row_count, 100)

    async def test_find_with_filter_sort_limit(self):
        result = await self.adapter.execute(QueryPlan(
            operation=Operation.FIND, table="orders",
            filter={"status": "paid"}, sort={"total": -1}, limit=1,
        ))
        self.assertEqual(len(result.rows), 1)
        self.assertEqual(result.rows[0]["customer"], "ana")
        self.assertEqual(result.rows[0]["total"], 120.0)

    async def test_find_falls_back_to_collection(self):
        result = await self.adapter.execute(QueryPlan(operation=Operation.FIND, collection="orders"))
        self.assertEqual(result.row_count, 3)

    async def test_aggregate_group_by(self):
        result = await self.adapter.execute(QueryPlan(
            operation=Operation.AGGREGATE, table="orders",
            pipeline=[{"$group": {"_id": "$status", "revenue": {"$sum": "$total"}}}],
        ))
        rows = sorted(result.rows, key=lambda r: r["_id"])
        self.assertEqual(rows, [
            {"_id": "paid", "revenue": 200.0},
            {"_id": "pending", "revenue": 45.5},
        ])

    async def test_raw_sql_refused(self):
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.RAW_SQL, sql="SELECT 1"))
        self.assertEqual(ctx.exception.message, "Raw SQL queries are not permitted")

    async def test_reserved_operation_refused(self):
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.DELETE, table="orders"))
        self.assertEqual(ctx.exception.message, "Unsupported database operation: delete")

    async def test_missing_table(self):
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.FIND))
        self.assertEqual(ctx.exception.message, "Table name is required for find operation")

    async def test_aggregate_without_pipeline(self):
        with self.assertRaises(DatabaseError):
            await self.adapter.execute(QueryPlan(operation=Operation.AGGREGATE, table="orders"))

    async def test_engine_errors_are_wrapped(self):
        with self.assertRaises(DatabaseError) as ctx:
            await self.adapter.execute(QueryPlan(operation=Operation.FIND, table="missing_table"))
        self.assertEqual(ctx.exception.message, "PostgreSQL query execution failed")

    async def test_describe_tables(self):
        tables = await self.adapter.describe_tables()
        self.assertIn("orders", tables)
        self.assertEqual([c["name"] for c in tables["orders"]], ["id", "customer", "status", "total"])

    async def test_execute_before_connect(self):
        adapter = PgAdapter(Settings(db_engine="postgres"))
        with self.assertRaises(DatabaseError) as ctx:
            await adapter.execute(QueryPlan(operation=Operation.COUNT, table="orders"))
        self.assertEqual(ctx.exception.message, "Database connection not initialized")

    async def test_connect_is_idempotent(self):
        await self.adapter.connect()
        self.assertTrue(self.adapter.is_connected)


if __name__ == "__main__":
    unittest.main()
