"""
AskYourDB - PostgreSQL Adapter
==============================

Executes validated QueryPlans against PostgreSQL through SQLAlchemy's async
engine (asyncpg driver).

The plan speaks MongoDB-style filters; PostgreSQL does not. This module
TRANSLATES them structurally into SQLAlchemy expressions:

    {"status": "active"}                 -> status = :status_1
    {"shipped_at": None}                 -> shipped_at IS NULL
    {"total": {"$gt": 100}}              -> total > :total_1
    {"status": {"$in": ["a", "b"]}}      -> status IN (__[POSTCOMPILE_status_1])
    {"name": {"$like": "john"}}          -> name ILIKE :name_1   ('%john%')

RULES:
- Values are ALWAYS bound parameters. Only identifiers reach the SQL text,
  and they go through sqlalchemy.table()/column() so the compiler quotes them.
- Unknown filter operators are logged and skipped (fail open).
- All conditions are ANDed. There is no OR.
- $regex degrades to a substring ILIKE. Not a real regex.
- The aggregate translator is PARTIAL: $match, $group, $limit only.
  $sort inside a pipeline is accepted and ignored.
"""

import logging
import operator
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, column, func, inspect, literal_column, select, table, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.sql import Select
from sqlalchemy.sql.expression import TableClause

from config import Settings
from db_adapter import DatabaseAdapter, QueryResult, DEFAULT_ROW_LIMIT, STATEMENT_TIMEOUT_MS
from errors import (
    DatabaseError,
    DB_NOT_INITIALIZED,
    RAW_SQL_NOT_PERMITTED,
    UNSUPPORTED_OPERATION,
)
from query_plan import Engine, Operation, QueryPlan, is_descending

logger = logging.getLogger(__name__)

COMPARISON_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}

AGGREGATE_FUNCTIONS = {
    "$sum": func.sum,
    "$avg": func.avg,
    "$min": func.min,
    "$max": func.max,
}


# ============================================================================
# TRANSLATION
# ============================================================================

def table_clause(name: str) -> TableClause:
    """Lightweight table reference; `schema.table` is split into schema + name."""
    if "." in name:
        schema, table_name = name.split(".", 1)
        return table(table_name, schema=schema)
    return table(name)


def strip_field_marker(ref: str) -> str:
    """'$total' -> 'total' (aggregation field references carry a leading $)."""
    return ref[1:] if ref.startswith("$") else ref


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def build_conditions(filter_spec: Optional[Dict[str, Any]]) -> List[Any]:
    """
    Translate a MongoDB-style filter mapping into SQLAlchemy conditions.

    Args:
        filter_spec: {field: literal | None | {operator: operand}}

    Returns:
        List of boolean clauses (to be ANDed by the caller)
    """
    conditions = []
    if not filter_spec:
        return conditions

    for key, value in filter_spec.items():
        col = column(key)

        if value is None:
            conditions.append(col.is_(None))
            continue

        if not isinstance(value, dict):
            conditions.append(col == value)
            continue

        for op, operand in value.items():
            if op in COMPARISON_OPERATORS:
                conditions.append(COMPARISON_OPERATORS[op](col, operand))
            elif op == "$in":
                conditions.append(col.in_(_as_list(operand)))
            elif op == "$nin":
                conditions.append(col.not_in(_as_list(operand)))
            elif op in ("$like", "$regex"):
                conditions.append(col.ilike(f"%{operand}%"))
            else:
                logger.warning(f"Unknown filter operator: {op}")

    return conditions


def apply_filter(stmt: Select, filter_spec: Optional[Dict[str, Any]]) -> Select:
    conditions = build_conditions(filter_spec)
    if conditions:
        stmt = stmt.where(and_(*conditions))
    return stmt


def apply_sort(stmt: Select, sort_spec: Optional[Dict[str, Any]]) -> Select:
    if not sort_spec:
        return stmt
    for key, direction in sort_spec.items():
        col = column(key)
        stmt = stmt.order_by(col.desc() if is_descending(direction) else col.asc())
    return stmt


def projected_columns(projection: Optional[Dict[str, Any]]) -> List[str]:
    if not projection:
        return []
    return [
        name for name, include in projection.items()
        if include is True or (not isinstance(include, bool) and include == 1)
    ]


def build_find_query(plan: QueryPlan, table_name: str) -> Select:
    columns = projected_columns(plan.projection)
    if columns:
        stmt = select(*[column(c) for c in columns])
    else:
        stmt = select(literal_column("*"))
    stmt = stmt.select_from(table_clause(table_name))

    stmt = apply_filter(stmt, plan.filter)
    stmt = apply_sort(stmt, plan.sort)
    return stmt.limit(plan.limit or DEFAULT_ROW_LIMIT)


def build_count_query(plan: QueryPlan, table_name: str) -> Select:
    stmt = select(func.count().label("count")).select_from(table_clause(table_name))
    return apply_filter(stmt, plan.filter)


def _translate_accumulator(name: str, spec: Any):
    """One `$group` output field -> labelled SQL aggregate, or None if unsupported."""
    if not isinstance(spec, dict) or not spec:
        logger.warning(f"Skipping $group field '{name}': expected an accumulator object")
        return None

    agg_op, agg_field = next(iter(spec.items()))

    if agg_op == "$count" or (agg_op == "$sum" and agg_field == 1):
        return func.count().label(name)

    if agg_op not in AGGREGATE_FUNCTIONS:
        logger.warning(f"Unsupported $group accumulator: {agg_op}")
        return None
    if not isinstance(agg_field, str):
        logger.warning(f"Unsupported {agg_op} expression for '{name}': only field references are translated")
        return None

    return AGGREGATE_FUNCTIONS[agg_op](column(strip_field_marker(agg_field))).label(name)


def build_aggregate_query(
    pipeline: List[Dict[str, Any]],
    table_name: str,
    plan_limit: Optional[int] = None,
) -> Select:
    """
    Partial MongoDB pipeline -> SQL translation.

    Supported stages: $match (WHERE), $group (GROUP BY + aggregates), $limit.
    $sort is accepted but NOT applied. Anything else is ignored, which leaves
    the query ungrouped. Rows are capped at the smaller of $limit and the plan
    limit (DEFAULT_ROW_LIMIT when the plan has none).
    """
    tbl = table_clause(table_name)
    conditions = []
    group_columns = None
    group_by = None
    stage_limit = None

    for stage in pipeline:
        if not isinstance(stage, dict):
            logger.warning(f"Ignoring malformed pipeline stage: {stage!r}")
            continue

        for stage_name, body in stage.items():
            if stage_name == "$match":
                conditions.extend(build_conditions(body if isinstance(body, dict) else None))
            elif stage_name == "$group" and isinstance(body, dict):
                aggregations = [
                    agg for agg in (
                        _translate_accumulator(key, value)
                        for key, value in body.items() if key != "_id"
                    ) if agg is not None
                ]
                group_key = body.get("_id")

                if isinstance(group_key, str):
                    group_field = column(strip_field_marker(group_key))
                    group_columns = [group_field.label("_id"), *aggregations]
                    group_by = group_field
                elif group_key is None and aggregations:
                    group_columns = aggregations
                    group_by = None
                else:
                    logger.warning(f"Unsupported $group _id: {group_key!r}, leaving query ungrouped")
            elif stage_name == "$sort":
                logger.debug("$sort inside an aggregate pipeline is not applied")
            elif stage_name == "$limit":
                if isinstance(body, int) and not isinstance(body, bool) and body > 0:
                    stage_limit = body
            else:
                logger.warning(f"Unsupported pipeline stage ignored: {stage_name}")

    if group_columns:
        stmt = select(*group_columns).select_from(tbl)
    else:
        stmt = select(literal_column("*")).select_from(tbl)

    if conditions:
        stmt = stmt.where(and_(*conditions))
    if group_by is not None:
        stmt = stmt.group_by(group_by)

    limits = [n for n in (stage_limit, plan_limit or DEFAULT_ROW_LIMIT) if n]
    stmt = stmt.limit(min(limits))

    return stmt


# ============================================================================
# ADAPTER
# ============================================================================

class PgAdapter(DatabaseAdapter):
    """PostgreSQL adapter backed by a pooled SQLAlchemy AsyncEngine."""

    engine = Engine.POSTGRES

    def __init__(self, settings: Settings, engine: Optional[AsyncEngine] = None):
        self.settings = settings
        self._engine: Optional[AsyncEngine] = None
        self._provided_engine = engine

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def _create_engine(self) -> AsyncEngine:
        pool_min = self.settings.pg_pool_min
        pool_max = self.settings.pg_pool_max
        return create_async_engine(
            self.settings.postgres_url,
            pool_size=pool_min,
            max_overflow=max(pool_max - pool_min, 0),
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            connect_args={"timeout": 10},
        )

    async def connect(self) -> None:
        if self._engine is not None:
            return

        engine = None
        try:
            engine = self._provided_engine or self._create_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            self._engine = engine
            logger.info(
                f"PostgreSQL connected successfully "
                f"({self.settings.pg_host}:{self.settings.pg_port}/{self.settings.pg_db})"
            )
        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            if engine is not None and engine is not self._provided_engine:
                await engine.dispose()
            raise DatabaseError("PostgreSQL connection failed")

    async def disconnect(self) -> None:
        if self._engine is None:
            return

        try:
            await self._engine.dispose()
            logger.info("PostgreSQL disconnected successfully")
        except Exception as e:
            logger.error(f"Error disconnecting from PostgreSQL: {e}")
            raise DatabaseError("PostgreSQL disconnection failed")
        finally:
            self._engine = None

    async def _apply_statement_timeout(self, conn: AsyncConnection) -> None:
        # Transaction-local; reset automatically when the transaction ends
        if conn.dialect.name == "postgresql":
            await conn.execute(
                select(func.set_config("statement_timeout", str(STATEMENT_TIMEOUT_MS), True))
            )

    async def execute(self, plan: QueryPlan) -> QueryResult:
        if self._engine is None:
            raise DatabaseError(DB_NOT_INITIALIZED)

        target = plan.resolve_target(Engine.POSTGRES)
        table_name = target.table if target else None
        operation = plan.operation

        try:
            if operation == Operation.RAW_SQL:
                raise DatabaseError(RAW_SQL_NOT_PERMITTED)

            if operation in (Operation.FIND, Operation.COUNT, Operation.AGGREGATE) and not table_name:
                raise DatabaseError(f"Table name is required for {operation.value} operation")

            if operation == Operation.FIND:
                stmt = build_find_query(plan, table_name)
                async with self._engine.begin() as conn:
                    await self._apply_statement_timeout(conn)
                    result = await conn.execute(stmt)
                    rows = [dict(row._mapping) for row in result]
                logger.info(f"PostgreSQL find on {table_name}: {len(rows)} rows")
                return QueryResult(rows=rows)

            if operation == Operation.COUNT:
                stmt = build_count_query(plan, table_name)
                async with self._engine.connect() as conn:
                    result = await conn.execute(stmt)
                    value = result.scalar()
                count = int(value or 0)
                return QueryResult(rows=[{"count": count}], raw={"count": count})

            if operation == Operation.AGGREGATE:
                if not plan.pipeline:
                    raise DatabaseError("Aggregate operation requires a pipeline")
                stmt = build_aggregate_query(plan.pipeline, table_name, plan.limit)
                async with self._engine.connect() as conn:
                    result = await conn.execute(stmt)
                    rows = [dict(row._mapping) for row in result]
                logger.info(f"PostgreSQL aggregate on {table_name}: {len(rows)} rows")
                return QueryResult(rows=rows)

            raise DatabaseError(f"{UNSUPPORTED_OPERATION}: {operation.value}")

        except DatabaseError:
            raise
        except Exception as e:
            logger.error(f"PostgreSQL execution error: {e}")
            raise DatabaseError("PostgreSQL query execution failed")

    async def describe_tables(self, schema: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Table -> column descriptions, read with SQLAlchemy's inspector."""
        if self._engine is None:
            raise DatabaseError(DB_NOT_INITIALIZED)

        def _inspect(sync_conn) -> Dict[str, List[Dict[str, Any]]]:
            inspector = inspect(sync_conn)
            tables = {}
            for table_name in inspector.get_table_names(schema=schema):
                tables[table_name] = [
                    {
                        "name": col["name"],
                        "type": str(col["type"]),
                        "nullable": col.get("nullable", True),
                    }
                    for col in inspector.get_columns(table_name, schema=schema)
                ]
            return tables

        async with self._engine.connect() as conn:
            return await conn.run_sync(_inspect)
