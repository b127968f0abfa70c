"""
AskYourDB - Query Plan Model
============================

The QueryPlan is the only contract between plan generation (LLM output),
validation, and execution. Nothing here talks to a database.

WIRE SHAPE (permissive, what the LLM emits):
    {
        "operation": "find" | "aggregate" | "count" | ...,
        "table": "orders",           # relational target
        "collection": "orders",      # document target (either/both may be set)
        "filter": {"status": "active", "total": {"$gt": 100}},
        "projection": {"name": 1},
        "pipeline": [{"$match": {...}}, {"$group": {...}}],
        "limit": 10,
        "sort": {"total": -1}
    }

  or, when the question cannot be planned yet:

    {"ambiguous": true, "clarify": "Which table?"}

INTERNAL SHAPE:
    QueryPlan.resolve_target(engine) -> MongoTarget | PostgresTarget
"""

import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from errors import ValidationError, EMPTY_PLAN, UNSUPPORTED_OPERATION

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    FIND = "find"
    AGGREGATE = "aggregate"
    COUNT = "count"
    RAW_SQL = "rawSql"
    # Reserved: adapters must refuse these explicitly
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class Engine(str, Enum):
    MONGO = "mongo"
    POSTGRES = "postgres"


# ============================================================================
# TARGETS (discriminated by engine)
# ============================================================================

@dataclass(frozen=True)
class MongoTarget:
    collection: str
    engine: Engine = Engine.MONGO


@dataclass(frozen=True)
class PostgresTarget:
    table: str
    engine: Engine = Engine.POSTGRES


PlanTarget = Union[MongoTarget, PostgresTarget]


@dataclass(frozen=True)
class SchemaHint:
    """
    Identifier allow-lists for one request.

    A None list means "not provided" and falls back to the process default.
    """
    tables: Optional[List[str]] = None
    collections: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SchemaHint":
        if not data:
            return cls()
        tables = data.get("tables")
        collections = data.get("collections")
        return cls(
            tables=list(tables) if isinstance(tables, (list, tuple)) else None,
            collections=list(collections) if isinstance(collections, (list, tuple)) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        if self.tables is not None:
            data["tables"] = list(self.tables)
        if self.collections is not None:
            data["collections"] = list(self.collections)
        return data


@dataclass(frozen=True)
class ClarificationRequest:
    """Plan generation could not produce a plan and needs more input."""
    clarify: str


@dataclass(frozen=True)
class QueryPlan:
    operation: Operation
    collection: Optional[str] = None
    table: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    projection: Optional[Dict[str, Any]] = None
    pipeline: Optional[List[Dict[str, Any]]] = None
    sql: Optional[str] = None
    params: Optional[List[Any]] = None
    limit: Optional[int] = None
    sort: Optional[Dict[str, Any]] = None

    def resolve_target(self, engine: Engine) -> Optional[PlanTarget]:
        """
        Pick the identifier the given engine executes against.

        The document store only reads `collection`. The relational store reads
        `table` and falls back to `collection` for Mongo-style plans.
        Returns None when the engine's identifier is missing.
        """
        if engine == Engine.MONGO:
            return MongoTarget(self.collection) if self.collection else None
        name = self.table or self.collection
        return PostgresTarget(name) if name else None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape, omitting unset fields."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["operation"] = self.operation.value
        return data


ParsedPlan = Union[QueryPlan, ClarificationRequest]


def is_ambiguous(raw: Any) -> bool:
    if isinstance(raw, ClarificationRequest):
        return True
    return isinstance(raw, dict) and bool(raw.get("ambiguous"))


def _optional_mapping(raw: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    # Content is the adapters' concern; anything that is not an object is dropped
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        logger.warning(f"Ignoring plan field '{key}': expected an object, got {type(value).__name__}")
        return None
    return value


def _optional_identifier(raw: Dict[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Plan field '{key}' must be a string")
    return value


def _optional_limit(raw: Dict[str, Any]) -> Optional[int]:
    """Positive row count, or None (adapter default) for anything else."""
    value = raw.get("limit")
    if value is None:
        return None
    # bool is an int subclass; "limit": true is not a row count
    if isinstance(value, bool):
        value = None
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    elif isinstance(value, float) and value.is_integer():
        value = int(value)

    if not isinstance(value, int):
        logger.warning(f"Ignoring non-numeric plan limit: {raw.get('limit')!r}")
        return None
    if value <= 0:
        return None
    return value


def parse_operation(value: Any) -> Operation:
    if value is None or value == "":
        raise ValidationError("Plan is missing an operation")
    if isinstance(value, Operation):
        return value
    try:
        return Operation(value)
    except ValueError:
        raise ValidationError(f"{UNSUPPORTED_OPERATION}: {value}")


def parse_plan(raw: Any) -> ParsedPlan:
    """
    Turn untrusted plan-generation output into a typed plan.

    Only the shape is checked here (known operation, string identifiers,
    list pipeline). A limit that is not a positive number and a filter,
    projection or sort that is not an object are dropped, not rejected.
    Policy (allow-lists, raw SQL, limits) is plan_validator's job.

    Raises:
        ValidationError: empty input, unknown operation, non-string identifier,
            non-list pipeline
    """
    if isinstance(raw, (QueryPlan, ClarificationRequest)):
        return raw
    if not raw or not isinstance(raw, dict):
        raise ValidationError(EMPTY_PLAN)

    if raw.get("ambiguous"):
        return ClarificationRequest(clarify=str(raw.get("clarify") or ""))

    pipeline = raw.get("pipeline")
    if pipeline is not None and not isinstance(pipeline, list):
        raise ValidationError("Plan field 'pipeline' must be an array")

    params = raw.get("params")
    if params is not None and not isinstance(params, list):
        params = [params]

    return QueryPlan(
        operation=parse_operation(raw.get("operation")),
        collection=_optional_identifier(raw, "collection"),
        table=_optional_identifier(raw, "table"),
        filter=_optional_mapping(raw, "filter"),
        projection=_optional_mapping(raw, "projection"),
        pipeline=pipeline,
        sql=raw.get("sql"),
        params=params,
        limit=_optional_limit(raw),
        sort=_optional_mapping(raw, "sort"),
    )


def is_descending(direction: Any) -> bool:
    """Sort direction rule shared by both adapters: -1 or "desc" is descending."""
    if isinstance(direction, bool):
        return False
    return direction == -1 or direction == "desc"
