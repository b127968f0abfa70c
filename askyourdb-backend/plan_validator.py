"""
AskYourDB - Plan Validation Layer
=================================

PURPOSE:
Plans come from an LLM and are treated as untrusted input. This module is the
security boundary between plan generation and the database adapters.

POLICY:
- FAIL CLOSED on operation and identifiers:
    * rawSql is always rejected, whatever the `sql` text says
    * table / collection must be in the allow-list (schema hint, else defaults)
    * aggregate needs a non-empty pipeline
- CORRECT, don't reject, an oversized limit: clamp it to MAX_QUERY_LIMIT
- Filter / projection / sort content is NOT inspected here. Unknown filter
  operators are dropped later by the adapter (fail open).

WHAT THIS IS NOT:
- NOT stateful: pure function of (plan, schema hint, settings)
- NOT a rewriter: the only change ever made is the limit clamp

ARCHITECTURAL POSITION:
    Plan generation -> [PLAN VALIDATION] -> AdapterFactory -> Adapter.execute
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Optional, Union

from config import Settings, get_default_settings
from errors import (
    ValidationError,
    EMPTY_PLAN,
    RAW_SQL_NOT_PERMITTED,
    UNKNOWN_TABLE,
    UNKNOWN_COLLECTION,
    AGGREGATE_REQUIRES_PIPELINE,
)
from query_plan import (
    ClarificationRequest,
    Operation,
    QueryPlan,
    SchemaHint,
    is_ambiguous,
    parse_plan,
)

logger = logging.getLogger(__name__)

RawPlan = Union[Dict[str, Any], QueryPlan, ClarificationRequest, None]
HintInput = Union[SchemaHint, Dict[str, Any], None]


def _coerce_hint(schema_hint: HintInput) -> SchemaHint:
    if isinstance(schema_hint, SchemaHint):
        return schema_hint
    return SchemaHint.from_dict(schema_hint)


def validate_plan(
    plan: RawPlan,
    schema_hint: HintInput = None,
    settings: Optional[Settings] = None,
):
    """
    Enforce the safety policy on a plan before execution.

    Args:
        plan: Raw plan mapping from plan generation, or an already parsed plan
        schema_hint: Optional allow-lists overriding the process defaults
        settings: Settings providing the limit ceiling and default allow-lists

    Returns:
        The ambiguity response unchanged, or a validated QueryPlan

    Raises:
        ValidationError: if the plan violates the policy
    """
    if not plan:
        raise ValidationError(EMPTY_PLAN)

    # Ambiguity passes through untouched; callers branch on it upstream
    if is_ambiguous(plan):
        return plan

    settings = settings or get_default_settings()
    hint = _coerce_hint(schema_hint)
    parsed = parse_plan(plan)

    if parsed.operation == Operation.RAW_SQL:
        logger.warning("Rejected rawSql plan")
        raise ValidationError(RAW_SQL_NOT_PERMITTED)

    max_limit = settings.max_query_limit
    if parsed.limit is not None and parsed.limit > max_limit:
        logger.info(f"Clamping plan limit {parsed.limit} -> {max_limit}")
        parsed = replace(parsed, limit=max_limit)

    if parsed.table:
        allowed_tables = hint.tables if hint.tables is not None else settings.default_tables
        if parsed.table not in allowed_tables:
            raise ValidationError(f"{UNKNOWN_TABLE}: {parsed.table}")

    if parsed.collection:
        allowed_collections = (
            hint.collections if hint.collections is not None else settings.default_collections
        )
        if parsed.collection not in allowed_collections:
            raise ValidationError(f"{UNKNOWN_COLLECTION}: {parsed.collection}")

    if parsed.operation == Operation.AGGREGATE and not parsed.pipeline:
        raise ValidationError(AGGREGATE_REQUIRES_PIPELINE)

    return parsed
