"""
AskYourDB - Query Pipeline
==========================

PURPOSE:
One place that runs a question end to end, shared by the JSON and the
streaming endpoints:

    cache -> plan generation -> validation -> adapter.execute -> summarization

FAILURE POLICY:
- Generation, validation and execution errors propagate (AppError subclasses)
- Summarization never fails the request (Summarizer falls back locally)
- Ambiguity is returned as a ClarificationRequest, never raised

STREAMING:
prepare() does everything that can fail BEFORE the first byte is sent.
stream_events() then yields meta -> content* -> complete. The HTTP layer
turns the dicts into SSE frames.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Union

from adapter_factory import AdapterFactory
from config import Settings
from errors import ValidationError, LLM_NO_PLAN
from llm_client import PlanGenerator, Summarizer
from plan_validator import validate_plan
from query_cache import QueryCache
from query_plan import ClarificationRequest, QueryPlan, SchemaHint, parse_plan

logger = logging.getLogger(__name__)


@dataclass
class PreparedQuery:
    """A question that has been planned, validated and executed."""
    question: str
    plan: QueryPlan
    rows: List[Dict[str, Any]] = field(default_factory=list)
    started_at: float = 0.0

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def elapsed_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)


@dataclass
class QueryResponse:
    answer: str
    data: List[Dict[str, Any]]
    plan: Dict[str, Any]
    row_count: int
    execution_time: str
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "answer": self.answer,
            "data": self.data,
            "meta": {
                "plan": self.plan,
                "row_count": self.row_count,
                "execution_time": self.execution_time,
                "cached": self.cached,
            },
        }


def clarification_payload(request: ClarificationRequest) -> Dict[str, Any]:
    return {
        "success": True,
        "clarify": request.clarify,
        "requires_clarification": True,
    }


class QueryService:
    """Request pipeline over app-scoped collaborators."""

    def __init__(
        self,
        settings: Settings,
        adapter_factory: AdapterFactory,
        cache: QueryCache,
        plan_generator: PlanGenerator,
        summarizer: Summarizer,
    ):
        self.settings = settings
        self.adapter_factory = adapter_factory
        self.cache = cache
        self.plan_generator = plan_generator
        self.summarizer = summarizer

    def schema_hint(self) -> SchemaHint:
        """Allow-lists sent to the LLM and enforced by the validator."""
        return SchemaHint(
            tables=list(self.settings.default_tables),
            collections=list(self.settings.default_collections),
        )

    async def prepare(self, question: str) -> Union[PreparedQuery, ClarificationRequest]:
        """
        Plan, validate and execute one question.

        Raises:
            LLMError: plan generation failed
            ValidationError: plan rejected
            DatabaseError: adapter unavailable or execution failed
        """
        started_at = time.time()
        hint = self.schema_hint()
        logger.info(f"Processing query: {question[:100]}")

        raw_plan = await self.plan_generator.generate(question, hint.to_dict())
        if not raw_plan or not isinstance(raw_plan, dict):
            raise ValidationError(LLM_NO_PLAN)

        checked = validate_plan(raw_plan, hint, self.settings)
        if isinstance(checked, dict):
            checked = parse_plan(checked)
        if isinstance(checked, ClarificationRequest):
            logger.info("Query requires clarification")
            return checked

        adapter = await self.adapter_factory.get_adapter()
        result = await adapter.execute(checked)

        return PreparedQuery(
            question=question,
            plan=checked,
            rows=result.rows,
            started_at=started_at,
        )

    async def run(self, question: str) -> Union[QueryResponse, ClarificationRequest]:
        """Full request: cached response, or a fresh answer (cached when non-empty)."""
        hint = self.schema_hint().to_dict()

        cached = self.cache.get(question, hint)
        if cached is not None:
            logger.info(f"Cache hit for query: {question[:100]}")
            return QueryResponse(**{**cached, "cached": True})

        prepared = await self.prepare(question)
        if isinstance(prepared, ClarificationRequest):
            return prepared

        answer = await self.summarizer.summarize(question, prepared.rows)
        duration = prepared.elapsed_ms()
        logger.info(f"Query completed in {duration}ms, returned {prepared.row_count} rows")

        response = QueryResponse(
            answer=answer,
            data=prepared.rows,
            plan=prepared.plan.to_dict(),
            row_count=prepared.row_count,
            execution_time=f"{duration}ms",
        )

        if prepared.row_count > 0:
            self.cache.set(question, {
                "answer": response.answer,
                "data": response.data,
                "plan": response.plan,
                "row_count": response.row_count,
                "execution_time": response.execution_time,
            }, hint)

        return response

    async def stream_events(self, prepared: PreparedQuery) -> AsyncIterator[Dict[str, Any]]:
        """meta -> content fragments -> complete"""
        yield {
            "type": "meta",
            "row_count": prepared.row_count,
            "execution_time": f"{prepared.elapsed_ms()}ms",
        }

        async for fragment in self.summarizer.stream_summary(prepared.question, prepared.rows):
            yield {"type": "content", "content": fragment}

        yield {
            "type": "complete",
            "data": prepared.rows,
            "plan": prepared.plan.to_dict(),
        }
        logger.info(f"Streaming query completed in {prepared.elapsed_ms()}ms")
