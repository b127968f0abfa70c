"""
AskYourDB - Natural Language Database Query API
================================================

Ask a question in plain English, get an answer from MongoDB or PostgreSQL.

Architecture:
- One-shot LLM call: question -> QueryPlan (JSON), never raw SQL
- Plan validator: allow-listed identifiers, clamped limits, rawSql refused
- Adapter layer: the same plan runs on MongoDB (Motor) or PostgreSQL (SQLAlchemy)
- One-shot LLM call: rows -> natural-language answer (local fallback on failure)

All collaborators are app-scoped and live on app.state:
    settings, adapter_factory, query_cache, schema_cache, query_service
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, AsyncIterator
import json
import logging
from datetime import datetime, timezone
import time
import uuid
import asyncio
from contextlib import asynccontextmanager

from adapter_factory import AdapterFactory
from config import Settings, load_settings
from errors import AppError
from llm_client import PlanGenerator, Summarizer
from query_cache import QueryCache, run_periodic_cleanup
from query_plan import ClarificationRequest
from query_service import QueryService, clarification_payload
from schema_introspection import SchemaCache

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

APP_LOGGERS = (
    "__main__", "main", "adapter_factory", "config", "json_extract", "llm_client",
    "mongo_adapter", "pg_adapter", "plan_validator", "query_cache", "query_plan",
    "query_service", "schema_introspection",
)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    """WARNING for libraries, `level` for our own modules."""
    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(level)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def error_hint(message: str) -> Optional[str]:
    if "API key" in message:
        return "Check your .env file and ensure your API keys are correctly configured."
    if "rate limit" in message:
        return "You have exceeded the rate limit. Please wait a moment before trying again."
    if "quota" in message:
        return "Your API usage quota has been exceeded. Please check your account billing."
    return None


def build_error_body(message: str, is_operational: bool, settings: Optional[Settings]) -> Dict[str, Any]:
    show_message = is_operational or (settings is not None and settings.is_development)
    body = {
        "success": False,
        "error_id": str(uuid.uuid4()),
        "message": message if show_message else GENERIC_ERROR_MESSAGE,
        "timestamp": utc_now_iso(),
    }
    hint = error_hint(message)
    if hint:
        body["hint"] = hint
    return body


def sse_frame(payload: Any) -> str:
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload, default=str)}\n\n"


# Pydantic Models
class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=500)
    context: Optional[Dict[str, Any]] = None


def create_app(
    settings: Optional[Settings] = None,
    adapter_factory: Optional[AdapterFactory] = None,
    plan_generator: Optional[PlanGenerator] = None,
    summarizer: Optional[Summarizer] = None,
) -> FastAPI:
    """
    Build the API. Missing collaborators are created at startup from settings
    (loaded from the environment when not given).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize services on startup, release the database on shutdown"""
        try:
            app_settings = settings or load_settings()
            configure_logging(app_settings.log_level)
            logger.info("Initializing AskYourDB...")

            cache = QueryCache(
                max_size=app_settings.cache_max_size,
                default_ttl=app_settings.cache_ttl_seconds,
            )
            factory = adapter_factory or AdapterFactory(app_settings)

            app.state.settings = app_settings
            app.state.started_at = time.time()
            app.state.adapter_factory = factory
            app.state.query_cache = cache
            app.state.schema_cache = SchemaCache(app_settings)
            app.state.query_service = QueryService(
                settings=app_settings,
                adapter_factory=factory,
                cache=cache,
                plan_generator=plan_generator or PlanGenerator(app_settings),
                summarizer=summarizer or Summarizer(app_settings),
            )

            logger.info("=" * 60)
            logger.info("AskYourDB Ready!")
            logger.info(f"Database engine: {app_settings.db_engine}")
            logger.info(f"LLM provider: {app_settings.llm_provider} ({app_settings.llm_model})")
            logger.info("=" * 60)

        except Exception as e:
            logger.error(f"Startup failed: {str(e)}")
            raise

        cleanup_task = asyncio.create_task(run_periodic_cleanup(cache))

        yield  # Server is running

        logger.info("Shutting down AskYourDB...")
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await factory.disconnect_adapter()

    app = FastAPI(
        title="AskYourDB API",
        description="Natural-language questions over MongoDB or PostgreSQL via validated query plans",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # ERROR HANDLERS
    # ========================================================================

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        app_settings = getattr(request.app.state, "settings", None)
        body = build_error_body(exc.message, exc.is_operational, app_settings)
        logger.error(
            f"[{body['error_id']}] {request.method} {request.url.path} -> "
            f"{exc.status} {exc.__class__.__name__}: {exc.message}"
        )
        return JSONResponse(status_code=exc.status, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        message = ", ".join(
            f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
            for err in exc.errors()
        )
        body = build_error_body(message, True, getattr(request.app.state, "settings", None))
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        app_settings = getattr(request.app.state, "settings", None)
        body = build_error_body(str(exc), False, app_settings)
        logger.exception(f"[{body['error_id']}] Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content=body)

    # ========================================================================
    # HEALTH
    # ========================================================================

    @app.get("/")
    async def root():
        return {
            "message": "AskYourDB API",
            "version": "1.0.0",
            "endpoints": ["/api/query", "/api/query/stream", "/health", "/cache/stats", "/database/schema"],
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Database reachable + LLM key configured"""
        state = request.app.state
        health = {
            "status": "ok",
            "timestamp": utc_now_iso(),
            "uptime": time.time() - state.started_at,
            "environment": state.settings.app_env,
        }

        try:
            await state.adapter_factory.get_adapter()
            health["database"] = {"connected": True, "type": state.settings.db_engine}
            health["services"] = {"llm": bool(state.settings.llm_api_key)}
            return health
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            health["status"] = "error"
            health["error"] = str(e)
            health["database"] = {"connected": False, "type": state.settings.db_engine}
            return JSONResponse(status_code=503, content=health)

    @app.get("/health/live")
    async def liveness(request: Request):
        """Process is up; reports whether the adapter exists without connecting it"""
        return {"status": "alive", "database_initialized": request.app.state.adapter_factory.is_initialized}

    @app.get("/health/ready")
    async def readiness(request: Request):
        try:
            await request.app.state.adapter_factory.get_adapter()
            return {"status": "ready"}
        except Exception as e:
            return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})

    # ========================================================================
    # QUERY
    # ========================================================================

    @app.post("/api/query")
    async def query(body: QueryRequest, request: Request):
        service: QueryService = request.app.state.query_service
        result = await service.run(body.question)

        if isinstance(result, ClarificationRequest):
            return clarification_payload(result)
        return result.to_dict()

    @app.post("/api/query/stream")
    async def query_stream(body: QueryRequest, request: Request):
        service: QueryService = request.app.state.query_service
        # Failures here happen before any byte is sent and go through the error handlers
        prepared = await service.prepare(body.question)

        async def event_stream() -> AsyncIterator[str]:
            if isinstance(prepared, ClarificationRequest):
                yield sse_frame({"type": "clarify", "content": prepared.clarify})
                yield sse_frame("[DONE]")
                return

            try:
                async for event in service.stream_events(prepared):
                    yield sse_frame(event)
            except Exception as e:
                logger.error(f"Streaming query handler error: {e}")
                message = e.message if isinstance(e, AppError) else str(e)
                yield sse_frame({"type": "error", "message": message or "Unknown error"})
            yield sse_frame("[DONE]")

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    # ========================================================================
    # CACHE / SCHEMA
    # ========================================================================

    @app.get("/cache/stats")
    async def cache_stats(request: Request):
        return {"success": True, "stats": request.app.state.query_cache.get_stats()}

    @app.post("/cache/clear")
    async def cache_clear(request: Request):
        cleared = request.app.state.query_cache.clear()
        request.app.state.schema_cache.invalidate()
        return {"success": True, "cleared": cleared}

    @app.get("/database/schema")
    async def get_database_schema(request: Request):
        """Introspected schema (cached for 5 minutes)"""
        state = request.app.state
        adapter = await state.adapter_factory.get_adapter()
        schema = await state.schema_cache.get_schema(adapter)
        return {"success": True, "engine": state.settings.db_engine, "schema": schema.to_dict()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
