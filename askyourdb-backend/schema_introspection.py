"""
Schema introspection for the connected database.

PostgreSQL: tables and columns of the `public` schema (SQLAlchemy inspector).
MongoDB:    collection names, plus the top-level fields of one sample document.

Results are cached for 5 minutes by SchemaCache; introspection failures fall
back to the configured default allow-lists instead of failing the request.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import Settings
from db_adapter import DatabaseAdapter
from errors import DatabaseError
from query_plan import Engine

logger = logging.getLogger(__name__)

SCHEMA_CACHE_TTL_SECONDS = 300
POSTGRES_SCHEMA = "public"


@dataclass
class SchemaInfo:
    tables: Optional[List[str]] = None
    collections: Optional[List[str]] = None
    columns: Dict[str, List[str]] = field(default_factory=dict)
    introspected: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"introspected": self.introspected}
        if self.tables is not None:
            data["tables"] = self.tables
        if self.collections is not None:
            data["collections"] = self.collections
        if self.columns:
            data["columns"] = self.columns
        return data


async def _introspect_postgres(adapter, settings: Settings) -> SchemaInfo:
    try:
        described = await adapter.describe_tables(schema=POSTGRES_SCHEMA)
        return SchemaInfo(
            tables=sorted(described),
            columns={name: [col["name"] for col in cols] for name, cols in described.items()},
        )
    except Exception as e:
        logger.error(f"PostgreSQL introspection error: {e}")
        return SchemaInfo(tables=list(settings.default_tables), introspected=False)


async def _introspect_mongo(adapter, settings: Settings) -> SchemaInfo:
    try:
        collections = await adapter.list_collections()
        columns = {}
        for name in collections:
            columns[name] = await adapter.sample_fields(name)
        return SchemaInfo(collections=collections, columns=columns)
    except Exception as e:
        logger.error(f"MongoDB introspection error: {e}")
        return SchemaInfo(collections=list(settings.default_collections), introspected=False)


async def introspect_schema(adapter: DatabaseAdapter, settings: Settings) -> SchemaInfo:
    """
    Read the live schema through the adapter.

    Raises:
        DatabaseError: adapter engine has no introspection support
    """
    if adapter.engine == Engine.POSTGRES:
        return await _introspect_postgres(adapter, settings)
    if adapter.engine == Engine.MONGO:
        return await _introspect_mongo(adapter, settings)

    logger.error(f"Schema introspection failed: unsupported engine {adapter.engine}")
    raise DatabaseError("Failed to introspect database schema")


class SchemaCache:
    """Holds the last introspected schema for a fixed TTL."""

    def __init__(self, settings: Settings, ttl_seconds: int = SCHEMA_CACHE_TTL_SECONDS):
        self.settings = settings
        self.ttl_seconds = ttl_seconds
        self._schema: Optional[SchemaInfo] = None
        self._last_refresh = 0.0

    async def get_schema(self, adapter: DatabaseAdapter) -> SchemaInfo:
        now = time.monotonic()
        if self._schema is not None and now - self._last_refresh < self.ttl_seconds:
            return self._schema

        self._schema = await introspect_schema(adapter, self.settings)
        self._last_refresh = now
        logger.info("Schema cache refreshed")
        return self._schema

    def invalidate(self):
        self._schema = None
        self._last_refresh = 0.0
        logger.info("Schema cache invalidated")
