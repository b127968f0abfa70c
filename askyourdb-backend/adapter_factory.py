"""
AskYourDB - Adapter Factory
===========================

Owns the single live DatabaseAdapter for the process. Built lazily on the
first get_adapter() call from settings.db_engine, then reused until
disconnect_adapter() (app shutdown).

One factory is created per app in the FastAPI lifespan and kept on
app.state, so tests can build their own with stubbed adapters.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from config import Settings
from db_adapter import DatabaseAdapter
from errors import DatabaseError

logger = logging.getLogger(__name__)

AdapterBuilder = Callable[[Settings], DatabaseAdapter]


def _build_mongo(settings: Settings) -> DatabaseAdapter:
    from mongo_adapter import MongoAdapter
    return MongoAdapter(settings)


def _build_postgres(settings: Settings) -> DatabaseAdapter:
    from pg_adapter import PgAdapter
    return PgAdapter(settings)


DEFAULT_BUILDERS: Dict[str, AdapterBuilder] = {
    "mongo": _build_mongo,
    "postgres": _build_postgres,
}


class AdapterFactory:
    """Lazy, connect-once holder of the engine adapter."""

    def __init__(self, settings: Settings, builders: Optional[Dict[str, AdapterBuilder]] = None):
        self.settings = settings
        self._builders = builders or DEFAULT_BUILDERS
        self._adapter: Optional[DatabaseAdapter] = None
        self._lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._adapter is not None

    async def get_adapter(self) -> DatabaseAdapter:
        """
        Return the connected adapter, building it on first use.

        Raises:
            DatabaseError: unsupported engine or connection failure
        """
        if self._adapter is not None:
            return self._adapter

        async with self._lock:
            # Another caller may have finished while we waited
            if self._adapter is not None:
                return self._adapter

            engine = self.settings.db_engine
            try:
                builder = self._builders.get(engine)
                if builder is None:
                    raise DatabaseError(f"Unsupported database engine: {engine}")

                adapter = builder(self.settings)
                await adapter.connect()
            except Exception as e:
                logger.error(f"Failed to initialize {engine} adapter: {e}")
                raise DatabaseError("Database connection failed")

            self._adapter = adapter
            logger.info(f"Database adapter initialized: {engine}")
            return adapter

    async def disconnect_adapter(self) -> None:
        if self._adapter is None:
            return

        adapter, self._adapter = self._adapter, None
        await adapter.disconnect()
        logger.info("Database adapter disconnected")
