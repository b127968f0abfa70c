"""
AskYourDB - Database Adapter Contract
=====================================

Both backends (MongoDB, PostgreSQL) implement DatabaseAdapter so a single
validated QueryPlan can run against either engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from query_plan import Engine, QueryPlan

# Ceilings the adapters apply on their own, after validation
DEFAULT_ROW_LIMIT = 100
STATEMENT_TIMEOUT_MS = 30000


@dataclass
class QueryResult:
    """Uniform row-set returned by every adapter."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    raw: Optional[Any] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)


class DatabaseAdapter(ABC):
    """Engine-specific executor for validated plans."""

    engine: Engine

    @abstractmethod
    async def connect(self) -> None:
        """Open the shared connection / pool. Safe to call when connected."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the connection / pool. Safe to call when disconnected."""

    @abstractmethod
    async def execute(self, plan: QueryPlan) -> QueryResult:
        """Run a validated plan and return its rows."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...
