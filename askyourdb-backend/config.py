"""
AskYourDB - Configuration
=========================

All runtime settings come from environment variables (a local .env file is
loaded first). The database engine is fixed for the process lifetime: the
adapter factory reads it once when the first adapter is built.

USAGE:
    from config import load_settings
    settings = load_settings()          # raises EnvironmentError if invalid
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ============================================================================
# DEFAULTS
# ============================================================================
SUPPORTED_ENGINES = ("mongo", "postgres")
SUPPORTED_PROVIDERS = ("openai", "groq")

DEFAULT_TABLES = ["users", "orders", "products", "customers"]
DEFAULT_COLLECTIONS = ["users", "orders", "products", "customers"]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


@dataclass
class Settings:
    """Process-wide configuration consumed by the validator, adapters and LLM client."""

    app_env: str = "development"
    log_level: str = "INFO"

    # Database
    db_engine: str = "mongo"
    mongo_uri: str = "mongodb://localhost:27017/askyourdb"
    mongo_db: str = "askyourdb"
    pg_host: str = "localhost"
    pg_port: int = 5432
    pg_user: str = "postgres"
    pg_password: str = "postgres"
    pg_db: str = "askyourdb"
    pg_pool_min: int = 2
    pg_pool_max: int = 10

    # LLM
    llm_provider: str = "openai"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"

    # Query policy
    max_query_limit: int = 100
    default_tables: List[str] = field(default_factory=lambda: list(DEFAULT_TABLES))
    default_collections: List[str] = field(default_factory=lambda: list(DEFAULT_COLLECTIONS))

    # Response cache
    cache_max_size: int = 1000
    cache_ttl_seconds: int = 300

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.pg_user}:{self.pg_password}"
            f"@{self.pg_host}:{self.pg_port}/{self.pg_db}"
        )

    @property
    def llm_api_key(self) -> str:
        return self.groq_api_key if self.llm_provider == "groq" else self.openai_api_key

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    def validate(self) -> List[str]:
        """
        Check the settings for problems that would break startup.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        if self.db_engine not in SUPPORTED_ENGINES:
            errors.append(
                f"Unsupported DB_ENGINE: {self.db_engine} "
                f"(expected one of {', '.join(SUPPORTED_ENGINES)})"
            )
        if self.llm_provider not in SUPPORTED_PROVIDERS:
            errors.append(
                f"Unsupported LLM_PROVIDER: {self.llm_provider} "
                f"(expected one of {', '.join(SUPPORTED_PROVIDERS)})"
            )

        if self.llm_provider == "openai" and not self.openai_api_key:
            errors.append("OPENAI_API_KEY is required when using OpenAI. Please add it to your .env file.")
        if self.llm_provider == "groq" and not self.groq_api_key:
            errors.append("GROQ_API_KEY is required when using Groq. Please add it to your .env file.")

        if self.db_engine == "mongo" and not self.mongo_uri:
            errors.append("MONGO_URI is required when using MongoDB")
        if self.db_engine == "postgres" and not self.pg_host:
            errors.append("PG_HOST is required when using PostgreSQL")

        if self.max_query_limit < 1:
            errors.append("MAX_QUERY_LIMIT must be a positive integer")
        if self.pg_pool_min > self.pg_pool_max:
            errors.append("PG_POOL_MIN cannot exceed PG_POOL_MAX")

        return errors


def settings_from_env() -> Settings:
    """Build Settings from the current environment (after loading .env)."""
    load_dotenv()

    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        db_engine=os.getenv("DB_ENGINE", "mongo"),
        mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017/askyourdb"),
        mongo_db=os.getenv("MONGO_DB", "askyourdb"),
        pg_host=os.getenv("PG_HOST", "localhost"),
        pg_port=_env_int("PG_PORT", 5432),
        pg_user=os.getenv("PG_USER", "postgres"),
        pg_password=os.getenv("PG_PASSWORD", "postgres"),
        pg_db=os.getenv("PG_DB", "askyourdb"),
        pg_pool_min=_env_int("PG_POOL_MIN", 2),
        pg_pool_max=_env_int("PG_POOL_MAX", 10),
        llm_provider=os.getenv("LLM_PROVIDER", "openai"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        max_query_limit=_env_int("MAX_QUERY_LIMIT", 100),
        cache_max_size=_env_int("CACHE_MAX_SIZE", 1000),
        cache_ttl_seconds=_env_int("CACHE_TTL_SECONDS", 300),
    )


def load_settings(strict: bool = True) -> Settings:
    """
    Load and validate settings.

    Args:
        strict: Raise EnvironmentError on problems instead of only logging them

    Returns:
        Settings instance
    """
    settings = settings_from_env()
    errors = settings.validate()

    if errors:
        message = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        if strict:
            raise EnvironmentError(message)
        logger.warning(message)

    return settings


_default_settings: Optional[Settings] = None


def get_default_settings() -> Settings:
    """Non-strict settings for code paths called without an explicit Settings."""
    global _default_settings
    if _default_settings is None:
        _default_settings = load_settings(strict=False)
    return _default_settings
