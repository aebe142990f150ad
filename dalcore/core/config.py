"""Library settings with environment-based simple classes."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Final

from dotenv import load_dotenv

# Public selector env var
ENV_VAR: Final[str] = "DALCORE_ENV"  # 'development' | 'testing' | 'production'


# Loads .env in development (no-op when missing)
load_dotenv()


def env_bool(name: str, default: bool = False) -> bool:
    """Parse a boolean flag from an environment variable.

    Parameters
    ----------
    name: str
        Environment variable to inspect.
    default: bool, optional
        Value returned when the variable is unset. Defaults to ``False``.

    Returns
    -------
    bool
        ``True`` if the value resembles ``{"1", "true", "yes", "y", "on"}``
        ignoring case; otherwise ``False`` or ``default`` when missing.
    """
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


def env_str(name: str, default: str | None = None) -> str | None:
    """Return a stripped string variable, treating blanks as unset."""
    val = os.getenv(name)
    if val is None or not val.strip():
        return default
    return val.strip()


class BaseConfig:
    """Base configuration shared across environments.

    Attributes
    ----------
    DATABASE_URL: str
        Connection string for the blocking engine.
    ASYNC_DATABASE_URL: str
        Connection string for the asyncio engine (async driver required).
    SQLALCHEMY_ECHO: bool
        When ``True`` SQLAlchemy logs SQL statements for debugging.
    ISOLATION_LEVEL: str | None
        Isolation level applied to every data context transaction. ``None``
        keeps the engine's default.
    ENSURE_SCHEMA: bool
        Create missing tables when a data context is opened.
    LOG_LEVEL: str
        Root logging verbosity (``INFO`` by default).

    Notes
    -----
    Values are primarily sourced from environment variables, enabling
    configuration without code changes.
    """

    # DB
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dalcore.db")
    ASYNC_DATABASE_URL = os.getenv("ASYNC_DATABASE_URL", "sqlite+aiosqlite:///./dalcore.db")
    SQLALCHEMY_ECHO = env_bool("SQLALCHEMY_ECHO", False)

    # Transactions
    ISOLATION_LEVEL = env_str("ISOLATION_LEVEL")
    ENSURE_SCHEMA = env_bool("ENSURE_SCHEMA", False)

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    DEBUG = False
    TESTING = False


class DevelopmentConfig(BaseConfig):
    """Configuration tailored for local development.

    Notes
    -----
    Creates missing tables on context open unless ``ENSURE_SCHEMA`` says
    otherwise, and honors ``SQLALCHEMY_ECHO`` for verbose SQL logging.
    """

    DEBUG = env_bool("DALCORE_DEBUG", True)
    ENSURE_SCHEMA = env_bool("ENSURE_SCHEMA", True)
    SQLALCHEMY_ECHO = env_bool("SQLALCHEMY_ECHO", False)


class TestingConfig(BaseConfig):
    """Configuration for automated test runs.

    Notes
    -----
    - Forces ``TESTING`` mode and disables debug logs.
    - Uses a file-backed SQLite database so concurrent contexts own separate
      connections, unless ``TEST_DATABASE_URL`` is set.
    """

    TESTING = True
    DEBUG = False
    DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///./dalcore-test.db")
    ASYNC_DATABASE_URL = os.getenv(
        "TEST_ASYNC_DATABASE_URL", "sqlite+aiosqlite:///./dalcore-test.db"
    )
    SQLALCHEMY_ECHO = env_bool("SQLALCHEMY_ECHO", False)
    ENSURE_SCHEMA = True


class ProductionConfig(BaseConfig):
    """Configuration defaults for production deployments.

    Notes
    -----
    Keeps SQL echoing and schema creation disabled; migrations own the schema.
    """

    DEBUG = False
    SQLALCHEMY_ECHO = False
    ENSURE_SCHEMA = False
    ISOLATION_LEVEL = env_str("ISOLATION_LEVEL", "READ COMMITTED")


# Map names -> classes (simple, explicit)
CONFIG_MAP: Mapping[str, type[BaseConfig]] = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def get_config() -> type[BaseConfig]:
    """Return the configuration class inferred from ``DALCORE_ENV``.

    Returns
    -------
    type[BaseConfig]
        Class whose attributes drive engine and data context construction.

    Notes
    -----
    Falls back to :class:`DevelopmentConfig` when ``DALCORE_ENV`` is unset or
    unknown.
    """
    name = os.getenv(ENV_VAR, "development").strip().lower()
    return CONFIG_MAP.get(name, DevelopmentConfig)
