from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Ensure environment variables from .env are available when running locally.
try:
    load_dotenv()
except PermissionError:
    logger.warning(
        "Could not read .env file due to insufficient permissions. "
        "Continuing with existing environment variables.",
    )


MODEL_MODULES = ["shared.database.workflow_models"]
SQLITE_MEMORY_URL = "sqlite://:memory:"


def _get_bool(name: str, default: str = "false") -> bool:
    """Read boolean-ish environment variables safely."""
    value = os.getenv(name, default)
    return value.lower() in {"1", "true", "yes", "on"}


def _parse_postgres_credentials(url: str) -> Dict[str, Any]:
    """Convert a postgres-style DSN into asyncpg credential kwargs."""
    parsed = urlparse(url)
    if parsed.scheme not in {"postgres", "postgresql"}:
        raise ValueError("DATABASE_URL must use postgres:// or postgresql:// scheme")

    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username,
        "password": parsed.password,
        "database": (parsed.path or "").lstrip("/") or "postgres",
        "minsize": DB_MIN_CONNECTIONS,
        "maxsize": DB_MAX_CONNECTIONS,
    }


def build_tortoise_config(db_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the Tortoise config dict for ``db_url``.

    Postgres DSNs are expanded into asyncpg credentials; any other URL
    (sqlite://...) is handed to Tortoise as-is. No URL means in-memory sqlite.
    """
    url = db_url or SQLITE_MEMORY_URL
    if urlparse(url).scheme in {"postgres", "postgresql"}:
        connection: Any = {
            "engine": "tortoise.backends.asyncpg",
            "credentials": _parse_postgres_credentials(url),
        }
    else:
        connection = url

    return {
        "connections": {"default": connection},
        "apps": {
            "models": {
                "models": list(MODEL_MODULES),
                "default_connection": "default",
            },
        },
        "use_tz": True,
        "timezone": "UTC",
    }


DATABASE_URL = os.getenv("DATABASE_URL")
DB_MAX_CONNECTIONS = int(os.getenv("DB_MAX_CONNECTIONS", "10"))
DB_MIN_CONNECTIONS = int(os.getenv("DB_MIN_CONNECTIONS", "1"))
# In-memory sqlite has no migrations to rely on
DB_GENERATE_SCHEMAS = _get_bool("DB_GENERATE_SCHEMAS", "false") or DATABASE_URL is None

try:
    TORTOISE_ORM = build_tortoise_config(DATABASE_URL)
except ValueError as exc:
    raise RuntimeError(f"Invalid DATABASE_URL: {exc}") from exc


__all__ = [
    "DATABASE_URL",
    "DB_GENERATE_SCHEMAS",
    "DB_MAX_CONNECTIONS",
    "DB_MIN_CONNECTIONS",
    "MODEL_MODULES",
    "SQLITE_MEMORY_URL",
    "TORTOISE_ORM",
    "build_tortoise_config",
]
