"""
Shared configuration for the memory refinery.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("refinery")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backend(db_backend: str) -> str:
    return db_backend if db_backend in {"postgres", "sqlite"} else "postgres"


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/refinery.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

# Database initialization controls
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# HTTP surface
HEALTH_CHECK_SCHEMA = _get_bool("HEALTH_CHECK_SCHEMA", True)
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ALLOWED_ORIGINS", "").split(",")
    if origin.strip()
]
TRUSTED_HOSTS = [
    host.strip()
    for host in os.environ.get("TRUSTED_HOSTS", "").split(",")
    if host.strip()
]

# Request/input limits
MAX_MEMORY_CONTENT_LENGTH = _get_int("REFINERY_MAX_MEMORY_CONTENT_LENGTH", 10_000)
MAX_QUERY_LENGTH = _get_int("REFINERY_MAX_QUERY_LENGTH", 1000)
MAX_SUMMARY_LENGTH = _get_int("REFINERY_MAX_SUMMARY_LENGTH", 4000)
MAX_SESSION_ID_LENGTH = _get_int("REFINERY_MAX_SESSION_ID_LENGTH", 64)
AUDIT_LIST_LIMIT_DEFAULT = _get_int("REFINERY_AUDIT_LIST_LIMIT_DEFAULT", 100)
AUDIT_LIST_LIMIT_MAX = _get_int("REFINERY_AUDIT_LIST_LIMIT_MAX", 500)

# Refinement policy
DEFAULT_REFINEMENT_THRESHOLD = _get_float("DEFAULT_REFINEMENT_THRESHOLD", 0.90)
REFINEMENT_MAX_MUTATIONS = _get_int("REFINEMENT_MAX_MUTATIONS", 10)
REFINEMENT_LEASE_SECONDS = _get_int("REFINEMENT_LEASE_SECONDS", 3600)
CORE_TOKEN_BUDGET = _get_int("CORE_TOKEN_BUDGET", 8000)
JOURNAL_WINDOW_DAYS = _get_int("JOURNAL_WINDOW_DAYS", 7)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if not 0.0 < DEFAULT_REFINEMENT_THRESHOLD <= 1.0:
        errors.append("DEFAULT_REFINEMENT_THRESHOLD must be in (0, 1]")
    if REFINEMENT_MAX_MUTATIONS <= 0:
        errors.append("REFINEMENT_MAX_MUTATIONS must be positive")
    if REFINEMENT_LEASE_SECONDS <= 0:
        errors.append("REFINEMENT_LEASE_SECONDS must be positive")
    if MAX_MEMORY_CONTENT_LENGTH <= 0:
        errors.append("REFINERY_MAX_MEMORY_CONTENT_LENGTH must be positive")

    DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
