"""
Shared helpers and configuration for refinery services.
"""

from __future__ import annotations

from functools import wraps
from typing import Callable

import refinery.config as config
from refinery.errors import ValidationIssue

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

MAX_MEMORY_CONTENT_LENGTH = config.MAX_MEMORY_CONTENT_LENGTH
MAX_QUERY_LENGTH = config.MAX_QUERY_LENGTH
MAX_SUMMARY_LENGTH = config.MAX_SUMMARY_LENGTH
AUDIT_LIST_LIMIT_DEFAULT = config.AUDIT_LIST_LIMIT_DEFAULT
AUDIT_LIST_LIMIT_MAX = config.AUDIT_LIST_LIMIT_MAX


# =============================================================================
# Helper Functions
# =============================================================================

def error_result(message: str, **extra) -> dict:
    """Domain errors travel back to the agent as data."""
    result = {"type": "error", "error": message}
    result.update(extra)
    return result


def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return error_result(str(exc), **(exc.data or {}))


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)
