"""
Shared validation helpers for refinery services.
"""

from __future__ import annotations

from typing import Optional

from refinery.errors import ValidationIssue


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def parse_memory_id(raw, field: str = "id") -> int:
    """Parse a single memory id supplied by the agent as a string."""
    if isinstance(raw, bool):
        raise ValidationIssue(f"Invalid memory id '{raw}'", field=field, error_type="invalid_id")
    if isinstance(raw, int):
        value = raw
    else:
        text = str(raw).strip().lstrip("#")
        try:
            value = int(text)
        except ValueError:
            raise ValidationIssue(
                f"Invalid memory id '{raw}'",
                field=field,
                error_type="invalid_id",
            ) from None
    if value <= 0:
        raise ValidationIssue(f"Invalid memory id '{raw}'", field=field, error_type="invalid_id")
    return value


def parse_memory_ids(raw: str, field: str = "ids") -> list[int]:
    """Parse a comma-separated id list, dropping duplicates but keeping order."""
    parts = [part.strip() for part in str(raw).split(",")]
    parts = [part for part in parts if part]
    ids: list[int] = []
    for part in parts:
        value = parse_memory_id(part, field=field)
        if value not in ids:
            ids.append(value)
    return ids


def parse_threshold(raw) -> float:
    """Coerce a retention threshold; valid values satisfy 0 < t <= 1."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationIssue(
            f"refinement_threshold must be a number, got '{raw}'",
            field="refinement_threshold",
            error_type="invalid_type",
        ) from None
    if not 0.0 < value <= 1.0:
        raise ValidationIssue(
            "refinement_threshold must be greater than 0 and at most 1",
            field="refinement_threshold",
            error_type="out_of_range",
        )
    return value
