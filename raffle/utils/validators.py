"""
raffle/utils/validators.py — Safe parsing of store rows into Pydantic models
Rows come back from PostgREST as plain dicts; a malformed row is logged
and skipped instead of failing a whole read.
"""
from __future__ import annotations

from typing import Any, Callable, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)


def parse_model_safe(
    model_class: Type[T],
    data: dict[str, Any],
    context: str = "",
) -> Optional[T]:
    """
    Parse and validate a dict into a Pydantic model. Returns None on validation failure.
    Logs the validation errors for debugging.
    """
    try:
        return model_class(**data)
    except ValidationError as exc:
        logger.error(
            f"Schema validation failed for {model_class.__name__} "
            f"(context: {context}): {exc}"
        )
        return None


def parse_rows(
    model_class: Type[T],
    rows: Any,
    context: str = "",
    mapper: Optional[Callable[[dict[str, Any]], dict[str, Any]]] = None,
) -> list[T]:
    """Parse a list of rows, skipping (and logging) any that fail validation."""
    parsed: list[T] = []
    for row in ensure_list(rows, context):
        if not isinstance(row, dict):
            logger.warning(f"Skipping non-object row in {context!r}: {row!r}")
            continue
        model = parse_model_safe(model_class, mapper(row) if mapper else row, context)
        if model is not None:
            parsed.append(model)
    return parsed


def ensure_list(value: Any, field_name: str = "") -> list:
    """Ensure a value is a list. If not, return empty list with a warning."""
    if isinstance(value, list):
        return value
    logger.warning(f"Expected list for {field_name!r}, got {type(value).__name__}. Using [].")
    return []
