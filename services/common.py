"""Helpers shared by the domain services."""
from __future__ import annotations

import dataclasses
from typing import Any, Callable, Iterable, List, Optional

from clinic.errors import ValidationError
from datastore import Page


def validate_identifier(value: str, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} must be a non-empty string", field=label)
    return value.strip()


def require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required", field=label)
    return str(value).strip()


def ensure_valid(entity: Any, label: str, *args: Any) -> None:
    """Raise ``ValidationError`` listing every problem ``entity.validation_errors()`` reports."""

    errors = entity.validation_errors(*args)
    if errors:
        raise ValidationError(f"Invalid {label}: " + "; ".join(errors), field=label)


def copies(values: Iterable[Any]) -> List[Any]:
    return [value.copy() for value in values]


def copy_page(page: Page) -> Page:
    return dataclasses.replace(page, content=tuple(value.copy() for value in page.content))


def sorted_copies(values: Iterable[Any], key: Callable[[Any], Any], reverse: bool = False) -> List[Any]:
    return sorted(copies(values), key=key, reverse=reverse)
