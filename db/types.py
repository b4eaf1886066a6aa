"""Structured column type shared by every JSON-bearing table."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

LEGACY_OBJECT_SENTINEL = "[object Object]"


class CorruptJSONError(ValueError):
    """Raised when a structured column would store the legacy string sentinel."""


def _contains_sentinel(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() == LEGACY_OBJECT_SENTINEL
    if isinstance(value, dict):
        return any(_contains_sentinel(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_sentinel(item) for item in value)
    return False


def coerce_structured(value: Any) -> Any:
    if isinstance(value, str) and value.strip() == LEGACY_OBJECT_SENTINEL:
        return {}
    return value


class CanonicalJSON(TypeDecorator):
    """JSONB on PostgreSQL, JSON elsewhere.

    Writes reject the ``"[object Object]"`` sentinel anywhere in the value;
    reads coerce a top-level sentinel left behind by older writers to ``{}``.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        if _contains_sentinel(value):
            raise CorruptJSONError("refusing to store '[object Object]' in a structured column")
        return value

    def process_result_value(self, value, dialect):
        return coerce_structured(value)
