from __future__ import annotations

from typing import Any, Iterable, Mapping

from core.logger import get_logger

logger = get_logger(__name__)

OPERATORS = ("equals", "not_equals", "contains", "not_contains", "exists", "not_exists")


def get_path(data: Any, path: str) -> Any:
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return str(expected) in str(actual)


def evaluate_condition(
    condition: Mapping[str, Any],
    context: Mapping[str, Any],
    results: Mapping[str, Any],
) -> bool:
    field = str(condition.get("field") or "")
    operator = condition.get("operator")
    expected = condition.get("value")
    actual = get_path(context, field) if field else None
    if actual is None and field:
        actual = get_path(results, field)

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "not_contains":
        return not _contains(actual, expected)
    if operator == "exists":
        return actual is not None
    if operator == "not_exists":
        return actual is None
    logger.warning("unknown_condition_operator", operator=operator, field=field)
    return True


def conditions_hold(
    conditions: Iterable[Mapping[str, Any]] | None,
    context: Mapping[str, Any],
    results: Mapping[str, Any],
) -> bool:
    return all(evaluate_condition(item, context, results) for item in conditions or [])
