"""``{{ dotted.name }}`` placeholders: extraction, validation, substitution."""

from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any, Iterable, Mapping

from core.logger import get_logger

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
VALID_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9._]*$")
INPUT_ROOTS = frozenset({"article", "blog", "account"})
MISSING_TEMPLATE = "[Missing: {name}]"


@dataclass(frozen=True)
class Variable:
    name: str
    display_name: str
    kind: str
    source_step: str | None = None
    source_field: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "displayName": self.display_name,
            "kind": self.kind,
        }
        if self.source_step:
            payload["sourceStep"] = self.source_step
            payload["sourceField"] = self.source_field
        return payload


@dataclass(frozen=True)
class Substitution:
    text: str
    missing: tuple[str, ...]


def display_name(name: str) -> str:
    words = re.sub(r"[._]+", " ", name).split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def variable_kind(name: str, prior_steps: Iterable[str] = ()) -> str:
    root = name.split(".", 1)[0]
    if "." in name and root in set(prior_steps):
        return "step_output"
    if root in INPUT_ROOTS:
        return "input"
    return "custom"


def placeholder_names(text: str | None) -> list[str]:
    if not text:
        return []
    return [match.group(1) for match in PLACEHOLDER_PATTERN.finditer(text)]


def invalid_names(text: str | None) -> list[str]:
    seen: list[str] = []
    for name in placeholder_names(text):
        if not VALID_NAME_PATTERN.match(name) or ".." in name or name.endswith("."):
            if name not in seen:
                seen.append(name)
    return seen


def extract_variables(text: str | None, prior_steps: Iterable[str] = ()) -> list[Variable]:
    steps = set(prior_steps)
    variables: list[Variable] = []
    seen: set[str] = set()
    for name in placeholder_names(text):
        if name in seen or not VALID_NAME_PATTERN.match(name):
            continue
        seen.add(name)
        kind = variable_kind(name, steps)
        source_step = source_field = None
        if kind == "step_output":
            source_step, source_field = name.split(".", 1)
        variables.append(
            Variable(
                name=name,
                display_name=display_name(name),
                kind=kind,
                source_step=source_step,
                source_field=source_field,
            )
        )
    return variables


def format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=False, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def substitute(text: str | None, variables: Mapping[str, Any]) -> Substitution:
    """Replace every placeholder in one left-to-right pass.

    Replacement text is never rescanned, so values that themselves contain
    ``{{...}}`` are inserted verbatim.
    """

    if not text:
        return Substitution(text=text or "", missing=())
    missing: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            if name not in missing:
                missing.append(name)
            return MISSING_TEMPLATE.format(name=name)
        return format_value(value)

    result = PLACEHOLDER_PATTERN.sub(_replace, text)
    if missing:
        logger.warning("prompt_variables_missing", variables=missing)
    return Substitution(text=result, missing=tuple(missing))
