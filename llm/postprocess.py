from __future__ import annotations

import re

_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\n(.*?)\n?```\s*$", re.DOTALL)


def strip_code_fence(text: str | None) -> str:
    """Remove a single wrapping ``` or ```json fence, if present."""
    if not text:
        return ""
    match = _FENCE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def _unbalanced_quotes(text: str) -> bool:
    count = 0
    escaped = False
    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
        elif char == '"':
            count += 1
    return count % 2 == 1


def looks_truncated(text: str | None, stop_reason: str | None) -> bool:
    if (stop_reason or "").upper() != "STOP":
        return True
    body = (text or "").rstrip()
    if not body:
        return False
    if body.count("```") % 2 == 1:
        return True
    if body.endswith("...") or body.endswith("…"):
        return True
    return _unbalanced_quotes(body)
