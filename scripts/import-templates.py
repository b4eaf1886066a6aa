#!/usr/bin/env python3
"""Load YAML template definitions as global templates.

Re-running is safe: a template that already exists (same name and category)
only gets a new current version when its prompt, system message or
parameters changed.
"""

from __future__ import annotations

from argparse import ArgumentParser
from pathlib import Path
from typing import Any

import yaml

from db.repository import GLOBAL_SCOPE
from prompts import store


def _load(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"{path}: template file must contain a mapping")
    return data


def _priority(data: dict[str, Any]) -> int:
    return int((data.get("ui_config") or {}).get("priority", 1000))


def import_template(data: dict[str, Any], *, dry_run: bool = False) -> str:
    existing = [
        row
        for row in store.list_templates(GLOBAL_SCOPE, data.get("category"), include_inactive=True)
        if row["name"] == data.get("name")
    ]
    if not existing:
        if not dry_run:
            store.create_template(data, GLOBAL_SCOPE)
        return "created"
    current = existing[0]
    unchanged = (
        current["prompt"] == data.get("prompt")
        and current["system_message"] == data.get("system_message")
        and (current["parameters"] or {}) == (data.get("parameters") or {})
    )
    if unchanged:
        return "unchanged"
    if not dry_run:
        store.update_template(current["template_id"], data, GLOBAL_SCOPE, make_current=True)
    return "versioned"


def main() -> int:
    parser = ArgumentParser(description="Import global prompt templates from YAML files")
    parser.add_argument("paths", nargs="*", default=["templates"], help="Files or directories")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    files: list[Path] = []
    for raw in args.paths:
        path = Path(raw)
        files.extend(sorted(path.glob("*.y*ml")) if path.is_dir() else [path])
    definitions = sorted(((_load(path), path) for path in files), key=lambda item: _priority(item[0]))

    failures = 0
    for data, path in definitions:
        try:
            outcome = import_template(data, dry_run=args.dry_run)
        except store.TemplateValidationError as exc:
            failures += 1
            print(f"[import-templates] {path.name}: invalid ({'; '.join(exc.errors)})")
            continue
        print(f"[import-templates] {path.name}: {outcome}")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
