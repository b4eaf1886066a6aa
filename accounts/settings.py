"""Per-tenant settings with built-in defaults.

Stored rows only need to carry the keys a tenant overrides; reads deep-merge
them over the defaults below.
"""

from __future__ import annotations

import copy
from typing import Any
from uuid import UUID

from core.cache import get_cache, invalidate_all
from core.logger import get_logger
from db.models import AccountSetting
from db.repository import find_one_in_transaction, transaction

logger = get_logger(__name__)

DEFAULT_SETTINGS: dict[str, dict[str, Any]] = {
    "content_quality": {
        "thresholds": {
            "min_content_length": 500,
            "good_content_length": 1000,
            "excellent_content_length": 2000,
            "title_only_threshold": 150,
            "min_quality_score": 0.3,
        },
        "scoring_weights": {
            "length_weight": 0.7,
            "structure_weight": 0.2,
            "uniqueness_weight": 0.1,
        },
        "rules": {
            "block_title_only": True,
            "block_no_content": True,
            "warn_short_content": True,
            "require_manual_review_below_score": 0.5,
        },
    },
    "generation": {
        "default_provider": None,
        "workflow_id": None,
        "min_relevance_score": 0.6,
        "top_stories_limit": 5,
        "analysis_limit": 20,
    },
    "template": {
        "temperature": 0.7,
        "max_tokens": 2000,
    },
}


class UnknownSettingTypeError(ValueError):
    pass


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _check_type(setting_type: str) -> None:
    if setting_type not in DEFAULT_SETTINGS:
        raise UnknownSettingTypeError(f"unknown setting type: {setting_type}")


def _check_weights(merged: dict[str, Any]) -> None:
    weights = merged.get("scoring_weights") or {}
    total = sum(float(value) for value in weights.values())
    if weights and abs(total - 1.0) > 0.01:
        raise ValueError(f"scoring weights must sum to 1.0 (got {total:.2f})")


def get_settings_in_transaction(session, account_id: UUID, setting_type: str) -> dict[str, Any]:
    _check_type(setting_type)
    cache = get_cache("account_settings", ttl_seconds=60)
    key = (str(account_id), setting_type)
    cached = cache.get(key)
    if cached is not None:
        return copy.deepcopy(cached)
    row = find_one_in_transaction(
        session, AccountSetting, account_id, setting_type=setting_type, active=True
    )
    merged = _deep_merge(DEFAULT_SETTINGS[setting_type], row.settings_data if row else {})
    cache.set(key, merged)
    return copy.deepcopy(merged)


def get_settings(account_id: UUID, setting_type: str) -> dict[str, Any]:
    with transaction() as session:
        return get_settings_in_transaction(session, account_id, setting_type)


def update_settings(account_id: UUID, setting_type: str, data: dict[str, Any]) -> dict[str, Any]:
    _check_type(setting_type)
    if not isinstance(data, dict):
        raise ValueError("settings must be an object")
    if setting_type == "content_quality":
        _check_weights(_deep_merge(get_settings(account_id, setting_type), data))
    with transaction() as session:
        row = find_one_in_transaction(session, AccountSetting, account_id, setting_type=setting_type)
        if row is None:
            row = AccountSetting(account_id=account_id, setting_type=setting_type, settings_data=data)
            session.add(row)
        else:
            row.settings_data = _deep_merge(row.settings_data or {}, data)
            row.active = True
        session.flush()
        stored = dict(row.settings_data)
    invalidate_all()
    logger.info("account_settings_updated", account_id=str(account_id), setting_type=setting_type)
    return _deep_merge(DEFAULT_SETTINGS[setting_type], stored)
