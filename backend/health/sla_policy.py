"""SLA policy resolution for KPI alerts."""

from __future__ import annotations

import json
from functools import lru_cache

from core.config import get_settings

DEFAULT_SLA_HOURS = 24

DEFAULT_SLA_BY_CATEGORY = {
    "sales": {"red": 24, "yellow": 48},
    "labor": {"red": 24, "yellow": 48},
    "inventory": {"red": 72, "yellow": 96},
    "traffic": {"red": 24, "yellow": 48},
    "hr": {"red": 48, "yellow": 72},
    "operations": {"red": 24, "yellow": 48},
}


@lru_cache
def _load_override_policy() -> dict:
    """
    Optional override payload from env:
      SLA_OVERRIDES='{"by_category":{"inventory":{"red":48}},"default":12}'
    """
    raw = get_settings().sla_overrides
    if not raw:
        return {"by_category": {}, "default": None}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {"by_category": {}, "default": None}
    if not isinstance(payload, dict):
        return {"by_category": {}, "default": None}
    by_category = payload.get("by_category", {})
    default = payload.get("default")
    return {
        "by_category": by_category if isinstance(by_category, dict) else {},
        "default": default if isinstance(default, int) else None,
    }


def resolve_sla_hours(category: str, severity: str) -> int:
    policy = _load_override_policy()
    override = policy["by_category"].get(category, {})

    if isinstance(override, dict) and severity in override:
        return int(override[severity])
    if severity in DEFAULT_SLA_BY_CATEGORY.get(category, {}):
        return int(DEFAULT_SLA_BY_CATEGORY[category][severity])
    if policy["default"] is not None:
        return int(policy["default"])
    return DEFAULT_SLA_HOURS
