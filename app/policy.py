from __future__ import annotations

import copy
import datetime
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from database import get_active_policy, upsert_policy

logger = logging.getLogger(__name__)

DEFAULT_POLICY_NAME = "default"

GLOBAL_DEFAULTS: Dict[str, Any] = {
    "max_shifts_per_month": 20,
    "max_consecutive_days": 5,
    "max_shifts_per_week": 6,
    "max_shifts_per_day": 2,
    "alert_threshold_pct": 0.9,
    "min_rest_hours": 8,
    "max_night_shifts_per_week": 2,
}

CAPACITY_DEFAULTS: Dict[str, float] = {
    "fail_below_pct": 0.30,
    "partial_below_pct": 0.80,
}

SCORING_DEFAULTS: Dict[str, float] = {
    "base": 50.0,
    "under_median_bonus": 30.0,
    "role_match_bonus": 10.0,
    "load_penalty_max": 20.0,
    "load_penalty_pivot_pct": 0.9,
    "over_pivot_penalty": 10.0,
    "proceed_threshold": 30.0,
}

# One canonical ratio table: weekday/weekend multipliers per shift type.
SHIFT_TYPE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "MORNING": {"start": "07:00", "end": "14:00", "weekday_ratio": 1.0, "weekend_ratio": 0.7, "aliases": ["PAGI"]},
    "AFTERNOON": {"start": "14:00", "end": "21:00", "weekday_ratio": 1.0, "weekend_ratio": 0.8, "aliases": ["SIANG"]},
    "NIGHT": {"start": "21:00", "end": "07:00", "weekday_ratio": 0.6, "weekend_ratio": 0.6, "aliases": ["MALAM"]},
}

LOCATION_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "ICU": {"critical": True, "pattern": {"MORNING": 4, "AFTERNOON": 3, "NIGHT": 2}},
    "NICU": {"critical": True, "pattern": {"MORNING": 3, "AFTERNOON": 2, "NIGHT": 2}},
    "GAWAT_DARURAT": {"critical": True, "pattern": {"MORNING": 5, "AFTERNOON": 4, "NIGHT": 3}},
    "RAWAT_INAP": {"critical": False, "pattern": {"MORNING": 3, "AFTERNOON": 3, "NIGHT": 2}},
    "RAWAT_JALAN": {"critical": False, "pattern": {"MORNING": 2, "AFTERNOON": 1, "NIGHT": 0}},
    "LABORATORIUM": {"critical": False, "pattern": {"MORNING": 2, "AFTERNOON": 2, "NIGHT": 1}},
    "FARMASI": {"critical": False, "pattern": {"MORNING": 2, "AFTERNOON": 2, "NIGHT": 1}},
    "RADIOLOGI": {"critical": False, "pattern": {"MORNING": 2, "AFTERNOON": 1, "NIGHT": 1}},
    "KAMAR_OPERASI": {"critical": False, "pattern": {"MORNING": 6, "AFTERNOON": 4, "NIGHT": 2}},
}

CLINICAL_ROLE_DEFAULTS: List[str] = ["DOCTOR", "NURSE", "MIDWIFE"]


def build_default_policy() -> Dict[str, Any]:
    return copy.deepcopy(
        {
            "name": DEFAULT_POLICY_NAME,
            "global": GLOBAL_DEFAULTS,
            "capacity": CAPACITY_DEFAULTS,
            "scoring": SCORING_DEFAULTS,
            "shift_types": SHIFT_TYPE_DEFAULTS,
            "locations": LOCATION_DEFAULTS,
            "clinical_roles": CLINICAL_ROLE_DEFAULTS,
        }
    )


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _pct(value: Any, default: float) -> float:
    pct = _to_float(value, default)
    if pct > 1.0:
        pct /= 100.0
    return max(0.0, min(1.0, pct))


def parse_time_label(label: str) -> Optional[int]:
    """Parse an ``HH:MM`` label into minutes after midnight."""
    if not label:
        return None
    text = str(label).strip()
    parts = text.split(":")
    if len(parts) != 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return hours * 60 + minutes


def _normalize_policy(policy: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge a partial policy over the defaults and clamp every numeric knob."""
    normalized = build_default_policy()
    if not isinstance(policy, dict):
        return normalized
    if policy.get("name"):
        normalized["name"] = str(policy["name"])

    raw_global = policy.get("global") if isinstance(policy.get("global"), dict) else {}
    for key, default in GLOBAL_DEFAULTS.items():
        if key not in raw_global:
            continue
        if key == "alert_threshold_pct":
            normalized["global"][key] = _pct(raw_global[key], default)
        elif key == "min_rest_hours":
            normalized["global"][key] = max(0.0, _to_float(raw_global[key], default))
        else:
            normalized["global"][key] = max(1, _to_int(raw_global[key], default))

    raw_capacity = policy.get("capacity") if isinstance(policy.get("capacity"), dict) else {}
    for key, default in CAPACITY_DEFAULTS.items():
        if key in raw_capacity:
            normalized["capacity"][key] = _pct(raw_capacity[key], default)
    capacity = normalized["capacity"]
    if capacity["partial_below_pct"] < capacity["fail_below_pct"]:
        capacity["partial_below_pct"] = capacity["fail_below_pct"]

    raw_scoring = policy.get("scoring") if isinstance(policy.get("scoring"), dict) else {}
    for key, default in SCORING_DEFAULTS.items():
        if key not in raw_scoring:
            continue
        if key == "load_penalty_pivot_pct":
            normalized["scoring"][key] = _pct(raw_scoring[key], default) or default
        else:
            normalized["scoring"][key] = max(0.0, _to_float(raw_scoring[key], default))

    raw_types = policy.get("shift_types") if isinstance(policy.get("shift_types"), dict) else {}
    for name, definition in raw_types.items():
        if not isinstance(definition, dict):
            continue
        key = str(name).strip().upper()
        merged = dict(normalized["shift_types"].get(key, {}))
        merged.update(definition)
        start = parse_time_label(str(merged.get("start", "")))
        end = parse_time_label(str(merged.get("end", "")))
        if start is None or end is None:
            logger.warning("Ignoring shift type %s with unreadable window", key)
            continue
        merged["weekday_ratio"] = max(0.0, _to_float(merged.get("weekday_ratio"), 1.0))
        merged["weekend_ratio"] = max(0.0, _to_float(merged.get("weekend_ratio"), merged["weekday_ratio"]))
        merged["aliases"] = [str(alias).strip().upper() for alias in merged.get("aliases") or []]
        normalized["shift_types"][key] = merged

    raw_locations = policy.get("locations") if isinstance(policy.get("locations"), dict) else {}
    for name, definition in raw_locations.items():
        if not isinstance(definition, dict):
            continue
        key = str(name).strip()
        merged = dict(normalized["locations"].get(key, {"critical": False, "pattern": {}}))
        merged.update(definition)
        merged["critical"] = bool(merged.get("critical", False))
        pattern = merged.get("pattern") if isinstance(merged.get("pattern"), dict) else {}
        merged["pattern"] = {str(k).strip().upper(): max(0, _to_int(v, 0)) for k, v in pattern.items()}
        normalized["locations"][key] = merged

    raw_roles = policy.get("clinical_roles")
    if isinstance(raw_roles, list) and raw_roles:
        normalized["clinical_roles"] = [str(role).strip().upper() for role in raw_roles if str(role).strip()]
    return normalized


def workload_defaults(policy: Dict[str, Any]) -> Dict[str, Any]:
    return dict((policy or {}).get("global") or GLOBAL_DEFAULTS)


def capacity_thresholds(policy: Dict[str, Any]) -> Tuple[float, float]:
    capacity = (policy or {}).get("capacity") or CAPACITY_DEFAULTS
    fail_below = _pct(capacity.get("fail_below_pct"), CAPACITY_DEFAULTS["fail_below_pct"])
    partial_below = _pct(capacity.get("partial_below_pct"), CAPACITY_DEFAULTS["partial_below_pct"])
    return fail_below, max(fail_below, partial_below)


def scoring_weights(policy: Dict[str, Any]) -> Dict[str, float]:
    weights = dict(SCORING_DEFAULTS)
    weights.update((policy or {}).get("scoring") or {})
    return weights


def canonical_shift_type(policy: Dict[str, Any], name: str) -> Optional[str]:
    """Resolve a shift type name or alias (``PAGI``) to its canonical key."""
    label = (name or "").strip().upper()
    if not label:
        return None
    shift_types = (policy or {}).get("shift_types") or {}
    if label in shift_types:
        return label
    for key, definition in shift_types.items():
        if label in (definition.get("aliases") or []):
            return key
    return None


def shift_type_definition(policy: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    key = canonical_shift_type(policy, name)
    if key is None:
        return None
    return policy["shift_types"][key]


def shift_window(policy: Dict[str, Any], name: str) -> Optional[Tuple[datetime.time, datetime.time]]:
    definition = shift_type_definition(policy, name)
    if not definition:
        return None
    start = parse_time_label(definition.get("start", ""))
    end = parse_time_label(definition.get("end", ""))
    if start is None or end is None:
        return None
    return datetime.time(start // 60, start % 60), datetime.time(end // 60, end % 60)


def headcount_ratio(policy: Dict[str, Any], name: str, *, weekend: bool) -> float:
    definition = shift_type_definition(policy, name) or {}
    key = "weekend_ratio" if weekend else "weekday_ratio"
    return _to_float(definition.get(key), 1.0)


def location_definition(policy: Dict[str, Any], name: str) -> Dict[str, Any]:
    return ((policy or {}).get("locations") or {}).get(name) or {}


def is_critical_location(policy: Dict[str, Any], name: str) -> bool:
    return bool(location_definition(policy, name).get("critical", False))


def default_location_pattern(policy: Dict[str, Any], name: str) -> Optional[Dict[str, int]]:
    pattern = location_definition(policy, name).get("pattern")
    if isinstance(pattern, dict) and pattern:
        return dict(pattern)
    return None


def shift_type_order(policy: Dict[str, Any]) -> Dict[str, Tuple[int, str]]:
    """Sort keys for shift types: start minute, then name."""
    order: Dict[str, Tuple[int, str]] = {}
    for key, definition in ((policy or {}).get("shift_types") or {}).items():
        start = parse_time_label(definition.get("start", "")) or 0
        order[key] = (start, key)
    return order


def location_required_units(policy: Dict[str, Any], name: str) -> Tuple[str, ...]:
    units = location_definition(policy, name).get("required_units") or []
    return tuple(str(unit).strip().upper() for unit in units if str(unit).strip())


def load_active_policy(session) -> Dict[str, Any]:
    record = get_active_policy(session)
    if record is None:
        return build_default_policy()
    try:
        params = json.loads(record.params_json or "{}")
    except (json.JSONDecodeError, TypeError):
        logger.warning("Active policy %s holds unreadable JSON; using defaults", record.name)
        return build_default_policy()
    return _normalize_policy(params)


def ensure_default_policy(session_factory: Callable) -> None:
    with session_factory() as session:
        if get_active_policy(session) is not None:
            return
        upsert_policy(session, DEFAULT_POLICY_NAME, build_default_policy())
        session.commit()