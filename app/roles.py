from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

ROLE_ALIASES: Dict[str, str] = {
    "DOKTER": "DOCTOR",
    "PHYSICIAN": "DOCTOR",
    "PERAWAT": "NURSE",
    "BIDAN": "MIDWIFE",
    "STAF": "STAFF",
    "PEGAWAI": "STAFF",
}

DEFINED_ROLES: List[str] = ["DOCTOR", "NURSE", "MIDWIFE", "STAFF", "SUPERVISOR", "ADMIN"]


def normalize_role(role: Optional[str]) -> str:
    label = (role or "").strip().upper().replace(" ", "_")
    return ROLE_ALIASES.get(label, label)


def is_known_role(role: Optional[str]) -> bool:
    return normalize_role(role) in DEFINED_ROLES


def role_matches(candidate: Optional[str], required: Optional[str]) -> bool:
    if not candidate or not required:
        return False
    return normalize_role(candidate) == normalize_role(required)


def role_in(candidate: Optional[str], roles: Iterable[str]) -> bool:
    return any(role_matches(candidate, role) for role in roles)


def clinical_roles(policy: Optional[Dict[str, Any]] = None) -> List[str]:
    configured = (policy or {}).get("clinical_roles") or ["DOCTOR", "NURSE", "MIDWIFE"]
    return [normalize_role(role) for role in configured]


def is_clinical_role(role: Optional[str], policy: Optional[Dict[str, Any]] = None) -> bool:
    return normalize_role(role) in clinical_roles(policy)
