from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from policy import is_critical_location
from roles import is_clinical_role, role_in

from .models import ShiftDemand, StaffMember


def ineligibility_reason(employee: StaffMember, demand: ShiftDemand, policy: Dict[str, Any]) -> Optional[str]:
    """Return why ``employee`` cannot cover ``demand``, or None when eligible."""
    if not employee.active:
        return f"{employee.name} is not active"
    if demand.preferred_roles and not role_in(employee.role, demand.preferred_roles):
        wanted = ", ".join(demand.preferred_roles)
        return f"{employee.name} ({employee.role}) does not hold a requested role ({wanted})"
    if is_critical_location(policy, demand.location) and not is_clinical_role(employee.role, policy):
        return f"{demand.location} requires clinical staff; {employee.name} is {employee.role}"
    if demand.required_skills:
        unit = (employee.unit or "").strip().upper()
        if not unit or unit not in {skill.strip().upper() for skill in demand.required_skills}:
            return f"{employee.name} is not attached to {', '.join(demand.required_skills)}"
    return None


def is_eligible(employee: StaffMember, demand: ShiftDemand, policy: Dict[str, Any]) -> bool:
    return ineligibility_reason(employee, demand, policy) is None


def eligible_candidates(
    employees: Iterable[StaffMember],
    demand: ShiftDemand,
    policy: Dict[str, Any],
) -> List[StaffMember]:
    return [employee for employee in employees if is_eligible(employee, demand, policy)]
