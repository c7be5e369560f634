from __future__ import annotations

import math
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .conflicts import EffectiveLimits
from .models import (
    AlertLevel,
    CapacityReport,
    Conflict,
    DemandOutcome,
    ScheduleRun,
    ShiftAssignment,
    StaffMember,
    WorkloadAlert,
)
from .workload import WorkloadTracker

UNEVEN_SPREAD = 10


def dedupe_conflicts(conflicts: Iterable[Conflict]) -> List[Conflict]:
    seen = set()
    unique: List[Conflict] = []
    for conflict in conflicts:
        if conflict.key in seen:
            continue
        seen.add(conflict.key)
        unique.append(conflict)
    return unique


def fulfillment_rate(assigned: int, requested: int) -> float:
    if requested <= 0:
        return 100.0
    return assigned / requested * 100.0


def workload_alerts(
    employees: Sequence[StaffMember],
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
    months: Sequence[Tuple[int, int]],
) -> List[WorkloadAlert]:
    alerts: List[WorkloadAlert] = []
    for employee in employees:
        cap = limits.monthly_cap(employee)
        if cap <= 0:
            continue
        for key in months:
            count = tracker.month_count_for(employee.id, key)
            label = f"{key[0]:04d}-{key[1]:02d}"
            if count > cap:
                preexisting = tracker.preexisting_month_count(employee.id, key) > cap
                origin = "before this run" if preexisting else "after this run"
                alerts.append(
                    WorkloadAlert(
                        employee_id=employee.id,
                        employee_name=employee.name,
                        month=label,
                        shift_count=count,
                        cap=cap,
                        level=AlertLevel.OVER_LIMIT,
                        preexisting=preexisting,
                        recommendation=f"{employee.name} was over the limit {origin}; review manual assignments",
                    )
                )
            elif count == cap:
                alerts.append(
                    WorkloadAlert(
                        employee_id=employee.id,
                        employee_name=employee.name,
                        month=label,
                        shift_count=count,
                        cap=cap,
                        level=AlertLevel.AT_LIMIT,
                        recommendation=f"Do not schedule {employee.name} further in {label}",
                    )
                )
            elif count / cap >= limits.alert_threshold_pct:
                alerts.append(
                    WorkloadAlert(
                        employee_id=employee.id,
                        employee_name=employee.name,
                        month=label,
                        shift_count=count,
                        cap=cap,
                        level=AlertLevel.APPROACHING_LIMIT,
                        recommendation=f"{employee.name} has {cap - count} shifts left in {label}",
                    )
                )
    return alerts


def recommendations(
    *,
    requested: int,
    assigned: int,
    capacity: Optional[CapacityReport],
    employees: Sequence[StaffMember],
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
    months: Sequence[Tuple[int, int]],
) -> List[str]:
    advice: List[str] = []
    active = [employee for employee in employees if employee.active]
    missing = max(0, requested - assigned)
    if missing > 0:
        per_person = 1
        if capacity is not None and active and capacity.capacity > 0:
            per_person = max(1, capacity.capacity // len(active))
        elif active:
            per_person = max(1, min(limits.monthly_cap(employee) for employee in active))
        extra_staff = math.ceil(missing / per_person)
        advice.append(
            f"Add {extra_staff} more active employees to cover {missing} unfilled shifts (additional staff needed)"
        )
        if active and capacity is not None and capacity.capacity < capacity.requested:
            current = max(limits.monthly_cap(employee) for employee in active)
            target = current + math.ceil(capacity.missing / len(active))
            advice.append(f"Increase maxShiftsPerPerson to {target} to close the capacity gap")

    rate = fulfillment_rate(assigned, requested)
    if rate < 50:
        advice.append("Fulfillment is below 50%: review the shift pattern or bring in more staff before publishing")
    elif rate < 80:
        advice.append("Fulfillment is below 80%: consider approving overtime or temporary staff")
    elif rate >= 95:
        advice.append("Coverage is strong; publish the schedule")

    if active and months:
        totals = [sum(tracker.month_count_for(employee.id, key) for key in months) for employee in active]
        spread = max(totals) - min(totals)
        if spread > UNEVEN_SPREAD:
            advice.append(f"Workload is uneven across staff (spread of {spread} shifts); rebalance assignments")
    return advice


def day_summary(outcomes: Iterable[DemandOutcome]) -> Dict[str, List[str]]:
    required: Dict[str, int] = defaultdict(int)
    filled: Dict[str, int] = defaultdict(int)
    for outcome in outcomes:
        key = outcome.demand.date.isoformat()
        required[key] += outcome.demand.required
        filled[key] += len(outcome.employee_ids)
    summary: Dict[str, List[str]] = {"successful_dates": [], "partial_dates": [], "failed_dates": []}
    for key in sorted(required):
        if filled[key] >= required[key]:
            summary["successful_dates"].append(key)
        elif filled[key] > 0:
            summary["partial_dates"].append(key)
        else:
            summary["failed_dates"].append(key)
    return summary


def build_run(
    *,
    requested: int,
    assignments: Sequence[ShiftAssignment],
    conflicts: Iterable[Conflict],
    outcomes: Sequence[DemandOutcome],
    employees: Sequence[StaffMember],
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
    months: Sequence[Tuple[int, int]],
    capacity: Optional[CapacityReport] = None,
    warnings: Sequence[str] = (),
    persisted: bool = False,
) -> ScheduleRun:
    assigned = len(assignments)
    rate = fulfillment_rate(assigned, requested)
    if assigned >= requested:
        message = f"Assigned all {requested} requested shifts"
    else:
        message = f"Assigned {assigned} of {requested} requested shifts ({rate:.1f}%)"
    return ScheduleRun(
        success=True,
        message=message,
        requested=requested,
        assignments=tuple(assignments),
        conflicts=tuple(dedupe_conflicts(conflicts)),
        workload_alerts=tuple(workload_alerts(employees, tracker, limits, months)),
        fulfillment_rate=rate,
        recommendations=tuple(
            recommendations(
                requested=requested,
                assigned=assigned,
                capacity=capacity,
                employees=employees,
                tracker=tracker,
                limits=limits,
                months=months,
            )
        ),
        warnings=tuple(warnings),
        capacity=capacity,
        outcomes=tuple(outcomes),
        day_summary=day_summary(outcomes),
        persisted=persisted,
    )


def failed_run(
    kind: str,
    message: str,
    *,
    requested: int = 0,
    capacity: Optional[CapacityReport] = None,
    warnings: Sequence[str] = (),
    recommendations: Sequence[str] = (),
) -> ScheduleRun:
    return ScheduleRun(
        success=False,
        message=message,
        error_kind=kind,
        requested=requested,
        fulfillment_rate=0.0,
        recommendations=tuple(recommendations),
        warnings=tuple(warnings),
        capacity=capacity,
    )
