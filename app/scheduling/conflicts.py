from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from policy import workload_defaults

from .calendar_utils import MINUTES_PER_DAY, windows_overlap
from .models import ConflictKind, ShiftDemand, StaffMember, WorkloadLimits
from .workload import WorkloadTracker

Finding = Tuple[ConflictKind, str]


@dataclass(frozen=True)
class EffectiveLimits:
    max_shifts_per_day: int
    max_shifts_per_week: int
    max_shifts_per_person: Optional[int] = None
    max_consecutive_days: Optional[int] = None
    alert_threshold_pct: float = 0.9
    min_rest_hours: float = 8.0
    max_night_shifts_per_week: int = 2

    def monthly_cap(self, employee: StaffMember) -> int:
        cap = max(0, employee.max_shifts_per_month)
        if self.max_shifts_per_person is not None:
            cap = min(cap, self.max_shifts_per_person)
        return cap

    def consecutive_cap(self, employee: StaffMember) -> int:
        cap = max(1, employee.max_consecutive_days)
        if self.max_consecutive_days is not None:
            cap = min(cap, self.max_consecutive_days)
        return cap


def _positive(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return max(0, number)


def resolve_limits(policy: Dict[str, Any], overrides: Optional[WorkloadLimits] = None) -> EffectiveLimits:
    """Combine policy caps with the per-request limits; request values only tighten."""
    defaults = workload_defaults(policy)
    overrides = overrides or WorkloadLimits()
    per_day = int(defaults.get("max_shifts_per_day", 2) or 2)
    per_week = int(defaults.get("max_shifts_per_week", 6) or 6)
    if _positive(overrides.max_shifts_per_day) is not None:
        per_day = min(per_day, _positive(overrides.max_shifts_per_day))
    if _positive(overrides.max_shifts_per_week) is not None:
        per_week = min(per_week, _positive(overrides.max_shifts_per_week))
    consecutive = _positive(overrides.max_consecutive_days)
    return EffectiveLimits(
        max_shifts_per_day=per_day,
        max_shifts_per_week=per_week,
        max_shifts_per_person=_positive(overrides.max_shifts_per_person),
        max_consecutive_days=max(1, consecutive) if consecutive is not None else None,
        alert_threshold_pct=float(defaults.get("alert_threshold_pct", 0.9) or 0.9),
        min_rest_hours=max(0.0, float(defaults.get("min_rest_hours", 8) or 0)),
        max_night_shifts_per_week=int(defaults.get("max_night_shifts_per_week", 2) or 2),
    )


def _neighbour_windows(tracker: WorkloadTracker, employee_id: int, day: datetime.date) -> List[Tuple[int, int]]:
    """Windows held the day before and after ``day``, shifted onto ``day``'s minute axis."""
    shifted: List[Tuple[int, int]] = []
    for offset in (-1, 1):
        neighbour = day + datetime.timedelta(days=offset)
        for start, end, _ in tracker.windows_on(employee_id, neighbour):
            shifted.append((start + offset * MINUTES_PER_DAY, end + offset * MINUTES_PER_DAY))
    return shifted


def _overlapping_window(tracker: WorkloadTracker, employee_id: int, demand: ShiftDemand) -> Optional[Tuple[int, int]]:
    window = demand.window
    for start, end, _ in tracker.windows_on(employee_id, demand.date):
        if windows_overlap(window, (start, end)):
            return start, end
    for other in _neighbour_windows(tracker, employee_id, demand.date):
        if windows_overlap(window, other):
            return other
    return None


def _shortest_rest(tracker: WorkloadTracker, employee_id: int, demand: ShiftDemand) -> Optional[int]:
    """Minutes off between the demand and the closest shift on an adjacent day."""
    start, end = demand.window
    gaps: List[int] = []
    for other_start, other_end in _neighbour_windows(tracker, employee_id, demand.date):
        if other_end <= start:
            gaps.append(start - other_end)
        elif end <= other_start:
            gaps.append(other_start - end)
    return min(gaps) if gaps else None


def _minutes_label(minutes: int) -> str:
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def evaluate(
    employee: StaffMember,
    demand: ShiftDemand,
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
    *,
    first_only: bool = True,
) -> List[Finding]:
    """Check one candidate against the tracker.

    Kinds are tested in a fixed order; with ``first_only`` the first hit is
    returned alone, otherwise every violated kind is listed.
    """
    findings: List[Finding] = []
    day = demand.date
    name = employee.name

    if demand.shift_type in tracker.shift_types_on(employee.id, day):
        findings.append(
            (ConflictKind.DOUBLE_BOOKING, f"{name} already holds a {demand.shift_type} shift on {day.isoformat()}")
        )
        if first_only:
            return findings
    clash = _overlapping_window(tracker, employee.id, demand)
    if clash is not None:
        findings.append(
            (
                ConflictKind.TIME_OVERLAP,
                f"{name} is already working {_minutes_label(clash[0])}-{_minutes_label(clash[1])} "
                f"which overlaps {demand.describe()}",
            )
        )
        if first_only:
            return findings
    rest = _shortest_rest(tracker, employee.id, demand)
    if rest is not None and rest < limits.min_rest_hours * 60:
        findings.append(
            (
                ConflictKind.REST_GAP,
                f"{name} would rest only {rest / 60:.1f}h around {demand.describe()} "
                f"(minimum {limits.min_rest_hours:g}h)",
            )
        )
        if first_only:
            return findings
    day_count = tracker.day_count(employee.id, day)
    if day_count >= limits.max_shifts_per_day:
        findings.append(
            (ConflictKind.DAILY_CAP, f"{name} already has {day_count} shifts on {day.isoformat()}")
        )
        if first_only:
            return findings
    week_count = tracker.week_count(employee.id, day)
    if week_count + 1 > limits.max_shifts_per_week:
        findings.append(
            (
                ConflictKind.WEEKLY_CAP,
                f"{name} would work {week_count + 1} shifts in ISO week {day.isocalendar()[1]} "
                f"(limit {limits.max_shifts_per_week})",
            )
        )
        if first_only:
            return findings
    if demand.window[1] > MINUTES_PER_DAY:
        nights = tracker.night_week_count(employee.id, day)
        if nights + 1 > limits.max_night_shifts_per_week:
            findings.append(
                (
                    ConflictKind.NIGHT_SHIFT_CAP,
                    f"{name} would work {nights + 1} night shifts in ISO week {day.isocalendar()[1]} "
                    f"(limit {limits.max_night_shifts_per_week})",
                )
            )
            if first_only:
                return findings
    month_count = tracker.month_count(employee.id, day)
    cap = limits.monthly_cap(employee)
    if month_count + 1 > cap:
        findings.append(
            (
                ConflictKind.MONTHLY_CAP,
                f"{name} would work {month_count + 1} shifts in {day.strftime('%Y-%m')} (limit {cap})",
            )
        )
        if first_only:
            return findings
    if not tracker.worked(employee.id, day):
        streak = tracker.streak_with(employee.id, day)
        streak_cap = limits.consecutive_cap(employee)
        if streak > streak_cap:
            findings.append(
                (
                    ConflictKind.CONSECUTIVE_DAYS,
                    f"{name} would work {streak} consecutive days (limit {streak_cap})",
                )
            )
    return findings


def check_assignment(
    employee: StaffMember,
    demand: ShiftDemand,
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
) -> Finding:
    findings = evaluate(employee, demand, tracker, limits, first_only=True)
    if findings:
        return findings[0]
    return ConflictKind.OK, ""


def approach_warnings(
    employee: StaffMember,
    demand: ShiftDemand,
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
) -> List[str]:
    """Notices for an assignment that is allowed but lands on or near a limit."""
    warnings: List[str] = []
    day = demand.date
    week_projected = tracker.week_count(employee.id, day) + 1
    if week_projected == limits.max_shifts_per_week:
        warnings.append(f"{employee.name} reaches the weekly limit of {limits.max_shifts_per_week} shifts")
    cap = limits.monthly_cap(employee)
    month_projected = tracker.month_count(employee.id, day) + 1
    if cap > 0 and month_projected <= cap and month_projected / cap >= limits.alert_threshold_pct:
        warnings.append(
            f"{employee.name} will be at {month_projected}/{cap} shifts for {day.strftime('%Y-%m')}"
        )
    if not tracker.worked(employee.id, day):
        streak = tracker.streak_with(employee.id, day)
        if streak == limits.consecutive_cap(employee):
            warnings.append(f"{employee.name} reaches {streak} consecutive working days")
    return warnings
