from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from policy import scoring_weights
from roles import role_in

from .calendar_utils import month_key
from .conflicts import EffectiveLimits
from .models import ShiftDemand, StaffMember
from .workload import WorkloadTracker


@dataclass(frozen=True)
class ScoredCandidate:
    employee: StaffMember
    score: float
    month_count: int
    reason: str

    @property
    def rank_key(self) -> Tuple[float, int, int]:
        return -self.score, self.month_count, self.employee.id


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def pool_median(employees: Iterable[StaffMember], tracker: WorkloadTracker, demand: ShiftDemand) -> float:
    """Median monthly shift count over every active employee for the demand's month."""
    key = month_key(demand.date)
    counts = [tracker.month_count_for(employee.id, key) for employee in employees if employee.active]
    if not counts:
        return 0.0
    return float(statistics.median(counts))


def score_candidate(
    employee: StaffMember,
    demand: ShiftDemand,
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
    *,
    median: float,
    policy: Dict[str, Any],
) -> ScoredCandidate:
    weights = scoring_weights(policy)
    month_count = tracker.month_count(employee.id, demand.date)
    cap = limits.monthly_cap(employee)
    pivot = float(weights["load_penalty_pivot_pct"]) or 0.9
    notes: List[str] = []

    score = float(weights["base"])
    if month_count < median:
        score += float(weights["under_median_bonus"])
        notes.append("below median workload")
    if demand.preferred_roles and role_in(employee.role, demand.preferred_roles):
        score += float(weights["role_match_bonus"])
        notes.append("role match")
    utilization = month_count / cap if cap > 0 else 1.0
    score -= float(weights["load_penalty_max"]) * min(1.0, utilization / pivot)
    projected = (month_count + 1) / cap if cap > 0 else float("inf")
    if projected > pivot:
        score -= float(weights["over_pivot_penalty"])
        notes.append("near monthly limit")
    score = _clamp(score, 0.0, 100.0)
    notes.append(f"{month_count}/{cap} shifts this month")
    reason = f"score {score:.1f}: " + ", ".join(notes)
    return ScoredCandidate(employee=employee, score=score, month_count=month_count, reason=reason)


def rank_candidates(
    candidates: Sequence[StaffMember],
    demand: ShiftDemand,
    tracker: WorkloadTracker,
    limits: EffectiveLimits,
    *,
    pool: Sequence[StaffMember],
    policy: Dict[str, Any],
) -> List[ScoredCandidate]:
    median = pool_median(pool, tracker, demand)
    scored = [
        score_candidate(employee, demand, tracker, limits, median=median, policy=policy) for employee in candidates
    ]
    return sorted(scored, key=lambda entry: entry.rank_key)
