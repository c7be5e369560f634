from __future__ import annotations

import datetime
import logging
import math
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from notifications import NotificationDispatcher, publish_shift_created
from policy import (
    build_default_policy,
    canonical_shift_type,
    capacity_thresholds,
    location_required_units,
    scoring_weights,
    shift_window,
)
from roles import normalize_role

from .calendar_utils import days_in_month, month_key
from .conflicts import EffectiveLimits, approach_warnings, check_assignment, evaluate, resolve_limits
from .eligibility import eligible_candidates, ineligibility_reason
from .errors import InsufficientStaffError, InvalidDemandError, PersistenceError, ScheduleCancelled
from .expander import expand_demands, total_units
from .models import (
    CAP_KINDS,
    BulkScheduleRequest,
    CapacityReport,
    Conflict,
    ConflictKind,
    DemandOutcome,
    DemandStatus,
    ScheduleRun,
    Severity,
    ShiftAssignment,
    ShiftDemand,
    ShiftValidationRequest,
    StaffMember,
    ValidationResult,
)
from .reporter import build_run, failed_run, recommendations
from .repository import EmployeeRepository, ShiftRepository
from .scoring import pool_median, rank_candidates, score_candidate
from .workload import WorkloadTracker

logger = logging.getLogger(__name__)

# Shifts this far outside the run are loaded so streaks and ISO weeks at month edges are seen.
LOOKAROUND_DAYS = 31


class ScheduleEngine:
    def __init__(
        self,
        employee_repo: EmployeeRepository,
        shift_repo: ShiftRepository,
        policy: Optional[Dict[str, Any]] = None,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        actor: str = "system",
    ) -> None:
        self.employee_repo = employee_repo
        self.shift_repo = shift_repo
        self.policy = policy or build_default_policy()
        self.dispatcher = dispatcher
        self.actor = actor or "system"
        self.fail_below_pct, self.partial_below_pct = capacity_thresholds(self.policy)
        self.proceed_threshold = float(scoring_weights(self.policy)["proceed_threshold"])

    # ------------------------------------------------------------------
    # Bulk generation

    def generate(
        self,
        request: BulkScheduleRequest,
        *,
        today: Optional[datetime.date] = None,
        cancel_event: Optional[threading.Event] = None,
        commit: bool = True,
    ) -> ScheduleRun:
        today = today or datetime.date.today()
        demands = expand_demands(request, self.policy, today)
        limits = resolve_limits(self.policy, request.workload_limits)
        logger.info(
            "Generating %s schedule for %s: %d demands, %d units",
            request.period,
            ", ".join(request.locations),
            len(demands),
            total_units(demands),
        )
        return self._run(demands, limits, cancel_event=cancel_event, commit=commit)

    def _run(
        self,
        demands: Sequence[ShiftDemand],
        limits: EffectiveLimits,
        *,
        cancel_event: Optional[threading.Event] = None,
        commit: bool = True,
        notices: Sequence[str] = (),
    ) -> ScheduleRun:
        requested = total_units(demands)
        employees = list(self.employee_repo.load_employees())
        tracker = self._load_tracker(demands)
        months = sorted({month_key(demand.date) for demand in demands})
        if not demands:
            return build_run(
                requested=0,
                assignments=[],
                conflicts=[],
                outcomes=[],
                employees=employees,
                tracker=tracker,
                limits=limits,
                months=months,
                warnings=["No demands to schedule in the requested period"],
            )

        capacity = self._capacity_report(employees, tracker, limits, demands, requested)
        try:
            self._precheck(capacity)
        except InsufficientStaffError as exc:
            logger.warning("Run rejected: %s", exc.message)
            return failed_run(
                exc.kind,
                exc.message,
                requested=requested,
                capacity=capacity,
                recommendations=recommendations(
                    requested=requested,
                    assigned=0,
                    capacity=capacity,
                    employees=employees,
                    tracker=tracker,
                    limits=limits,
                    months=months,
                ),
            )
        partial_mode = capacity.mode == "partial"
        warnings: List[str] = list(notices)
        if partial_mode:
            warnings.append(
                f"Staff capacity covers {capacity.ratio * 100:.0f}% of requested shifts; "
                "expect partial fulfillment"
            )

        assignments: List[ShiftAssignment] = []
        conflicts: List[Conflict] = []
        outcomes: List[DemandOutcome] = []
        for demand in demands:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Run cancelled after %d of %d demands", len(outcomes), len(demands))
                raise ScheduleCancelled("Scheduling run was cancelled; nothing was saved")
            outcome, picks, found = self._fill_demand(demand, employees, tracker, limits, partial_mode=partial_mode)
            outcomes.append(outcome)
            assignments.extend(picks)
            conflicts.extend(found)

        short = sum(1 for outcome in outcomes if outcome.status is not DemandStatus.FULFILLED)
        if short:
            warnings.append(f"{short} of {len(outcomes)} demands could not be fully staffed")
            logger.warning("%d of %d demands short of staff", short, len(outcomes))

        persisted = False
        if commit and assignments:
            try:
                self.shift_repo.save_assignments(assignments)
            except PersistenceError as exc:
                logger.exception("Saving %d assignments failed", len(assignments))
                return failed_run(
                    exc.kind,
                    exc.message,
                    requested=requested,
                    capacity=capacity,
                    warnings=warnings,
                )
            persisted = True
            publish_shift_created(self.dispatcher, assignments, actor=self.actor)

        run = build_run(
            requested=requested,
            assignments=assignments,
            conflicts=conflicts,
            outcomes=outcomes,
            employees=employees,
            tracker=tracker,
            limits=limits,
            months=months,
            capacity=capacity,
            warnings=warnings,
            persisted=persisted,
        )
        logger.info("Run finished: %s", run.message)
        return run

    def _load_tracker(self, demands: Sequence[ShiftDemand]) -> WorkloadTracker:
        if not demands:
            return WorkloadTracker()
        first = min(demand.date for demand in demands)
        last = max(demand.date for demand in demands)
        start = first.replace(day=1) - datetime.timedelta(days=LOOKAROUND_DAYS)
        end = last.replace(day=days_in_month(last.year, last.month)) + datetime.timedelta(days=LOOKAROUND_DAYS)
        return WorkloadTracker.from_shifts(self.shift_repo.load_shifts(start, end))

    def _capacity_report(
        self,
        employees: Sequence[StaffMember],
        tracker: WorkloadTracker,
        limits: EffectiveLimits,
        demands: Sequence[ShiftDemand],
        requested: int,
    ) -> CapacityReport:
        """Remaining monthly allowance of the active pool, prorated to the days the run covers."""
        covered: Dict[Tuple[int, int], set] = {}
        for demand in demands:
            covered.setdefault(month_key(demand.date), set()).add(demand.date)
        capacity = 0
        for employee in employees:
            if not employee.active:
                continue
            cap = limits.monthly_cap(employee)
            for key, dates in covered.items():
                remaining = max(0, cap - tracker.month_count_for(employee.id, key))
                prorated = math.ceil(cap * len(dates) / days_in_month(*key))
                capacity += min(remaining, prorated)
        ratio = capacity / requested if requested else 1.0
        if ratio < self.fail_below_pct:
            mode = "insufficient"
        elif ratio < self.partial_below_pct:
            mode = "partial"
        else:
            mode = "normal"
        logger.info("Capacity %d for %d requested units (ratio %.2f, %s)", capacity, requested, ratio, mode)
        return CapacityReport(capacity=capacity, requested=requested, ratio=ratio, mode=mode)

    def _precheck(self, capacity: CapacityReport) -> None:
        if capacity.mode == "insufficient":
            raise InsufficientStaffError(
                f"Active staff can cover {capacity.capacity} of {capacity.requested} requested shifts "
                f"({capacity.ratio * 100:.0f}%), below the {self.fail_below_pct * 100:.0f}% minimum",
                capacity=capacity.capacity,
                requested=capacity.requested,
            )

    def _fill_demand(
        self,
        demand: ShiftDemand,
        employees: Sequence[StaffMember],
        tracker: WorkloadTracker,
        limits: EffectiveLimits,
        *,
        partial_mode: bool,
    ) -> Tuple[DemandOutcome, List[ShiftAssignment], List[Conflict]]:
        demand_id = demand.demand_id
        self._log_state(demand_id, DemandStatus.PENDING, DemandStatus.FILTERING)
        eligible = eligible_candidates(employees, demand, self.policy)
        self._log_state(demand_id, DemandStatus.FILTERING, DemandStatus.SCORING)

        picks: List[ShiftAssignment] = []
        chosen: List[int] = []
        rejected: Dict[int, Tuple[ConflictKind, str]] = {}
        self._log_state(demand_id, DemandStatus.SCORING, DemandStatus.ASSIGNING)
        for _ in range(demand.required):
            compliant: List[StaffMember] = []
            rejected = {}
            for employee in eligible:
                if employee.id in chosen:
                    continue
                kind, message = check_assignment(employee, demand, tracker, limits)
                if kind is ConflictKind.OK:
                    compliant.append(employee)
                else:
                    rejected[employee.id] = (kind, message)
            if not compliant:
                break
            best = rank_candidates(compliant, demand, tracker, limits, pool=employees, policy=self.policy)[0]
            tracker.register(best.employee.id, demand.date, demand.shift_type, demand.start_time, demand.end_time)
            chosen.append(best.employee.id)
            picks.append(ShiftAssignment(employee_id=best.employee.id, demand=demand, score=best.score, reason=best.reason))

        if len(chosen) >= demand.required:
            status = DemandStatus.FULFILLED
        elif chosen:
            status = DemandStatus.PARTIALLY_FULFILLED
        else:
            status = DemandStatus.UNFULFILLED
        self._log_state(demand_id, DemandStatus.ASSIGNING, status)

        conflicts: List[Conflict] = []
        if status is not DemandStatus.FULFILLED:
            conflicts.extend(self._shortfall_conflicts(demand, eligible, rejected, chosen, partial_mode=partial_mode))
        outcome = DemandOutcome(demand=demand, status=status, employee_ids=tuple(chosen))
        return outcome, picks, conflicts

    def _shortfall_conflicts(
        self,
        demand: ShiftDemand,
        eligible: Sequence[StaffMember],
        rejected: Dict[int, Tuple[ConflictKind, str]],
        chosen: Sequence[int],
        *,
        partial_mode: bool,
    ) -> List[Conflict]:
        demand_id = demand.demand_id
        conflicts: List[Conflict] = []
        if not eligible:
            conflicts.append(
                Conflict(
                    kind=ConflictKind.INELIGIBLE,
                    severity=Severity.BLOCKING,
                    message=f"No eligible staff for {demand.describe()}",
                    demand_id=demand_id,
                )
            )
        # Cap findings become warnings only when nobody at all could be placed.
        downgrade = partial_mode and not chosen
        for employee_id, (kind, message) in sorted(rejected.items()):
            severity = Severity.WARNING if downgrade and kind in CAP_KINDS else Severity.BLOCKING
            conflicts.append(
                Conflict(kind=kind, severity=severity, message=message, employee_id=employee_id, demand_id=demand_id)
            )
        missing = demand.required - len(chosen)
        conflicts.append(
            Conflict(
                kind=ConflictKind.INSUFFICIENT_STAFF,
                severity=Severity.WARNING if partial_mode else Severity.BLOCKING,
                message=f"Short {missing} of {demand.required} staff for {demand.describe()}",
                demand_id=demand_id,
            )
        )
        return conflicts

    @staticmethod
    def _log_state(demand_id: str, before: DemandStatus, after: DemandStatus) -> None:
        logger.debug("Demand %s: %s -> %s", demand_id, before.value, after.value)

    # ------------------------------------------------------------------
    # Single shift

    def _demand_for(self, request: ShiftValidationRequest) -> ShiftDemand:
        shift_type = canonical_shift_type(self.policy, request.shift_type)
        if shift_type is None:
            raise InvalidDemandError(f"Unknown shift type {request.shift_type!r}")
        location = (request.location or "").strip()
        if not location:
            raise InvalidDemandError("A location is required")
        window = shift_window(self.policy, shift_type)
        start = request.start_time or (window[0] if window else None)
        end = request.end_time or (window[1] if window else None)
        if start is None or end is None:
            raise InvalidDemandError(f"Shift type {shift_type} has no usable time window")
        roles: Tuple[str, ...] = ()
        if request.required_role:
            roles = (normalize_role(request.required_role),)
        return ShiftDemand(
            date=request.date,
            location=location,
            shift_type=shift_type,
            start_time=start,
            end_time=end,
            required=1,
            priority=request.priority,
            preferred_roles=roles,
            required_skills=location_required_units(self.policy, location),
        )

    def _employee(self, employees: Sequence[StaffMember], employee_id: int) -> StaffMember:
        for employee in employees:
            if employee.id == employee_id:
                return employee
        raise InvalidDemandError(f"Unknown employee id {employee_id}")

    def validate_assignment(
        self,
        request: ShiftValidationRequest,
        *,
        today: Optional[datetime.date] = None,
    ) -> ValidationResult:
        if request.employee_id is None:
            raise InvalidDemandError("employee_id is required to validate a shift")
        demand = self._demand_for(request)
        employees = list(self.employee_repo.load_employees())
        employee = self._employee(employees, request.employee_id)
        tracker = self._load_tracker([demand])
        limits = resolve_limits(self.policy)
        return self._validate(employee, demand, employees, tracker, limits, today=today or datetime.date.today())

    def _validate(
        self,
        employee: StaffMember,
        demand: ShiftDemand,
        employees: Sequence[StaffMember],
        tracker: WorkloadTracker,
        limits: EffectiveLimits,
        *,
        today: datetime.date,
    ) -> ValidationResult:
        violations: List[Conflict] = []
        reason = ineligibility_reason(employee, demand, self.policy)
        if reason:
            violations.append(
                Conflict(
                    kind=ConflictKind.INELIGIBLE,
                    severity=Severity.BLOCKING,
                    message=reason,
                    employee_id=employee.id,
                    demand_id=demand.demand_id,
                )
            )
        for kind, message in evaluate(employee, demand, tracker, limits, first_only=False):
            violations.append(
                Conflict(
                    kind=kind,
                    severity=Severity.BLOCKING,
                    message=message,
                    employee_id=employee.id,
                    demand_id=demand.demand_id,
                )
            )
        warnings = approach_warnings(employee, demand, tracker, limits)
        if demand.date < today:
            warnings.append(f"{demand.date.isoformat()} is in the past")
        median = pool_median(employees, tracker, demand)
        scored = score_candidate(employee, demand, tracker, limits, median=median, policy=self.policy)
        is_valid = not violations
        return ValidationResult(
            is_valid=is_valid,
            score=scored.score,
            violations=tuple(violations),
            warnings=tuple(warnings),
            can_proceed_with_warnings=is_valid and scored.score > self.proceed_threshold,
        )

    def create_shift(
        self,
        request: ShiftValidationRequest,
        *,
        today: Optional[datetime.date] = None,
        commit: bool = True,
    ) -> ScheduleRun:
        """Create one shift.

        With an employee the request is validated and saved as-is; without
        one, the shift runs through the same pipeline as a bulk demand.
        """
        today = today or datetime.date.today()
        demand = self._demand_for(request)
        limits = resolve_limits(self.policy)
        if request.employee_id is None:
            notices = [f"{demand.date.isoformat()} is in the past"] if demand.date < today else []
            return self._run([demand], limits, commit=commit, notices=notices)

        employees = list(self.employee_repo.load_employees())
        employee = self._employee(employees, request.employee_id)
        tracker = self._load_tracker([demand])
        validation = self._validate(employee, demand, employees, tracker, limits, today=today)
        if not validation.is_valid:
            summary = "; ".join(conflict.message for conflict in validation.violations)
            return ScheduleRun(
                success=False,
                message=f"Shift rejected: {summary}",
                error_kind="CONFLICT",
                requested=1,
                conflicts=validation.violations,
                warnings=validation.warnings,
            )

        assignment = ShiftAssignment(
            employee_id=employee.id,
            demand=demand,
            score=validation.score,
            reason=f"manual assignment by {self.actor}",
        )
        persisted = False
        if commit:
            try:
                self.shift_repo.save_assignments([assignment])
            except PersistenceError as exc:
                logger.exception("Saving shift for employee %s failed", employee.id)
                return failed_run(exc.kind, exc.message, requested=1, warnings=validation.warnings)
            persisted = True
            publish_shift_created(self.dispatcher, [assignment], actor=self.actor)
        tracker.register(employee.id, demand.date, demand.shift_type, demand.start_time, demand.end_time)
        outcome = DemandOutcome(demand=demand, status=DemandStatus.FULFILLED, employee_ids=(employee.id,))
        return build_run(
            requested=1,
            assignments=[assignment],
            conflicts=[],
            outcomes=[outcome],
            employees=employees,
            tracker=tracker,
            limits=limits,
            months=[month_key(demand.date)],
            warnings=validation.warnings,
            persisted=persisted,
        )
