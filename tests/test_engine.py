from __future__ import annotations

import datetime
import sys
import threading
from collections import Counter
from pathlib import Path
from typing import List

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from notifications import QueueDispatcher  # noqa: E402
from policy import build_default_policy  # noqa: E402
from scheduling.calendar_utils import window_minutes, windows_overlap  # noqa: E402
from scheduling.engine import ScheduleEngine  # noqa: E402
from scheduling.errors import InvalidDemandError, ScheduleCancelled  # noqa: E402
from scheduling.models import (  # noqa: E402
    AlertLevel,
    BulkScheduleRequest,
    ConflictKind,
    DemandStatus,
    ExistingShift,
    Severity,
    ShiftValidationRequest,
    StaffMember,
    WorkloadLimits,
)
from scheduling.repository import InMemoryEmployeeRepository, InMemoryShiftRepository  # noqa: E402

TODAY = datetime.date(2026, 10, 19)
WEDNESDAY = datetime.date(2026, 10, 21)


def _staff(count: int, *, role: str = "NURSE", cap: int = 20) -> List[StaffMember]:
    return [
        StaffMember(id=index, name=f"Nurse {index}", role=role, max_shifts_per_month=cap)
        for index in range(1, count + 1)
    ]


def _engine(staff, shifts=None, *, fail_on_save: bool = False, dispatcher=None):
    shift_repo = InMemoryShiftRepository(shifts, fail_on_save=fail_on_save)
    engine = ScheduleEngine(
        InMemoryEmployeeRepository(staff),
        shift_repo,
        build_default_policy(),
        dispatcher=dispatcher,
        actor="tester",
    )
    return engine, shift_repo


def _day_request(headcount: int = 4) -> BulkScheduleRequest:
    return BulkScheduleRequest(
        period="day",
        start_date=WEDNESDAY,
        locations=("RAWAT_INAP",),
        shift_pattern={"RAWAT_INAP": {"MORNING": headcount}},
    )


def _month_request(**limits) -> BulkScheduleRequest:
    return BulkScheduleRequest(
        period="month",
        year=2026,
        month=11,
        locations=("RAWAT_JALAN",),
        shift_pattern={"RAWAT_JALAN": {"MORNING": 2}},
        workload_limits=WorkloadLimits(**limits),
    )


class BrokenDispatcher:
    def __init__(self) -> None:
        self.calls = 0

    def dispatch(self, event) -> None:
        self.calls += 1
        raise RuntimeError("gateway down")


def test_four_of_five_available_fills_the_demand() -> None:
    dispatcher = QueueDispatcher()
    engine, repo = _engine(_staff(5), dispatcher=dispatcher)

    run = engine.generate(_day_request(4), today=TODAY)

    assert run.success
    assert len(run.assignments) == 4
    assert run.fulfillment_rate == pytest.approx(100.0)
    assert run.conflicts == ()
    assert sorted(a.employee_id for a in run.assignments) == [1, 2, 3, 4]
    assert run.persisted
    assert len(repo.shifts) == 4
    assert len(dispatcher.events) == 4
    assert run.outcomes[0].status is DemandStatus.FULFILLED
    assert run.day_summary["successful_dates"] == [WEDNESDAY.isoformat()]


def test_half_capacity_month_is_partial_success() -> None:
    engine, _ = _engine(_staff(3, cap=10))

    run = engine.generate(_month_request(), today=TODAY)

    assert run.success
    assert run.requested == 60
    assert run.capacity.mode == "partial"
    assert 45.0 <= run.fulfillment_rate <= 55.0
    assert any("additional staff" in text for text in run.recommendations)
    assert any("partial" in text for text in run.warnings)
    counts = Counter(a.employee_id for a in run.assignments)
    assert max(counts.values()) <= 10
    short = [c for c in run.conflicts if c.kind is ConflictKind.INSUFFICIENT_STAFF]
    assert short and all(c.severity is Severity.WARNING for c in short)
    monthly = [c for c in run.conflicts if c.kind is ConflictKind.MONTHLY_CAP]
    assert monthly and all(c.severity is Severity.WARNING for c in monthly)


def test_pool_below_thirty_percent_fails_without_writes() -> None:
    engine, repo = _engine(_staff(1, cap=10))

    run = engine.generate(_month_request(), today=TODAY)

    assert not run.success
    assert run.error_kind == "INSUFFICIENT_STAFF"
    assert run.assignments == ()
    assert repo.save_calls == 0
    assert repo.shifts == []
    assert any("additional staff" in text for text in run.recommendations)


def test_pattern_for_unrequested_location_raises_before_assigning() -> None:
    engine, repo = _engine(_staff(5))
    request = BulkScheduleRequest(
        period="week",
        start_date=TODAY,
        locations=("RAWAT_INAP",),
        shift_pattern={"RAWAT_INAP": {"MORNING": 1}, "ICU": {"MORNING": 1}},
    )

    with pytest.raises(InvalidDemandError):
        engine.generate(request, today=TODAY)
    assert repo.save_calls == 0


def test_assignments_never_overlap_or_break_caps() -> None:
    staff = _staff(8, cap=12)
    existing = [
        ExistingShift(1, datetime.date(2026, 11, day), "ICU", "NIGHT", datetime.time(21), datetime.time(7))
        for day in (2, 3, 4)
    ]
    engine, _ = _engine(staff, existing)
    request = BulkScheduleRequest(
        period="month",
        year=2026,
        month=11,
        locations=("RAWAT_INAP",),
        shift_pattern={"RAWAT_INAP": {"MORNING": 2, "AFTERNOON": 1, "NIGHT": 1}},
    )

    run = engine.generate(request, today=TODAY, commit=False)

    windows = {}
    for shift in existing:
        windows.setdefault((shift.employee_id, shift.date), []).append(window_minutes(shift.start_time, shift.end_time))
    for assignment in run.assignments:
        key = (assignment.employee_id, assignment.demand.date)
        window = assignment.demand.window
        assert not any(windows_overlap(window, other) for other in windows.get(key, []))
        windows.setdefault(key, []).append(window)
        assert len(windows[key]) <= 2

    monthly = Counter(a.employee_id for a in run.assignments)
    for employee_id, count in monthly.items():
        prior = sum(1 for shift in existing if shift.employee_id == employee_id)
        assert count + prior <= 12

    weekly = Counter((a.employee_id, a.demand.date.isocalendar()[1]) for a in run.assignments)
    assert max(weekly.values()) <= 6

    nights = Counter(
        (a.employee_id, a.demand.date.isocalendar()[1]) for a in run.assignments if a.demand.shift_type == "NIGHT"
    )
    assert max(nights.values()) <= 2

    for employee_id in monthly:
        spans = sorted(
            (day.toordinal() * 1440 + start, day.toordinal() * 1440 + end, day)
            for (holder, day), held in windows.items()
            if holder == employee_id
            for start, end in held
        )
        for (_, earlier_end, earlier_day), (later_start, _, later_day) in zip(spans, spans[1:]):
            if earlier_day != later_day:
                assert later_start - earlier_end >= 8 * 60

    for employee_id in monthly:
        days = sorted(
            {a.demand.date for a in run.assignments if a.employee_id == employee_id}
            | {s.date for s in existing if s.employee_id == employee_id}
        )
        streak = longest = 1
        for previous, current in zip(days, days[1:]):
            streak = streak + 1 if (current - previous).days == 1 else 1
            longest = max(longest, streak)
        assert longest <= 5


def test_lower_person_cap_never_adds_assignments() -> None:
    staff = _staff(4)
    loose, _ = _engine(staff)
    tight, _ = _engine(staff)

    loose_run = loose.generate(_month_request(max_shifts_per_person=12), today=TODAY, commit=False)
    tight_run = tight.generate(_month_request(max_shifts_per_person=8), today=TODAY, commit=False)

    assert len(tight_run.assignments) <= len(loose_run.assignments)
    assert max(Counter(a.employee_id for a in tight_run.assignments).values()) <= 8


def test_preview_runs_are_repeatable() -> None:
    engine, repo = _engine(_staff(6))

    first = engine.generate(_month_request(), today=TODAY, commit=False)
    second = engine.generate(_month_request(), today=TODAY, commit=False)

    assert first.to_dict() == second.to_dict()
    assert not first.persisted
    assert repo.save_calls == 0


def test_second_commit_sees_first_run_as_existing_load() -> None:
    engine, repo = _engine(_staff(5))

    engine.generate(_day_request(4), today=TODAY)
    again = engine.generate(_day_request(4), today=TODAY)

    assert [a.employee_id for a in again.assignments] == [5]
    assert again.fulfillment_rate == pytest.approx(25.0)
    assert any(c.kind is ConflictKind.DOUBLE_BOOKING for c in again.conflicts)
    assert len(repo.shifts) == 5


def test_persistence_failure_reports_nothing_written() -> None:
    dispatcher = QueueDispatcher()
    engine, repo = _engine(_staff(5), fail_on_save=True, dispatcher=dispatcher)

    run = engine.generate(_day_request(4), today=TODAY)

    assert not run.success
    assert run.error_kind == "PERSISTENCE_FAILURE"
    assert run.assignments == ()
    assert not run.persisted
    assert repo.shifts == []
    assert dispatcher.events == []


def test_dispatcher_failure_does_not_fail_the_run() -> None:
    dispatcher = BrokenDispatcher()
    engine, repo = _engine(_staff(5), dispatcher=dispatcher)

    run = engine.generate(_day_request(3), today=TODAY)

    assert run.success
    assert run.persisted
    assert dispatcher.calls == 3
    assert len(repo.shifts) == 3


def test_cancelled_run_writes_nothing() -> None:
    engine, repo = _engine(_staff(5))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ScheduleCancelled):
        engine.generate(_month_request(), today=TODAY, cancel_event=cancel)
    assert repo.save_calls == 0


def test_critical_location_without_clinical_staff_reports_ineligible() -> None:
    engine, _ = _engine(_staff(3, role="STAFF"))
    request = BulkScheduleRequest(
        period="day",
        start_date=WEDNESDAY,
        locations=("ICU",),
        shift_pattern={"ICU": {"MORNING": 1}},
    )

    run = engine.generate(request, today=TODAY, commit=False)

    assert run.assignments == ()
    assert run.fulfillment_rate == pytest.approx(0.0)
    assert ConflictKind.INELIGIBLE in {c.kind for c in run.conflicts}
    assert run.day_summary["failed_dates"] == [WEDNESDAY.isoformat()]


def test_validate_assignment_reports_violations_and_score() -> None:
    existing = [ExistingShift(1, WEDNESDAY, "ICU", "MORNING", datetime.time(7), datetime.time(14))]
    engine, _ = _engine(_staff(3), existing)

    clash = engine.validate_assignment(
        ShiftValidationRequest(date=WEDNESDAY, shift_type="PAGI", location="RAWAT_INAP", employee_id=1),
        today=TODAY,
    )
    fine = engine.validate_assignment(
        ShiftValidationRequest(date=WEDNESDAY, shift_type="SIANG", location="RAWAT_INAP", employee_id=2),
        today=TODAY,
    )

    assert not clash.is_valid
    assert clash.violations[0].kind is ConflictKind.DOUBLE_BOOKING
    assert not clash.can_proceed_with_warnings
    assert fine.is_valid
    assert fine.score > 30
    assert fine.can_proceed_with_warnings


def test_validate_unknown_employee_is_invalid() -> None:
    engine, _ = _engine(_staff(1))

    with pytest.raises(InvalidDemandError):
        engine.validate_assignment(
            ShiftValidationRequest(date=WEDNESDAY, shift_type="MORNING", location="ICU", employee_id=99),
            today=TODAY,
        )


def test_create_shift_with_and_without_employee() -> None:
    dispatcher = QueueDispatcher()
    engine, repo = _engine(_staff(2), dispatcher=dispatcher)
    manual = ShiftValidationRequest(date=WEDNESDAY, shift_type="NIGHT", location="RAWAT_INAP", employee_id=2)

    created = engine.create_shift(manual, today=TODAY)
    duplicate = engine.create_shift(manual, today=TODAY)
    auto = engine.create_shift(
        ShiftValidationRequest(date=WEDNESDAY, shift_type="NIGHT", location="RAWAT_INAP"),
        today=TODAY,
    )

    assert created.success and created.persisted
    assert not duplicate.success
    assert duplicate.error_kind == "CONFLICT"
    assert auto.success
    assert [a.employee_id for a in auto.assignments] == [1]
    assert len(repo.shifts) == 2
    assert [event.employee_id for event in dispatcher.events] == [2, 1]


def _one_seat(day: datetime.date, shift_type: str) -> BulkScheduleRequest:
    return BulkScheduleRequest(
        period="day",
        start_date=day,
        locations=("RAWAT_INAP",),
        shift_pattern={"RAWAT_INAP": {shift_type: 1}},
    )


def test_night_before_an_early_start_is_rejected() -> None:
    thursday = WEDNESDAY + datetime.timedelta(days=1)
    existing = [ExistingShift(1, thursday, "RAWAT_INAP", "MORNING", datetime.time(6), datetime.time(14))]
    engine, _ = _engine(_staff(2), existing)

    verdict = engine.validate_assignment(
        ShiftValidationRequest(date=WEDNESDAY, shift_type="MALAM", location="RAWAT_INAP", employee_id=1),
        today=TODAY,
    )
    run = engine.generate(_one_seat(WEDNESDAY, "NIGHT"), today=TODAY, commit=False)

    assert not verdict.is_valid
    assert [c.kind for c in verdict.violations] == [ConflictKind.TIME_OVERLAP]
    assert [a.employee_id for a in run.assignments] == [2]


def test_morning_after_a_night_needs_rest() -> None:
    existing = [ExistingShift(1, WEDNESDAY, "RAWAT_INAP", "NIGHT", datetime.time(21), datetime.time(7))]
    engine, _ = _engine(_staff(2), existing)
    thursday = WEDNESDAY + datetime.timedelta(days=1)

    verdict = engine.validate_assignment(
        ShiftValidationRequest(date=thursday, shift_type="PAGI", location="RAWAT_INAP", employee_id=1),
        today=TODAY,
    )
    run = engine.generate(_one_seat(thursday, "MORNING"), today=TODAY, commit=False)

    assert not verdict.is_valid
    assert [c.kind for c in verdict.violations] == [ConflictKind.REST_GAP]
    assert [a.employee_id for a in run.assignments] == [2]


def test_overage_from_before_the_run_is_reported_not_corrected() -> None:
    staff = [
        StaffMember(id=1, name="Nurse 1", role="NURSE", max_shifts_per_month=3),
        StaffMember(id=2, name="Nurse 2", role="NURSE"),
    ]
    existing = [
        ExistingShift(1, datetime.date(2026, 11, day), "RAWAT_INAP", "MORNING", datetime.time(7), datetime.time(14))
        for day in (2, 4, 6, 9)
    ]
    engine, _ = _engine(staff, existing)

    run = engine.generate(_one_seat(datetime.date(2026, 11, 11), "MORNING"), today=TODAY, commit=False)

    assert [a.employee_id for a in run.assignments] == [2]
    assert [(a.employee_id, a.level, a.preexisting, a.shift_count) for a in run.workload_alerts] == [
        (1, AlertLevel.OVER_LIMIT, True, 4)
    ]


@pytest.mark.parametrize(
    "cap, prior, level",
    [
        (2, 1, AlertLevel.AT_LIMIT),
        (10, 8, AlertLevel.APPROACHING_LIMIT),
    ],
)
def test_run_that_fills_up_an_employee_raises_an_alert(cap, prior, level) -> None:
    staff = [StaffMember(id=1, name="Nurse 1", role="NURSE", max_shifts_per_month=cap)]
    days = (2, 3, 4, 16, 17, 18, 23, 24)[:prior]
    existing = [
        ExistingShift(1, datetime.date(2026, 11, day), "RAWAT_INAP", "MORNING", datetime.time(7), datetime.time(14))
        for day in days
    ]
    engine, _ = _engine(staff, existing)

    run = engine.generate(_one_seat(datetime.date(2026, 11, 11), "MORNING"), today=TODAY, commit=False)

    assert [a.employee_id for a in run.assignments] == [1]
    assert [(a.employee_id, a.level, a.preexisting, a.shift_count) for a in run.workload_alerts] == [
        (1, level, False, prior + 1)
    ]


def test_create_shift_without_employee_flags_past_date() -> None:
    engine, repo = _engine(_staff(2))
    last_week = TODAY - datetime.timedelta(days=7)

    run = engine.create_shift(
        ShiftValidationRequest(date=last_week, shift_type="MORNING", location="RAWAT_INAP"),
        today=TODAY,
        commit=False,
    )

    assert run.success
    assert f"{last_week.isoformat()} is in the past" in run.warnings
    assert repo.save_calls == 0
