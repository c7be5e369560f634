from __future__ import annotations

import datetime
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Set, Tuple

from .calendar_utils import MINUTES_PER_DAY, iso_week_key, month_key, window_minutes
from .models import ExistingShift

Window = Tuple[int, int, str]


class WorkloadTracker:
    """Per-run snapshot of each employee's commitments.

    Built once from the shifts already on file and updated after every pick,
    so later demands in the same run see earlier assignments.
    """

    def __init__(self) -> None:
        self.windows: Dict[int, Dict[datetime.date, List[Window]]] = defaultdict(lambda: defaultdict(list))
        self.week_counts: Counter = Counter()
        self.night_week_counts: Counter = Counter()
        self.month_counts: Counter = Counter()
        self.preexisting_month_counts: Counter = Counter()

    @classmethod
    def from_shifts(cls, shifts: Iterable[ExistingShift]) -> "WorkloadTracker":
        tracker = cls()
        for shift in shifts:
            tracker.register(shift.employee_id, shift.date, shift.shift_type, shift.start_time, shift.end_time)
        tracker.preexisting_month_counts = Counter(tracker.month_counts)
        return tracker

    def register(
        self,
        employee_id: int,
        day: datetime.date,
        shift_type: str,
        start: datetime.time,
        end: datetime.time,
    ) -> None:
        start_minutes, end_minutes = window_minutes(start, end)
        self.windows[employee_id][day].append((start_minutes, end_minutes, shift_type))
        self.week_counts[(employee_id, iso_week_key(day))] += 1
        if end_minutes > MINUTES_PER_DAY:
            self.night_week_counts[(employee_id, iso_week_key(day))] += 1
        self.month_counts[(employee_id, month_key(day))] += 1

    def windows_on(self, employee_id: int, day: datetime.date) -> List[Window]:
        days = self.windows.get(employee_id)
        if not days:
            return []
        return list(days.get(day, []))

    def shift_types_on(self, employee_id: int, day: datetime.date) -> Set[str]:
        return {shift_type for _, _, shift_type in self.windows_on(employee_id, day)}

    def day_count(self, employee_id: int, day: datetime.date) -> int:
        return len(self.windows_on(employee_id, day))

    def week_count(self, employee_id: int, day: datetime.date) -> int:
        return self.week_counts[(employee_id, iso_week_key(day))]

    def night_week_count(self, employee_id: int, day: datetime.date) -> int:
        return self.night_week_counts[(employee_id, iso_week_key(day))]

    def month_count(self, employee_id: int, day: datetime.date) -> int:
        return self.month_counts[(employee_id, month_key(day))]

    def month_count_for(self, employee_id: int, key: Tuple[int, int]) -> int:
        return self.month_counts[(employee_id, key)]

    def preexisting_month_count(self, employee_id: int, key: Tuple[int, int]) -> int:
        return self.preexisting_month_counts[(employee_id, key)]

    def worked(self, employee_id: int, day: datetime.date) -> bool:
        return self.day_count(employee_id, day) > 0

    def streak_with(self, employee_id: int, day: datetime.date) -> int:
        """Length of the run of consecutive worked days that would include ``day``."""
        before = 0
        cursor = day - datetime.timedelta(days=1)
        while self.worked(employee_id, cursor):
            before += 1
            cursor -= datetime.timedelta(days=1)
        after = 0
        cursor = day + datetime.timedelta(days=1)
        while self.worked(employee_id, cursor):
            after += 1
            cursor += datetime.timedelta(days=1)
        return before + 1 + after

