from __future__ import annotations

import datetime
from typing import Iterable, List, Optional, Protocol, Sequence

from .errors import PersistenceError
from .models import ExistingShift, ShiftAssignment, StaffMember


class EmployeeRepository(Protocol):
    def load_employees(self) -> Sequence[StaffMember]:
        ...


class ShiftRepository(Protocol):
    def load_shifts(self, start: datetime.date, end: datetime.date) -> Sequence[ExistingShift]:
        ...

    def save_assignments(self, assignments: Iterable[ShiftAssignment]) -> List[int]:
        ...


class InMemoryEmployeeRepository:
    def __init__(self, employees: Optional[Iterable[StaffMember]] = None) -> None:
        self.employees: List[StaffMember] = list(employees or [])

    def load_employees(self) -> List[StaffMember]:
        return list(self.employees)


class InMemoryShiftRepository:
    """Keeps shifts in a list; ``fail_on_save`` simulates a storage outage."""

    def __init__(self, shifts: Optional[Iterable[ExistingShift]] = None, *, fail_on_save: bool = False) -> None:
        self.shifts: List[ExistingShift] = list(shifts or [])
        self.fail_on_save = fail_on_save
        self.save_calls = 0

    def load_shifts(self, start: datetime.date, end: datetime.date) -> List[ExistingShift]:
        return [shift for shift in self.shifts if start <= shift.date <= end]

    def save_assignments(self, assignments: Iterable[ShiftAssignment]) -> List[int]:
        self.save_calls += 1
        batch = list(assignments)
        if self.fail_on_save:
            raise PersistenceError("In-memory store rejected the batch")
        first_id = len(self.shifts) + 1
        for assignment in batch:
            demand = assignment.demand
            self.shifts.append(
                ExistingShift(
                    employee_id=assignment.employee_id,
                    date=demand.date,
                    location=demand.location,
                    shift_type=demand.shift_type,
                    start_time=demand.start_time,
                    end_time=demand.end_time,
                )
            )
        return list(range(first_id, first_id + len(batch)))
