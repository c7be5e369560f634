from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .calendar_utils import format_window, window_minutes


class Priority(str, enum.Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        if isinstance(value, cls):
            return value
        label = str(value or "NORMAL").strip().upper()
        try:
            return cls(label)
        except ValueError:
            return cls.NORMAL


class ConflictKind(str, enum.Enum):
    OK = "OK"
    DOUBLE_BOOKING = "DOUBLE_BOOKING"
    TIME_OVERLAP = "TIME_OVERLAP"
    REST_GAP = "REST_GAP"
    DAILY_CAP = "DAILY_CAP"
    WEEKLY_CAP = "WEEKLY_CAP"
    NIGHT_SHIFT_CAP = "NIGHT_SHIFT_CAP"
    MONTHLY_CAP = "MONTHLY_CAP"
    CONSECUTIVE_DAYS = "CONSECUTIVE_DAYS"
    INSUFFICIENT_STAFF = "INSUFFICIENT_STAFF"
    INELIGIBLE = "INELIGIBLE"


CAP_KINDS = frozenset(
    {
        ConflictKind.REST_GAP,
        ConflictKind.WEEKLY_CAP,
        ConflictKind.NIGHT_SHIFT_CAP,
        ConflictKind.MONTHLY_CAP,
        ConflictKind.CONSECUTIVE_DAYS,
    }
)


class Severity(str, enum.Enum):
    BLOCKING = "BLOCKING"
    WARNING = "WARNING"


class AlertLevel(str, enum.Enum):
    APPROACHING_LIMIT = "APPROACHING_LIMIT"
    AT_LIMIT = "AT_LIMIT"
    OVER_LIMIT = "OVER_LIMIT"


class DemandStatus(str, enum.Enum):
    PENDING = "PENDING"
    FILTERING = "FILTERING"
    SCORING = "SCORING"
    ASSIGNING = "ASSIGNING"
    FULFILLED = "FULFILLED"
    PARTIALLY_FULFILLED = "PARTIALLY_FULFILLED"
    UNFULFILLED = "UNFULFILLED"


@dataclass(frozen=True)
class StaffMember:
    id: int
    name: str
    role: str
    active: bool = True
    unit: Optional[str] = None
    max_shifts_per_month: int = 20
    max_consecutive_days: int = 5


@dataclass(frozen=True)
class ExistingShift:
    employee_id: int
    date: datetime.date
    location: str
    shift_type: str
    start_time: datetime.time
    end_time: datetime.time

    @property
    def window(self) -> Tuple[int, int]:
        return window_minutes(self.start_time, self.end_time)


@dataclass(frozen=True)
class ShiftDemand:
    date: datetime.date
    location: str
    shift_type: str
    start_time: datetime.time
    end_time: datetime.time
    required: int
    priority: Priority = Priority.NORMAL
    preferred_roles: Tuple[str, ...] = ()
    required_skills: Tuple[str, ...] = ()

    @property
    def demand_id(self) -> str:
        base = f"{self.date.isoformat()}/{self.location}/{self.shift_type}"
        if self.preferred_roles:
            return base + "/" + "+".join(self.preferred_roles)
        return base

    @property
    def window(self) -> Tuple[int, int]:
        return window_minutes(self.start_time, self.end_time)

    def describe(self) -> str:
        return (
            f"{self.shift_type} at {self.location} on {self.date.isoformat()} "
            f"({format_window(self.start_time, self.end_time)})"
        )


@dataclass(frozen=True)
class ShiftAssignment:
    employee_id: int
    demand: ShiftDemand
    score: float
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "demand_id": self.demand.demand_id,
            "date": self.demand.date.isoformat(),
            "location": self.demand.location,
            "shift_type": self.demand.shift_type,
            "start_time": self.demand.start_time.strftime("%H:%M"),
            "end_time": self.demand.end_time.strftime("%H:%M"),
            "score": round(self.score, 2),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Conflict:
    kind: ConflictKind
    severity: Severity
    message: str
    employee_id: Optional[int] = None
    demand_id: Optional[str] = None

    @property
    def key(self) -> Tuple[Optional[int], Optional[str], ConflictKind]:
        return self.employee_id, self.demand_id, self.kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "employee_id": self.employee_id,
            "demand_id": self.demand_id,
        }


@dataclass(frozen=True)
class WorkloadAlert:
    employee_id: int
    employee_name: str
    month: str
    shift_count: int
    cap: int
    level: AlertLevel
    preexisting: bool = False
    recommendation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "employee_name": self.employee_name,
            "month": self.month,
            "shift_count": self.shift_count,
            "cap": self.cap,
            "level": self.level.value,
            "preexisting": self.preexisting,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class DemandOutcome:
    demand: ShiftDemand
    status: DemandStatus
    employee_ids: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "demand_id": self.demand.demand_id,
            "status": self.status.value,
            "required": self.demand.required,
            "assigned": len(self.employee_ids),
            "employee_ids": list(self.employee_ids),
        }


@dataclass(frozen=True)
class CapacityReport:
    capacity: int
    requested: int
    ratio: float
    mode: str = "normal"

    @property
    def missing(self) -> int:
        return max(0, self.requested - self.capacity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capacity": self.capacity,
            "requested": self.requested,
            "ratio": round(self.ratio, 4),
            "mode": self.mode,
        }


@dataclass(frozen=True)
class WorkloadLimits:
    max_shifts_per_person: Optional[int] = None
    max_consecutive_days: Optional[int] = None
    max_shifts_per_week: Optional[int] = None
    max_shifts_per_day: Optional[int] = None


@dataclass(frozen=True)
class BulkScheduleRequest:
    period: str
    locations: Tuple[str, ...]
    shift_pattern: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    start_date: Optional[datetime.date] = None
    year: Optional[int] = None
    month: Optional[int] = None
    workload_limits: WorkloadLimits = field(default_factory=WorkloadLimits)
    priority: Priority = Priority.NORMAL


@dataclass(frozen=True)
class ShiftValidationRequest:
    date: datetime.date
    shift_type: str
    location: str
    employee_id: Optional[int] = None
    start_time: Optional[datetime.time] = None
    end_time: Optional[datetime.time] = None
    required_role: Optional[str] = None
    priority: Priority = Priority.NORMAL


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    score: float
    violations: Tuple[Conflict, ...] = ()
    warnings: Tuple[str, ...] = ()
    can_proceed_with_warnings: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "score": round(self.score, 2),
            "violations": [conflict.to_dict() for conflict in self.violations],
            "warnings": list(self.warnings),
            "can_proceed_with_warnings": self.can_proceed_with_warnings,
        }


@dataclass(frozen=True)
class ScheduleRun:
    success: bool
    message: str = ""
    error_kind: Optional[str] = None
    requested: int = 0
    assignments: Tuple[ShiftAssignment, ...] = ()
    conflicts: Tuple[Conflict, ...] = ()
    workload_alerts: Tuple[WorkloadAlert, ...] = ()
    fulfillment_rate: float = 0.0
    recommendations: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    capacity: Optional[CapacityReport] = None
    outcomes: Tuple[DemandOutcome, ...] = ()
    day_summary: Dict[str, List[str]] = field(default_factory=dict)
    persisted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error_kind": self.error_kind,
            "requested": self.requested,
            "assigned": len(self.assignments),
            "fulfillment_rate": round(self.fulfillment_rate, 2),
            "assignments": [assignment.to_dict() for assignment in self.assignments],
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "workload_alerts": [alert.to_dict() for alert in self.workload_alerts],
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
            "capacity": self.capacity.to_dict() if self.capacity else None,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "day_summary": {key: list(values) for key, values in self.day_summary.items()},
            "persisted": self.persisted,
        }
