from __future__ import annotations


class SchedulingError(Exception):
    """Base class for failures a scheduling run reports by kind."""

    kind = "SCHEDULING_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InsufficientStaffError(SchedulingError):
    kind = "INSUFFICIENT_STAFF"

    def __init__(self, message: str = "", *, capacity: int = 0, requested: int = 0) -> None:
        super().__init__(message)
        self.capacity = capacity
        self.requested = requested


class InvalidDemandError(SchedulingError, ValueError):
    kind = "INVALID_DEMAND"


class PersistenceError(SchedulingError):
    kind = "PERSISTENCE_FAILURE"


class ScheduleCancelled(SchedulingError):
    kind = "CANCELLED"
