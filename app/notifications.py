from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from scheduling.models import ShiftAssignment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShiftCreatedEvent:
    employee_id: int
    date: datetime.date
    location: str
    shift_type: str
    start_time: datetime.time
    end_time: datetime.time
    actor: str = "system"

    @classmethod
    def from_assignment(cls, assignment: ShiftAssignment, actor: str = "system") -> "ShiftCreatedEvent":
        demand = assignment.demand
        return cls(
            employee_id=assignment.employee_id,
            date=demand.date,
            location=demand.location,
            shift_type=demand.shift_type,
            start_time=demand.start_time,
            end_time=demand.end_time,
            actor=actor,
        )

    def summary(self) -> str:
        return (
            f"New {self.shift_type} shift at {self.location} on {self.date.isoformat()} "
            f"{self.start_time.strftime('%H:%M')}-{self.end_time.strftime('%H:%M')}"
        )


class NotificationDispatcher(Protocol):
    def dispatch(self, event: ShiftCreatedEvent) -> None:
        ...


class LoggingDispatcher:
    """Writes each event to the log; used when no delivery channel is configured."""

    def dispatch(self, event: ShiftCreatedEvent) -> None:
        logger.info("Notify employee %s: %s", event.employee_id, event.summary())


class QueueDispatcher:
    def __init__(self) -> None:
        self.events: List[ShiftCreatedEvent] = []

    def dispatch(self, event: ShiftCreatedEvent) -> None:
        self.events.append(event)


def publish_shift_created(
    dispatcher: Optional[NotificationDispatcher],
    assignments: Iterable[ShiftAssignment],
    *,
    actor: str = "system",
) -> int:
    """Send one event per saved assignment; returns how many were delivered.

    Delivery problems are logged and never reach the caller: the shifts are
    already committed at this point.
    """
    if dispatcher is None:
        return 0
    delivered = 0
    for assignment in assignments:
        event = ShiftCreatedEvent.from_assignment(assignment, actor=actor)
        try:
            dispatcher.dispatch(event)
        except Exception:
            logger.exception("Notification for employee %s failed", event.employee_id)
            continue
        delivered += 1
    if delivered:
        logger.info("Dispatched %d shift notifications", delivered)
    return delivered
