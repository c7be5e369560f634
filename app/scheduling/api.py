from __future__ import annotations

import datetime
import threading
from typing import Callable, Optional

from database import SqlEmployeeRepository, SqlShiftRepository
from notifications import NotificationDispatcher
from policy import load_active_policy

from .engine import ScheduleEngine
from .models import BulkScheduleRequest, ScheduleRun, ShiftValidationRequest, ValidationResult


def _engine_for(session, actor: str, dispatcher: Optional[NotificationDispatcher]) -> ScheduleEngine:
    policy = load_active_policy(session)
    return ScheduleEngine(
        SqlEmployeeRepository(session),
        SqlShiftRepository(session, actor=actor or "system"),
        policy,
        dispatcher=dispatcher,
        actor=actor or "system",
    )


def generate_schedule(
    session_factory: Callable,
    request: BulkScheduleRequest,
    *,
    actor: str,
    dispatcher: Optional[NotificationDispatcher] = None,
    today: Optional[datetime.date] = None,
    cancel_event: Optional[threading.Event] = None,
    commit: bool = True,
) -> ScheduleRun:
    if request is None:
        raise ValueError("request is required.")
    with session_factory() as session:
        engine = _engine_for(session, actor, dispatcher)
        return engine.generate(request, today=today, cancel_event=cancel_event, commit=commit)


def validate_shift(
    session_factory: Callable,
    request: ShiftValidationRequest,
    *,
    today: Optional[datetime.date] = None,
) -> ValidationResult:
    with session_factory() as session:
        engine = _engine_for(session, "system", None)
        return engine.validate_assignment(request, today=today)


def create_shift(
    session_factory: Callable,
    request: ShiftValidationRequest,
    *,
    actor: str,
    dispatcher: Optional[NotificationDispatcher] = None,
    today: Optional[datetime.date] = None,
) -> ScheduleRun:
    with session_factory() as session:
        engine = _engine_for(session, actor, dispatcher)
        return engine.create_shift(request, today=today)
