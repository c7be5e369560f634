from __future__ import annotations

import datetime
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

import database
from database import SqlEmployeeRepository, SqlShiftRepository
from notifications import LoggingDispatcher, NotificationDispatcher
from policy import ensure_default_policy, load_active_policy
from scheduling.engine import ScheduleEngine
from scheduling.errors import InvalidDemandError
from scheduling.models import BulkScheduleRequest, Priority, ShiftValidationRequest, WorkloadLimits

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "CONFLICT": status.HTTP_409_CONFLICT,
    "INSUFFICIENT_STAFF": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "PERSISTENCE_FAILURE": status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    database.init_db()
    ensure_default_policy(database.SessionLocal)
    yield


app = FastAPI(title="Rota Balancer", lifespan=lifespan)
_dispatcher = LoggingDispatcher()


def get_db() -> Iterator:
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


class ShiftPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    employee_id: Optional[int] = Field(default=None, alias="employeeId")
    date: datetime.date
    shift_type: str = Field(alias="shiftType")
    location: str
    start_time: Optional[datetime.time] = Field(default=None, alias="startTime")
    end_time: Optional[datetime.time] = Field(default=None, alias="endTime")
    required_role: Optional[str] = Field(default=None, alias="requiredRole")
    priority: str = "NORMAL"
    actor: str = "api"

    def to_request(self) -> ShiftValidationRequest:
        return ShiftValidationRequest(
            date=self.date,
            shift_type=self.shift_type,
            location=self.location,
            employee_id=self.employee_id,
            start_time=self.start_time,
            end_time=self.end_time,
            required_role=self.required_role,
            priority=Priority.parse(self.priority),
        )


class WorkloadLimitsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_shifts_per_person: Optional[int] = Field(default=None, alias="maxShiftsPerPerson")
    max_consecutive_days: Optional[int] = Field(default=None, alias="maxConsecutiveDays")
    max_shifts_per_week: Optional[int] = Field(default=None, alias="maxShiftsPerWeek")
    max_shifts_per_day: Optional[int] = Field(default=None, alias="maxShiftsPerDay")


class BulkSchedulePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    period: str = "month"
    start_date: Optional[datetime.date] = Field(default=None, alias="startDate")
    year: Optional[int] = None
    month: Optional[int] = None
    locations: List[str] = Field(default_factory=list)
    shift_pattern: Dict[str, Dict[str, Any]] = Field(default_factory=dict, alias="shiftPattern")
    workload_limits: Optional[WorkloadLimitsPayload] = Field(default=None, alias="workloadLimits")
    priority: str = "NORMAL"
    commit: bool = True
    actor: str = "api"

    def to_request(self) -> BulkScheduleRequest:
        limits = self.workload_limits or WorkloadLimitsPayload()
        return BulkScheduleRequest(
            period=self.period,
            locations=tuple(self.locations),
            shift_pattern=self.shift_pattern,
            start_date=self.start_date,
            year=self.year,
            month=self.month,
            workload_limits=WorkloadLimits(
                max_shifts_per_person=limits.max_shifts_per_person,
                max_consecutive_days=limits.max_consecutive_days,
                max_shifts_per_week=limits.max_shifts_per_week,
                max_shifts_per_day=limits.max_shifts_per_day,
            ),
            priority=Priority.parse(self.priority),
        )


def _engine(session, actor: str, dispatcher: Optional[NotificationDispatcher]) -> ScheduleEngine:
    return ScheduleEngine(
        SqlEmployeeRepository(session),
        SqlShiftRepository(session, actor=actor),
        load_active_policy(session),
        dispatcher=dispatcher,
        actor=actor,
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/shifts/validate")
def validate_shift(payload: ShiftPayload, session=Depends(get_db)) -> Dict[str, Any]:
    if payload.employee_id is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="employee_id is required")
    try:
        result = _engine(session, payload.actor, None).validate_assignment(payload.to_request())
    except InvalidDemandError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc
    return result.to_dict()


@app.post("/api/v1/shifts")
def create_shift(
    payload: ShiftPayload,
    session=Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    try:
        run = _engine(session, payload.actor, dispatcher).create_shift(payload.to_request())
    except InvalidDemandError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc
    code = status.HTTP_201_CREATED if run.success else ERROR_STATUS.get(run.error_kind or "", status.HTTP_200_OK)
    return JSONResponse(status_code=code, content=run.to_dict())


@app.post("/api/v1/schedules/bulk")
def bulk_schedule(
    payload: BulkSchedulePayload,
    session=Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    try:
        run = _engine(session, payload.actor, dispatcher).generate(payload.to_request(), commit=payload.commit)
    except InvalidDemandError as exc:
        logger.info("Rejected bulk request: %s", exc.message)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message) from exc
    code = ERROR_STATUS.get(run.error_kind or "", status.HTTP_200_OK)
    return JSONResponse(status_code=code, content=run.to_dict())


@app.get("/api/v1/shifts")
def list_shifts(
    start: datetime.date = Query(...),
    end: Optional[datetime.date] = Query(default=None),
    location: Optional[str] = Query(default=None),
    session=Depends(get_db),
) -> Dict[str, Any]:
    end = end or start
    if end < start:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end must not precede start")
    rows = SqlShiftRepository(session).list_shifts(start, end, location=location)
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "shifts": [
            {
                "id": row.id,
                "employee_id": row.employee_id,
                "date": row.date.isoformat(),
                "location": row.location,
                "shift_type": row.shift_type,
                "start_time": row.start_time.strftime("%H:%M"),
                "end_time": row.end_time.strftime("%H:%M"),
                "status": row.status,
                "score": row.score,
            }
            for row in rows
        ],
    }
