from __future__ import annotations

import datetime
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from roles import normalize_role
from scheduling.errors import PersistenceError
from scheduling.models import ExistingShift, ShiftAssignment, StaffMember

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc
DATA_DIR = Path(__file__).resolve().parent / "data"
DB_PATH = DATA_DIR / "rota.db"
DATABASE_URL = os.environ.get("ROTA_DATABASE_URL") or f"sqlite:///{DB_PATH}"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[Optional[str]] = mapped_column(String(40), unique=True, nullable=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    role: Mapped[str] = mapped_column(String(40), nullable=False, default="STAFF")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    unit: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    max_shifts_per_month: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    max_consecutive_days: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    shifts: Mapped[List["Shift"]] = relationship(back_populates="employee", cascade="all, delete-orphan")

    @property
    def is_active(self) -> bool:
        return (self.status or "").strip().lower() == "active"


class Shift(Base):
    __tablename__ = "shifts"
    __table_args__ = (UniqueConstraint("employee_id", "date", "shift_type", name="uq_shift_employee_date_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    location: Mapped[str] = mapped_column(String(60), nullable=False)
    shift_type: Mapped[str] = mapped_column(String(20), nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    employee: Mapped[Employee] = relationship(back_populates="shifts")


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    params_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    actor: Mapped[str] = mapped_column(String(80), nullable=False, default="system")
    action: Mapped[str] = mapped_column(String(80), nullable=False)
    target_type: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    target_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_db() -> None:
    if DATABASE_URL.startswith("sqlite:///") and not os.environ.get("ROTA_DATABASE_URL"):
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(engine)


def get_active_policy(session) -> Optional[Policy]:
    return session.scalars(select(Policy).where(Policy.is_active.is_(True)).order_by(Policy.id.desc())).first()


def upsert_policy(session, name: str, params: Dict[str, Any], *, activate: bool = True) -> Policy:
    record = session.scalars(select(Policy).where(Policy.name == name)).first()
    if record is None:
        record = Policy(name=name)
        session.add(record)
    record.params_json = json.dumps(params)
    if activate:
        for other in session.scalars(select(Policy).where(Policy.is_active.is_(True))).all():
            other.is_active = False
        record.is_active = True
    session.flush()
    return record


def record_audit_log(
    session,
    actor: str,
    action: str,
    *,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        actor=actor or "system",
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload_json=json.dumps(payload or {}, default=str),
    )
    session.add(entry)
    return entry


def employee_to_staff(employee: Employee) -> StaffMember:
    return StaffMember(
        id=employee.id,
        name=employee.full_name,
        role=normalize_role(employee.role),
        active=employee.is_active,
        unit=employee.unit,
        max_shifts_per_month=employee.max_shifts_per_month or 20,
        max_consecutive_days=employee.max_consecutive_days or 5,
    )


def shift_to_existing(shift: Shift) -> ExistingShift:
    return ExistingShift(
        employee_id=shift.employee_id,
        date=shift.date,
        location=shift.location,
        shift_type=shift.shift_type,
        start_time=shift.start_time,
        end_time=shift.end_time,
    )


class SqlEmployeeRepository:
    def __init__(self, session) -> None:
        self.session = session

    def load_employees(self) -> List[StaffMember]:
        rows = self.session.scalars(select(Employee).order_by(Employee.id.asc())).all()
        return [employee_to_staff(row) for row in rows]


class SqlShiftRepository:
    """Shift persistence; ``save_assignments`` writes a whole run in one transaction."""

    def __init__(self, session, actor: str = "system") -> None:
        self.session = session
        self.actor = actor or "system"

    def load_shifts(self, start: datetime.date, end: datetime.date) -> List[ExistingShift]:
        stmt = (
            select(Shift)
            .where(Shift.date >= start, Shift.date <= end, Shift.status != "cancelled")
            .order_by(Shift.date.asc(), Shift.start_time.asc(), Shift.employee_id.asc())
        )
        return [shift_to_existing(row) for row in self.session.scalars(stmt).all()]

    def list_shifts(
        self,
        start: datetime.date,
        end: datetime.date,
        *,
        location: Optional[str] = None,
    ) -> Sequence[Shift]:
        stmt = select(Shift).where(Shift.date >= start, Shift.date <= end)
        if location:
            stmt = stmt.where(Shift.location == location)
        stmt = stmt.order_by(Shift.date.asc(), Shift.start_time.asc(), Shift.employee_id.asc())
        return self.session.scalars(stmt).all()

    def save_assignments(self, assignments: Iterable[ShiftAssignment]) -> List[int]:
        rows: List[Shift] = []
        try:
            for assignment in assignments:
                demand = assignment.demand
                row = Shift(
                    employee_id=assignment.employee_id,
                    date=demand.date,
                    location=demand.location,
                    shift_type=demand.shift_type,
                    start_time=demand.start_time,
                    end_time=demand.end_time,
                    status="scheduled",
                    score=assignment.score,
                    notes=assignment.reason,
                )
                self.session.add(row)
                rows.append(row)
            self.session.flush()
            record_audit_log(
                self.session,
                self.actor,
                "schedule_assign",
                target_type="Shift",
                payload={"shifts_created": len(rows), "shift_ids": [row.id for row in rows]},
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Failed to persist %d assignments", len(rows))
            raise PersistenceError(f"Could not save assignments: {exc}") from exc
        return [row.id for row in rows]
