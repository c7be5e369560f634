from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select

from database import DATA_DIR, Employee, Policy, Shift, get_active_policy, record_audit_log, upsert_policy
from policy import GLOBAL_DEFAULTS, _normalize_policy, canonical_shift_type, build_default_policy
from roles import is_known_role, normalize_role

logger = logging.getLogger(__name__)

EXPORT_DIR = DATA_DIR / "exports"


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def _target_dir(directory: Optional[Path]) -> Path:
    target = Path(directory) if directory is not None else EXPORT_DIR
    target.mkdir(parents=True, exist_ok=True)
    return target


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Staff & shifts import/export


def export_staff(session, directory: Optional[Path] = None) -> Path:
    employees = session.scalars(select(Employee).order_by(Employee.full_name.asc())).all()
    payload: List[Dict[str, Any]] = []
    for employee in employees:
        payload.append(
            {
                "employee_code": employee.employee_code,
                "full_name": employee.full_name,
                "role": employee.role,
                "status": employee.status,
                "unit": employee.unit,
                "max_shifts_per_month": employee.max_shifts_per_month,
                "max_consecutive_days": employee.max_consecutive_days,
                "shifts": [
                    {
                        "date": shift.date.isoformat(),
                        "location": shift.location,
                        "shift_type": shift.shift_type,
                        "start_time": shift.start_time.isoformat(timespec="minutes"),
                        "end_time": shift.end_time.isoformat(timespec="minutes"),
                        "status": shift.status,
                    }
                    for shift in sorted(employee.shifts, key=lambda row: (row.date, row.start_time))
                ],
            }
        )
    filename = _target_dir(directory) / f"staff_{_timestamp()}.json"
    filename.write_text(
        json.dumps(
            {"generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(), "employees": payload},
            indent=2,
        ),
        encoding="utf-8",
    )
    logger.info("Exported %d employees to %s", len(payload), filename)
    return filename


def _find_employee(session, payload: Dict[str, Any]) -> Optional[Employee]:
    code = payload.get("employee_code")
    if code:
        found = session.scalars(select(Employee).where(Employee.employee_code == code)).first()
        if found:
            return found
    return session.scalars(select(Employee).where(Employee.full_name == payload["full_name"])).first()


def _import_shifts(session, employee: Employee, entries: List[Any]) -> int:
    session.execute(delete(Shift).where(Shift.employee_id == employee.id))
    policy = build_default_policy()
    seen = set()
    count = 0
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            day = datetime.date.fromisoformat(entry["date"])
            start_time = datetime.time.fromisoformat(entry["start_time"])
            end_time = datetime.time.fromisoformat(entry["end_time"])
            location = str(entry["location"]).strip()
        except (KeyError, TypeError, ValueError):
            continue
        shift_type = canonical_shift_type(policy, str(entry.get("shift_type", "")))
        if not location or shift_type is None or (day, shift_type) in seen:
            continue
        seen.add((day, shift_type))
        session.add(
            Shift(
                employee_id=employee.id,
                date=day,
                location=location,
                shift_type=shift_type,
                start_time=start_time,
                end_time=end_time,
                status=str(entry.get("status") or "scheduled"),
            )
        )
        count += 1
    return count


def import_staff(session, file_path: Path, *, replace_existing: bool = True) -> Tuple[int, int]:
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Staff file must be a JSON object.")
    employees = data.get("employees")
    if not isinstance(employees, list):
        raise ValueError("Staff file must include an 'employees' list.")
    if replace_existing:
        session.execute(delete(Shift))
        session.execute(delete(Employee))
    created = 0
    updated = 0
    shifts = 0
    for payload in employees:
        if not isinstance(payload, dict) or not payload.get("full_name"):
            continue
        if not is_known_role(payload.get("role")):
            logger.warning("Skipping %s: unknown role %r", payload.get("full_name"), payload.get("role"))
            continue
        employee = _find_employee(session, payload)
        if not employee:
            employee = Employee(full_name=payload["full_name"])
            session.add(employee)
            created += 1
        else:
            updated += 1
        employee.employee_code = payload.get("employee_code") or employee.employee_code
        employee.role = normalize_role(payload["role"])
        status = payload.get("status")
        employee.status = status if isinstance(status, str) and status else (employee.status or "active")
        employee.unit = payload.get("unit") or None
        employee.max_shifts_per_month = max(
            0, _to_int(payload.get("max_shifts_per_month"), GLOBAL_DEFAULTS["max_shifts_per_month"])
        )
        employee.max_consecutive_days = max(
            1, _to_int(payload.get("max_consecutive_days"), GLOBAL_DEFAULTS["max_consecutive_days"])
        )
        session.flush()
        if isinstance(payload.get("shifts"), list):
            shifts += _import_shifts(session, employee, payload["shifts"])
    record_audit_log(
        session,
        "import",
        "staff_import",
        target_type="Employee",
        payload={"created": created, "updated": updated, "shifts": shifts},
    )
    session.commit()
    logger.info("Imported staff: %d created, %d updated, %d shifts", created, updated, shifts)
    return created, updated


# ---------------------------------------------------------------------------
# Policy import/export


def export_policy_dataset(session, directory: Optional[Path] = None) -> Path:
    policy = get_active_policy(session)
    if not policy:
        raise ValueError("No active policy found to export.")
    payload = {
        "name": policy.name,
        "params": json.loads(policy.params_json or "{}"),
    }
    filename = _target_dir(directory) / f"policy_{_timestamp()}.json"
    filename.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return filename


def import_policy_dataset(session, file_path: Path) -> Policy:
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Policy file must be a JSON object.")
    params = data.get("params") if isinstance(data.get("params"), dict) else None
    if params is None:
        params = {k: v for k, v in data.items() if k != "name"}
    name = data.get("name") or params.get("name") or "Imported Policy"
    record = upsert_policy(session, name, _normalize_policy(params))
    session.commit()
    return record
