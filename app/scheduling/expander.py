from __future__ import annotations

import datetime
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from policy import (
    canonical_shift_type,
    default_location_pattern,
    headcount_ratio,
    location_required_units,
    shift_type_order,
    shift_window,
)
from roles import normalize_role

from .calendar_utils import date_range, days_in_month, is_weekend, month_dates, week_dates
from .errors import InvalidDemandError
from .models import BulkScheduleRequest, ShiftDemand

logger = logging.getLogger(__name__)

PERIODS = ("day", "week", "month")

# Parsed pattern cell: role (None for any role) -> weekday headcount.
Cell = Dict[Optional[str], int]


def _headcount(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise InvalidDemandError(f"Headcount for {where} must be an integer, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidDemandError(f"Headcount for {where} must be an integer, got {value!r}")
        value = int(value)
    if not isinstance(value, int):
        raise InvalidDemandError(f"Headcount for {where} must be an integer, got {value!r}")
    if value < 0:
        raise InvalidDemandError(f"Headcount for {where} cannot be negative ({value})")
    return value


def _parse_cell(value: Any, where: str) -> Cell:
    if isinstance(value, dict):
        cell: Cell = {}
        for role, count in value.items():
            label = normalize_role(str(role))
            if not label:
                raise InvalidDemandError(f"Empty role name in role split for {where}")
            cell[label] = cell.get(label, 0) + _headcount(count, f"{where}/{label}")
        return cell
    return {None: _headcount(value, where)}


def resolve_period(request: BulkScheduleRequest) -> List[datetime.date]:
    period = (request.period or "").strip().lower()
    if period not in PERIODS:
        raise InvalidDemandError(f"Unknown period {request.period!r}; expected one of {', '.join(PERIODS)}")
    if period == "month":
        if request.year is not None or request.month is not None:
            if request.year is None or request.month is None:
                raise InvalidDemandError("Monthly requests need both year and month")
            if not 1 <= int(request.month) <= 12 or int(request.year) < 1:
                raise InvalidDemandError(f"Invalid month {request.year}-{request.month}")
            return month_dates(int(request.year), int(request.month))
        if request.start_date is None:
            raise InvalidDemandError("Monthly requests need a start date or year and month")
        start = request.start_date
        return date_range(start, datetime.date(start.year, start.month, days_in_month(start.year, start.month)))
    if request.start_date is None:
        raise InvalidDemandError(f"A {period} request needs a start date")
    if period == "week":
        return week_dates(request.start_date)
    return [request.start_date]


def _requested_locations(request: BulkScheduleRequest) -> List[str]:
    locations: List[str] = []
    for raw in request.locations or ():
        name = str(raw or "").strip()
        if not name:
            raise InvalidDemandError("Location names cannot be blank")
        if name not in locations:
            locations.append(name)
    if not locations:
        raise InvalidDemandError("At least one location is required")
    return locations


def resolve_patterns(request: BulkScheduleRequest, policy: Dict[str, Any]) -> Dict[str, Dict[str, Cell]]:
    """Validate the pattern map against the requested locations and the policy's shift types."""
    locations = _requested_locations(request)
    raw_patterns = request.shift_pattern or {}
    if not isinstance(raw_patterns, dict):
        raise InvalidDemandError("shift_pattern must map locations to shift type headcounts")
    strays = sorted(str(name).strip() for name in raw_patterns if str(name).strip() not in locations)
    if strays:
        raise InvalidDemandError(
            f"shift_pattern lists locations that were not requested: {', '.join(strays)}"
        )
    patterns = {str(name).strip(): value for name, value in raw_patterns.items()}

    resolved: Dict[str, Dict[str, Cell]] = {}
    for location in locations:
        pattern = patterns.get(location)
        if pattern is None:
            pattern = default_location_pattern(policy, location)
            if pattern is None:
                raise InvalidDemandError(f"No shift pattern given for {location} and the policy has no default")
        if not isinstance(pattern, dict):
            raise InvalidDemandError(f"Pattern for {location} must map shift types to headcounts")
        cells: Dict[str, Cell] = {}
        for shift_name, value in pattern.items():
            shift_type = canonical_shift_type(policy, str(shift_name))
            if shift_type is None:
                raise InvalidDemandError(f"Unknown shift type {shift_name!r} for {location}")
            parsed = _parse_cell(value, f"{location}/{shift_type}")
            merged = cells.setdefault(shift_type, {})
            for role, count in parsed.items():
                merged[role] = merged.get(role, 0) + count
        resolved[location] = cells
    return resolved


def scaled_headcount(weekday_count: int, ratio: float) -> int:
    # round() first so 10 * 0.7 does not ceil to 8
    return int(math.ceil(round(weekday_count * ratio, 6)))


def expand_demands(
    request: BulkScheduleRequest,
    policy: Dict[str, Any],
    today: Optional[datetime.date] = None,
) -> Tuple[ShiftDemand, ...]:
    """Turn a bulk request into the ordered per-day demand list.

    Every validation runs before any demand is produced, so an invalid
    request never yields a partial list.
    """
    dates = resolve_period(request)
    patterns = resolve_patterns(request, policy)
    today = today or datetime.date.today()
    order = shift_type_order(policy)

    demands: List[ShiftDemand] = []
    skipped = 0
    for day in dates:
        if day < today:
            skipped += 1
            continue
        weekend = is_weekend(day)
        for location, cells in patterns.items():
            units = location_required_units(policy, location)
            for shift_type, cell in cells.items():
                window = shift_window(policy, shift_type)
                if window is None:
                    raise InvalidDemandError(f"Shift type {shift_type} has no usable time window")
                ratio = headcount_ratio(policy, shift_type, weekend=weekend)
                for role, weekday_count in cell.items():
                    required = scaled_headcount(weekday_count, ratio)
                    if required <= 0:
                        continue
                    demands.append(
                        ShiftDemand(
                            date=day,
                            location=location,
                            shift_type=shift_type,
                            start_time=window[0],
                            end_time=window[1],
                            required=required,
                            priority=request.priority,
                            preferred_roles=(role,) if role else (),
                            required_skills=units,
                        )
                    )
    if skipped:
        logger.debug("Skipped %d elapsed dates before %s", skipped, today.isoformat())
    demands.sort(
        key=lambda demand: (
            demand.date,
            demand.location,
            order.get(demand.shift_type, (0, demand.shift_type)),
            demand.preferred_roles,
        )
    )
    return tuple(demands)


def total_units(demands: Tuple[ShiftDemand, ...]) -> int:
    return sum(demand.required for demand in demands)
