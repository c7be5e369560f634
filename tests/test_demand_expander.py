from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from policy import _normalize_policy, build_default_policy  # noqa: E402
from scheduling.errors import InvalidDemandError  # noqa: E402
from scheduling.expander import expand_demands, scaled_headcount  # noqa: E402
from scheduling.models import BulkScheduleRequest  # noqa: E402

TODAY = datetime.date(2026, 10, 19)  # Monday


def _request(**overrides) -> BulkScheduleRequest:
    params = {
        "period": "week",
        "locations": ("RAWAT_INAP",),
        "shift_pattern": {"RAWAT_INAP": {"MORNING": 10, "AFTERNOON": 5, "NIGHT": 5}},
        "start_date": TODAY,
    }
    params.update(overrides)
    return BulkScheduleRequest(**params)


def test_weekend_and_night_ratios_round_up() -> None:
    demands = expand_demands(_request(), build_default_policy(), TODAY)
    by_key = {(d.date.weekday(), d.shift_type): d.required for d in demands}

    assert by_key[(0, "MORNING")] == 10
    assert by_key[(0, "AFTERNOON")] == 5
    assert by_key[(0, "NIGHT")] == 3
    assert by_key[(5, "MORNING")] == 7
    assert by_key[(5, "AFTERNOON")] == 4
    assert by_key[(6, "NIGHT")] == 3


def test_scaled_headcount_avoids_float_drift() -> None:
    assert scaled_headcount(10, 0.7) == 7
    assert scaled_headcount(3, 0.7) == 3
    assert scaled_headcount(1, 0.6) == 1
    assert scaled_headcount(0, 0.6) == 0


def test_past_dates_are_never_emitted() -> None:
    request = _request(period="month", start_date=None, year=2026, month=10)
    demands = expand_demands(request, build_default_policy(), TODAY)

    assert demands
    assert min(d.date for d in demands) == TODAY
    assert all(d.date >= TODAY for d in demands)


def test_pattern_location_outside_request_is_rejected() -> None:
    request = _request(
        locations=("ICU",),
        shift_pattern={"ICU": {"MORNING": 2}, "NICU": {"MORNING": 1}},
    )

    with pytest.raises(InvalidDemandError) as excinfo:
        expand_demands(request, build_default_policy(), TODAY)
    assert "NICU" in str(excinfo.value)
    assert excinfo.value.kind == "INVALID_DEMAND"


def test_only_requested_locations_are_expanded() -> None:
    request = _request(locations=("ICU",), shift_pattern={"ICU": {"MORNING": 2}})
    demands = expand_demands(request, build_default_policy(), TODAY)

    assert {d.location for d in demands} == {"ICU"}
    assert {d.shift_type for d in demands} == {"MORNING"}


def test_location_without_pattern_uses_policy_default() -> None:
    request = _request(period="day", locations=("NICU",), shift_pattern={})
    demands = expand_demands(request, build_default_policy(), TODAY)

    assert [(d.shift_type, d.required) for d in demands] == [("MORNING", 3), ("AFTERNOON", 2), ("NIGHT", 2)]


def test_unknown_location_without_pattern_is_invalid() -> None:
    request = _request(locations=("GUDANG",), shift_pattern={})

    with pytest.raises(InvalidDemandError):
        expand_demands(request, build_default_policy(), TODAY)


@pytest.mark.parametrize("headcount", [-1, 1.5, "two", True])
def test_bad_headcounts_are_invalid(headcount) -> None:
    request = _request(shift_pattern={"RAWAT_INAP": {"MORNING": headcount}})

    with pytest.raises(InvalidDemandError):
        expand_demands(request, build_default_policy(), TODAY)


def test_unknown_shift_type_and_bad_period_are_invalid() -> None:
    policy = build_default_policy()
    with pytest.raises(InvalidDemandError):
        expand_demands(_request(shift_pattern={"RAWAT_INAP": {"EVENING": 2}}), policy, TODAY)
    with pytest.raises(InvalidDemandError):
        expand_demands(_request(period="fortnight"), policy, TODAY)
    with pytest.raises(InvalidDemandError):
        expand_demands(_request(period="week", start_date=None), policy, TODAY)
    with pytest.raises(InvalidDemandError):
        expand_demands(_request(locations=()), policy, TODAY)


def test_role_split_cell_emits_one_demand_per_role() -> None:
    request = _request(
        period="day",
        locations=("ICU",),
        shift_pattern={"ICU": {"PAGI": {"perawat": 2, "DOKTER": 1}}},
    )
    demands = expand_demands(request, build_default_policy(), TODAY)

    assert [(d.preferred_roles, d.required) for d in demands] == [(("DOCTOR",), 1), (("NURSE",), 2)]
    assert all(d.shift_type == "MORNING" for d in demands)


def test_demands_are_ordered_by_date_location_and_start() -> None:
    request = _request(
        locations=("RAWAT_INAP", "ICU"),
        shift_pattern={"RAWAT_INAP": {"NIGHT": 1, "MORNING": 1}, "ICU": {"AFTERNOON": 1}},
    )
    demands = expand_demands(request, build_default_policy(), TODAY)
    keys = [(d.date, d.location, d.start_time) for d in demands]

    assert keys == sorted(keys)
    assert [d.shift_type for d in demands[:3]] == ["AFTERNOON", "MORNING", "NIGHT"]


def test_location_required_units_flow_into_demands() -> None:
    policy = _normalize_policy({"locations": {"ICU": {"required_units": ["intensive"]}}})
    request = _request(period="day", locations=("ICU",), shift_pattern={"ICU": {"MORNING": 1}})
    demands = expand_demands(request, policy, TODAY)

    assert demands[0].required_skills == ("INTENSIVE",)
