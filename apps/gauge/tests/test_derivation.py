import math
from datetime import datetime, timedelta, timezone

import pytest

from services.derivation import (
    discharge_trend,
    flood_risk,
    is_hazardous,
    is_usable,
    project_levels,
    status,
    trend,
)
from services.sites import FloodThresholds

THRESHOLDS = FloodThresholds(minor=4.0, moderate=6.0, major=8.0)
NOW = datetime(2025, 2, 3, 6, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "value, expected",
    [
        (0.0, "normal"),
        (3.99, "normal"),
        (4.0, "watch"),
        (5.99, "watch"),
        (6.0, "warning"),
        (8.0, "danger"),
        (12.5, "danger"),
    ],
)
def test_status_boundaries(value, expected):
    assert status(value, THRESHOLDS) == expected


def test_status_is_monotonic_in_level():
    order = {"normal": 0, "watch": 1, "warning": 2, "danger": 3}
    previous = -1
    for step in range(0, 120):
        current = order[status(step / 10, THRESHOLDS)]
        assert current >= previous
        previous = current


def test_status_without_thresholds_or_value_is_normal():
    assert status(20.0, None) == "normal"
    assert status(float("nan"), THRESHOLDS) == "normal"


def test_hazard_flags():
    assert not is_hazardous("normal")
    assert is_hazardous("watch")
    assert is_hazardous("danger")


def test_trend_rising_with_rounded_rate():
    direction, rate = trend(5.0, 4.5, 2.0)
    assert direction == "rising"
    assert rate == 0.25


def test_trend_falling():
    direction, rate = trend(3.0, 3.4, 1.0)
    assert direction == "falling"
    assert rate == -0.4


def test_trend_inside_deadband_is_stable_with_zero_rate():
    assert trend(2.005, 2.0, 1.0) == ("stable", 0.0)


def test_trend_with_zero_deadband_and_equal_values_is_stable():
    assert trend(2.0, 2.0, 1.0, deadband=0.0) == ("stable", 0.0)


@pytest.mark.parametrize("hours", [0.0, -1.0, math.inf, math.nan])
def test_trend_with_unusable_interval_is_stable(hours):
    assert trend(5.0, 1.0, hours) == ("stable", 0.0)


def test_trend_is_antisymmetric():
    up = trend(5.0, 4.0, 1.0)
    down = trend(4.0, 5.0, 1.0)
    assert up[0] == "rising" and down[0] == "falling"
    assert up[1] == -down[1]


def test_is_usable_window():
    max_age = timedelta(hours=48)
    assert is_usable(NOW - timedelta(hours=1), NOW, max_age)
    assert not is_usable(NOW - timedelta(hours=49), NOW, max_age)
    assert not is_usable(NOW + timedelta(minutes=5), NOW, max_age)
    assert not is_usable(None, NOW, max_age)


def test_project_levels_never_below_zero():
    projections = project_levels(0.5, -0.5)
    assert [projection.hours_ahead for projection in projections] == [2, 4, 6]
    assert all(projection.level == 0.0 for projection in projections)
    assert projections[0].as_payload()["time"] == "+2h"


def test_project_levels_confidence_decreases():
    confidences = [projection.confidence for projection in project_levels(3.0, 0.1)]
    assert confidences == sorted(confidences, reverse=True)


@pytest.mark.parametrize(
    "current, peak, expected",
    [(50.0, 80.0, "low"), (50.0, 150.0, "moderate"), (600.0, 20.0, "high"), (900.0, 1500.0, "extreme")],
)
def test_flood_risk(current, peak, expected):
    assert flood_risk(current, peak) == expected


def test_discharge_trend_ten_percent_rule():
    assert discharge_trend([100.0, 111.0]) == "rising"
    assert discharge_trend([100.0, 105.0]) == "stable"
    assert discharge_trend([100.0, 85.0]) == "falling"
    assert discharge_trend([100.0]) == "stable"
