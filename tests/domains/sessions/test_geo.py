"""Unit tests for great-circle distance and travel velocity."""

from datetime import timedelta

import pytest

from riskengine.domains.sessions.geo import evaluate, haversine
from riskengine.domains.sessions.models import GeoSample, NotEvaluable, VelocityResult
from tests.conftest import NOW

NYC = (40.7128, -74.0060)
LONDON = (51.5074, -0.1278)


def _sample(coords, offset_seconds: float = 0) -> GeoSample:
    return GeoSample(
        latitude=coords[0],
        longitude=coords[1],
        timestamp=NOW + timedelta(seconds=offset_seconds),
    )


class TestHaversine:
    def test_same_point(self):
        assert haversine(0, 0, 0, 0) == 0

    def test_known_distance(self):
        # NYC to London ~5570 km
        d = haversine(*NYC, *LONDON)
        assert 5550 < d < 5590

    def test_antipodal(self):
        d = haversine(0, 0, 0, 180)
        assert 20000 < d < 20100  # ~half circumference


class TestEvaluate:
    def test_nyc_to_london_in_thirty_minutes(self):
        result = evaluate(_sample(NYC), _sample(LONDON, 1800))
        assert isinstance(result, VelocityResult)
        assert result.hours_elapsed == pytest.approx(0.5)
        assert result.distance_km == pytest.approx(5570, abs=20)
        assert result.required_speed_kmh == pytest.approx(11140, abs=40)

    def test_symmetric_when_direction_reversed(self):
        forward = evaluate(_sample(NYC), _sample(LONDON, 1800))
        backward = evaluate(_sample(LONDON), _sample(NYC, 1800))
        assert forward.distance_km == pytest.approx(backward.distance_km)
        assert forward.required_speed_kmh == pytest.approx(backward.required_speed_kmh)

    def test_same_location_has_zero_speed(self):
        result = evaluate(_sample(NYC), _sample(NYC, 60))
        assert result.distance_km == 0
        assert result.required_speed_kmh == 0

    @pytest.mark.parametrize("offset", [0, -1, -3600])
    def test_non_positive_elapsed_time_is_not_evaluable(self, offset):
        result = evaluate(_sample(NYC), _sample(LONDON, offset))
        assert isinstance(result, NotEvaluable)
        assert result.reason == "non_positive_elapsed_time"

    def test_missing_previous_coordinates(self):
        prev = GeoSample(latitude=None, longitude=None, timestamp=NOW)
        result = evaluate(prev, _sample(LONDON, 1800))
        assert isinstance(result, NotEvaluable)
        assert result.reason == "previous_location_unavailable"

    def test_nan_current_coordinates(self):
        curr = GeoSample(latitude=float("nan"), longitude=0.0, timestamp=NOW + timedelta(hours=1))
        result = evaluate(_sample(NYC), curr)
        assert isinstance(result, NotEvaluable)
        assert result.reason == "current_location_unavailable"

    def test_out_of_range_latitude(self):
        curr = GeoSample(latitude=95.0, longitude=0.0, timestamp=NOW + timedelta(hours=1))
        assert isinstance(evaluate(_sample(NYC), curr), NotEvaluable)
