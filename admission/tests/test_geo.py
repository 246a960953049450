"""
Distance and travel-time tests.

Run with: pytest admission/tests/test_geo.py -v
"""

from datetime import datetime

import pytest

from admission.geo import haversine_km, haversine_km_many, traffic_multiplier, travel_time_minutes
from admission.models import GeoPoint

KINGSTON_PUBLIC = GeoPoint(17.9714, -76.7931)
SPANISH_TOWN = GeoPoint(17.9909, -76.9574)
MANDEVILLE = GeoPoint(18.0420, -77.5028)
PORT_ANTONIO = GeoPoint(18.1708, -76.4481)


class TestHaversine:

    def test_identity(self):
        assert haversine_km(KINGSTON_PUBLIC, KINGSTON_PUBLIC) == pytest.approx(0.0, abs=1e-9)

    def test_symmetry(self):
        assert haversine_km(KINGSTON_PUBLIC, MANDEVILLE) == pytest.approx(
            haversine_km(MANDEVILLE, KINGSTON_PUBLIC)
        )

    @pytest.mark.parametrize("a,b,c", [
        (KINGSTON_PUBLIC, SPANISH_TOWN, MANDEVILLE),
        (MANDEVILLE, KINGSTON_PUBLIC, PORT_ANTONIO),
        (SPANISH_TOWN, PORT_ANTONIO, MANDEVILLE),
    ])
    def test_triangle_inequality(self, a, b, c):
        assert haversine_km(a, c) <= haversine_km(a, b) + haversine_km(b, c) + 1e-6

    def test_known_distance(self):
        """Kingston to Mandeville is roughly 75 km as the crow flies."""
        assert haversine_km(KINGSTON_PUBLIC, MANDEVILLE) == pytest.approx(75.5, abs=1.5)

    def test_vectorised_matches_scalar(self):
        targets = [SPANISH_TOWN, MANDEVILLE, PORT_ANTONIO]
        distances = haversine_km_many(
            KINGSTON_PUBLIC,
            [t.latitude for t in targets],
            [t.longitude for t in targets],
        )
        assert len(distances) == 3
        for target, distance in zip(targets, distances):
            assert float(distance) == pytest.approx(haversine_km(KINGSTON_PUBLIC, target))


class TestTravelTime:

    @pytest.mark.parametrize("when,expected", [
        (datetime(2024, 6, 15, 8, 0), 0.9),    # Saturday
        (datetime(2024, 6, 12, 8, 0), 1.4),    # Wednesday morning rush
        (datetime(2024, 6, 12, 18, 30), 1.4),  # evening rush
        (datetime(2024, 6, 12, 23, 0), 0.8),   # night
        (datetime(2024, 6, 12, 3, 0), 0.8),
        (datetime(2024, 6, 12, 12, 0), 1.1),   # daytime
    ])
    def test_traffic_multiplier(self, when, expected):
        assert traffic_multiplier(when) == expected

    def test_travel_time_scales_with_speed_and_traffic(self):
        noon = datetime(2024, 6, 12, 12, 0)
        assert travel_time_minutes(45.0, 45.0, noon) == pytest.approx(66.0)
        assert travel_time_minutes(45.0, 25.0, noon) > travel_time_minutes(45.0, 45.0, noon)

    def test_zero_distance_is_zero_minutes(self):
        assert travel_time_minutes(0.0, 30.0, datetime(2024, 6, 12, 8, 0)) == 0.0

    def test_rejects_non_positive_speed(self):
        with pytest.raises(ValueError):
            travel_time_minutes(10.0, 0.0, datetime(2024, 6, 12, 12, 0))
