import math

import pytest

from camp_finder.distance import EARTH_RADIUS_KM, bucket_key, distance_km


def test_distance_to_self_is_zero():
    assert distance_km(51.065, 3.1, 51.065, 3.1) == 0.0


def test_distance_is_symmetric():
    forward = distance_km(51.065, 3.1, 50.85, 4.35)
    backward = distance_km(50.85, 4.35, 51.065, 3.1)
    assert forward == pytest.approx(backward)
    assert forward > 0


def test_one_degree_of_latitude():
    expected = EARTH_RADIUS_KM * math.pi / 180
    assert distance_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(expected)


def test_torhout_to_brussels_is_about_ninety_km():
    assert distance_km(51.065, 3.1, 50.8503, 4.3517) == pytest.approx(90.0, abs=3.0)


class TestBucketKey:
    def test_rounds_to_two_decimals(self):
        assert bucket_key(51.0649, 3.1012) == (51.06, 3.10)

    def test_half_rounds_up(self):
        assert bucket_key(51.065, 3.125) == (51.07, 3.13)

    def test_nearby_points_share_a_bucket(self):
        assert bucket_key(51.0651, 3.0999) == bucket_key(51.0654, 3.1004)

    def test_points_in_different_cells_differ(self):
        assert bucket_key(51.06, 3.10) != bucket_key(51.08, 3.10)
