"""
Tests for longitudinal elevation smoothing.
"""

import logging

import pytest
import numpy as np


class TestWindowSize:
    """Tests for normalize_window_size."""

    @pytest.mark.parametrize("size", [1, 3, 51, 101])
    def test_odd_sizes_unchanged(self, size):
        from src.roadterrain.profile import normalize_window_size

        assert normalize_window_size(size) == size

    def test_even_size_is_incremented_with_warning(self, caplog):
        from src.roadterrain.profile import normalize_window_size

        with caplog.at_level(logging.WARNING, logger="src.roadterrain.profile"):
            assert normalize_window_size(100) == 101

        assert "even" in caplog.text

    def test_non_positive_size(self):
        from src.roadterrain.profile import normalize_window_size

        assert normalize_window_size(0) == 1


class TestSampleElevations:
    """Tests for bilinear sampling."""

    def test_bilinear_between_pixels(self):
        from src.roadterrain.profile import sample_elevations

        heightmap = np.array([[0.0, 10.0], [20.0, 30.0]])
        values = sample_elevations(heightmap, np.array([[0.5, 0.0], [0.0, 0.5], [0.5, 0.5]]))

        np.testing.assert_allclose(values, [5.0, 10.0, 15.0])

    def test_outside_takes_edge(self, sloped_heightmap):
        from src.roadterrain.profile import sample_elevations

        value = sample_elevations(sloped_heightmap, np.array([[-10.0, 0.0]]))

        assert value[0] == pytest.approx(sloped_heightmap[0, 0])

    def test_empty(self, sloped_heightmap):
        from src.roadterrain.profile import sample_elevations

        assert len(sample_elevations(sloped_heightmap, np.zeros((0, 2)))) == 0


class TestFilters:
    """Tests for box and Butterworth filters."""

    def test_box_filter_preserves_constant(self):
        from src.roadterrain.profile import box_filter

        np.testing.assert_allclose(box_filter(np.full(30, 7.0), 9), 7.0)

    def test_box_filter_preserves_linear_interior(self):
        from src.roadterrain.profile import box_filter

        ramp = np.arange(40, dtype=float)
        smoothed = box_filter(ramp, 5)

        np.testing.assert_allclose(smoothed[2:-2], ramp[2:-2])

    def test_box_filter_shrinks_window_at_ends(self):
        from src.roadterrain.profile import box_filter

        smoothed = box_filter(np.array([0.0, 3.0, 6.0, 9.0]), 3)

        assert smoothed[0] == pytest.approx(1.5)
        assert smoothed[-1] == pytest.approx(7.5)

    def test_box_filter_reduces_noise(self):
        from src.roadterrain.profile import box_filter

        np.random.seed(0)
        noisy = 100.0 + np.random.randn(200)

        assert np.std(box_filter(noisy, 21)) < 0.5 * np.std(noisy)

    def test_butterworth_preserves_constant(self):
        from src.roadterrain.profile import butterworth_filter

        np.testing.assert_allclose(butterworth_filter(np.full(200, 55.0), 21, 3), 55.0, atol=1e-6)

    def test_butterworth_has_no_phase_lag(self):
        """Zero-phase filtering keeps a slow ramp in place."""
        from src.roadterrain.profile import butterworth_filter

        ramp = np.linspace(0.0, 50.0, 300)
        smoothed = butterworth_filter(ramp, 21, 3)

        np.testing.assert_allclose(smoothed[60:-60], ramp[60:-60], atol=0.05)

    def test_butterworth_removes_high_frequency(self):
        from src.roadterrain.profile import butterworth_filter

        x = np.arange(400)
        wiggle = np.sin(x * np.pi / 2.0)
        smoothed = butterworth_filter(100.0 + wiggle, 41, 4)

        assert np.max(np.abs(smoothed[100:-100] - 100.0)) < 0.05

    def test_butterworth_short_profile_falls_back(self, caplog):
        from src.roadterrain.profile import box_filter, butterworth_filter

        values = np.array([1.0, 5.0, 2.0, 8.0, 3.0])
        with caplog.at_level(logging.WARNING, logger="src.roadterrain.profile"):
            smoothed = butterworth_filter(values, 3, 3)

        np.testing.assert_allclose(smoothed, box_filter(values, 3))
        assert "too short" in caplog.text


class TestLevelingAndSlope:
    """Tests for global leveling and slope constraints."""

    def test_leveling_blends_toward_target(self):
        from src.roadterrain.profile import apply_global_leveling

        values = np.array([0.0, 10.0, 20.0])

        np.testing.assert_allclose(apply_global_leveling(values, 10.0, 0.5), [5.0, 10.0, 15.0])
        np.testing.assert_allclose(apply_global_leveling(values, 10.0, 1.0), 10.0)
        np.testing.assert_allclose(apply_global_leveling(values, 10.0, 0.0), values)

    def test_network_average(self):
        from src.roadterrain.profile import network_average

        assert network_average([np.array([0.0, 10.0]), np.array([20.0]), np.array([])]) == pytest.approx(10.0)
        assert network_average([]) == 0.0

    def test_constrain_slope(self):
        from src.roadterrain.profile import constrain_slope

        values = np.array([0.0, 0.0, 10.0, 0.0, 0.0])
        constrained = constrain_slope(values, spacing=1.0, max_slope_degrees=45.0)

        assert np.all(np.abs(np.diff(constrained)) <= 1.0 + 1e-6)
        assert constrained[0] == 0.0

    def test_constrain_slope_leaves_gentle_profile(self):
        from src.roadterrain.profile import constrain_slope

        values = np.linspace(0.0, 1.0, 20)

        np.testing.assert_allclose(constrain_slope(values, 2.0, 10.0), values)


class TestSmoothNetworkProfiles:
    """Tests for smooth_network_profiles."""

    def test_box_filter_selected(self):
        from src.roadterrain.parameters import RoadSmoothingParameters
        from src.roadterrain.profile import box_filter, smooth_network_profiles

        np.random.seed(1)
        profile = 100.0 + np.random.randn(60)
        params = RoadSmoothingParameters(use_butterworth_filter=False, smoothing_window_size=11)

        (smoothed,) = smooth_network_profiles([profile], params, 2.0)

        np.testing.assert_allclose(smoothed, box_filter(profile, 11))

    def test_full_leveling_flattens_network(self):
        from src.roadterrain.parameters import RoadSmoothingParameters
        from src.roadterrain.profile import smooth_network_profiles

        profiles = [np.full(50, 100.0), np.full(30, 120.0)]
        params = RoadSmoothingParameters(global_leveling_strength=1.0, smoothing_window_size=5)

        smoothed = smooth_network_profiles(profiles, params, 2.0)

        expected = (50 * 100.0 + 30 * 120.0) / 80
        for profile in smoothed:
            np.testing.assert_allclose(profile, expected, atol=1e-6)

    def test_slope_limit_applied(self):
        from src.roadterrain.parameters import RoadSmoothingParameters
        from src.roadterrain.profile import smooth_network_profiles

        profile = np.linspace(0.0, 100.0, 50)
        params = RoadSmoothingParameters(
            use_butterworth_filter=False,
            smoothing_window_size=1,
            enable_max_slope_constraint=True,
            road_max_slope_degrees=5.0,
        )

        (smoothed,) = smooth_network_profiles([profile], params, 2.0)

        max_rise = np.tan(np.radians(5.0)) * 2.0
        assert np.all(np.abs(np.diff(smoothed)) <= max_rise + 1e-6)

    def test_constrain_slope_flattens_hill_crossing(self, peaked_heightmap):
        from src.roadterrain.profile import constrain_slope

        profile = peaked_heightmap[64]
        constrained = constrain_slope(profile, spacing=1.0, max_slope_degrees=5.0)
        max_rise = np.tan(np.radians(5.0))

        assert np.all(np.abs(np.diff(constrained)) <= max_rise + 1e-6)
        assert constrained.max() < profile.max() - 20.0
        assert constrained[0] == pytest.approx(profile[0])
