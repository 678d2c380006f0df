"""
Tests for road smoothing parameters and advisory validation.
"""

import pytest
import numpy as np


class TestRoadSmoothingParameters:
    """Tests for RoadSmoothingParameters."""

    def test_defaults_are_valid(self):
        from src.roadterrain.parameters import RoadSmoothingParameters

        assert RoadSmoothingParameters().validate() == []

    def test_derived_widths(self):
        from src.roadterrain.parameters import RoadSmoothingParameters

        params = RoadSmoothingParameters(road_width_meters=10.0, terrain_affected_range_meters=12.0)

        assert params.half_width_meters == 5.0
        assert params.impact_radius_meters == 17.0

    def test_out_of_range_values_are_reported(self):
        from src.roadterrain.parameters import RoadSmoothingParameters

        params = RoadSmoothingParameters(
            approach="teleport",
            road_width_meters=0.0,
            global_leveling_strength=1.5,
            blend_function_type="sigmoid",
        )
        errors = params.validate()

        assert any("approach" in e for e in errors)
        assert any("RoadWidthMeters" in e for e in errors)
        assert any("GlobalLevelingStrength" in e for e in errors)
        assert any("sigmoid" in e for e in errors)

    def test_nested_errors_are_collected(self):
        """Errors from the nested bundles bubble up."""
        from src.roadterrain.parameters import (
            PostProcessingParameters,
            RoadSmoothingParameters,
            SplineParameters,
        )

        params = RoadSmoothingParameters(
            spline=SplineParameters(tension=2.0),
            post_processing=PostProcessingParameters(smoothing_type="wavelet"),
        )
        errors = params.validate()

        assert any("tension" in e for e in errors)
        assert any("wavelet" in e for e in errors)

    def test_dict_round_trip(self):
        from src.roadterrain.parameters import RoadSmoothingParameters, SplineParameters

        params = RoadSmoothingParameters(
            approach="direct_mask",
            road_width_meters=6.0,
            spline=SplineParameters(interpolation="akima"),
        )
        restored = RoadSmoothingParameters.from_dict(params.to_dict())

        assert restored == params
        assert isinstance(restored.spline, SplineParameters)

    def test_exclusion_layers_serialize_paths_only(self, tmp_path):
        from src.roadterrain.parameters import RoadSmoothingParameters

        params = RoadSmoothingParameters(exclusion_layers=[tmp_path / "water.png", np.zeros((4, 4))])

        data = params.to_dict()

        assert data["exclusion_layers"] == [str(tmp_path / "water.png")]
        assert RoadSmoothingParameters.from_dict(data).exclusion_layers == [str(tmp_path / "water.png")]

    def test_from_dict_ignores_unknown_keys(self):
        from src.roadterrain.parameters import RoadSmoothingParameters

        params = RoadSmoothingParameters.from_dict(
            {"road_width_meters": 5.0, "legacy_option": True, "junctions": {"junction_detection_radius_meters": 9.0, "x": 1}}
        )

        assert params.road_width_meters == 5.0
        assert params.junctions.junction_detection_radius_meters == 9.0


class TestNestedParameters:
    """Tests for the smaller parameter bundles."""

    def test_junction_parameters_validate(self):
        from src.roadterrain.parameters import JunctionHarmonizationParameters

        assert JunctionHarmonizationParameters().validate() == []
        errors = JunctionHarmonizationParameters(
            junction_detection_radius_meters=0.0, endpoint_terrain_blend_strength=1.5
        ).validate()
        assert len(errors) == 2

    def test_spline_parameters_validate(self):
        from src.roadterrain.parameters import SplineParameters

        assert SplineParameters().validate() == []
        errors = SplineParameters(interpolation="bezier", skeleton_dilation_radius=9).validate()
        assert len(errors) == 2

    def test_direct_mask_parameters_validate(self):
        from src.roadterrain.parameters import DirectMaskParameters

        assert DirectMaskParameters().validate() == []
        assert DirectMaskParameters(max_sample_radius_pixels=0).validate()


class TestValidationWarnings:
    """Tests for get_validation_warnings."""

    def _titles(self, params):
        from src.roadterrain.validation import get_validation_warnings

        return {w.title: w for w in get_validation_warnings(params)}

    def test_defaults_produce_no_warnings(self):
        from src.roadterrain.parameters import RoadSmoothingParameters

        assert self._titles(RoadSmoothingParameters()) == {}

    def test_disconnected_road_risk(self):
        """Strong leveling with a narrow blend zone is flagged as an error."""
        from src.roadterrain.parameters import RoadSmoothingParameters

        params = RoadSmoothingParameters(global_leveling_strength=0.8, terrain_affected_range_meters=5.0)
        warnings = self._titles(params)

        assert "Disconnected Road Risk" in warnings
        assert warnings["Disconnected Road Risk"].severity == "error"
        assert "15" in warnings["Disconnected Road Risk"].recommendation

    def test_moderate_leveling_narrow_range(self):
        from src.roadterrain.parameters import RoadSmoothingParameters

        params = RoadSmoothingParameters(global_leveling_strength=0.4, terrain_affected_range_meters=10.0)
        warnings = self._titles(params)

        assert "Blend Zone May Be Too Narrow" in warnings
        assert "Disconnected Road Risk" not in warnings

    def test_large_interval_warning(self):
        from src.roadterrain.parameters import RoadSmoothingParameters
        from src.roadterrain.validation import recommended_max_interval

        params = RoadSmoothingParameters(cross_section_interval_meters=10.0)
        warnings = self._titles(params)

        assert recommended_max_interval(params) == pytest.approx(params.impact_radius_meters / 3.0)
        assert "Cross-Section Spacing May Cause Gaps" in warnings

    def test_even_sizes(self):
        from src.roadterrain.parameters import PostProcessingParameters, RoadSmoothingParameters

        params = RoadSmoothingParameters(
            smoothing_window_size=100, post_processing=PostProcessingParameters(kernel_size=6)
        )
        warnings = self._titles(params)

        assert "Window Size Should Be Odd" in warnings
        assert "Kernel Size Must Be Odd" in warnings

    def test_informational_warnings(self):
        from src.roadterrain.parameters import RoadSmoothingParameters

        params = RoadSmoothingParameters(
            road_width_meters=2.0,
            road_max_slope_degrees=15.0,
            use_butterworth_filter=False,
            smoothing_window_size=201,
        )
        warnings = self._titles(params)

        assert warnings["Narrow Road"].severity == "info"
        assert "Steep Road Grade" in warnings
        assert "Consider Butterworth Filter" in warnings

    def test_str_contains_severity_and_title(self):
        from src.roadterrain.validation import ValidationWarning

        warning = ValidationWarning("warning", "Title", "Message.", "Do this.")
        assert str(warning).startswith("[warning] Title")
