"""
Configuration bundles for road smoothing.

Provides:
- JunctionHarmonizationParameters: junction detection and blending settings
- PostProcessingParameters: final smoothing pass over the road corridor
- SplineParameters: skeleton extraction, path ordering and curve fitting
- DirectMaskParameters: settings for the mask-only approach
- RoadSmoothingParameters: per-material bundle combining all of the above

Every bundle exposes validate(), which returns a list of human-readable error
strings instead of raising. Risky-but-legal combinations are reported
separately by src.roadterrain.validation.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Literal

from src.config import DEFAULT_LAYER_THRESHOLD
from src.roadterrain.blending import BLEND_FUNCTIONS

RoadApproach = Literal["spline", "direct_mask"]
PostProcessingType = Literal["gaussian", "box", "bilateral", "median"]
SplineInterpolation = Literal["linear", "tcb", "akima"]

POST_PROCESSING_TYPES = ("gaussian", "box", "bilateral", "median")
SPLINE_INTERPOLATIONS = ("linear", "tcb", "akima")
ROAD_APPROACHES = ("spline", "direct_mask")


def _filter_known(cls, data: dict[str, Any]) -> dict[str, Any]:
    """Drop keys the dataclass does not define."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class JunctionHarmonizationParameters:
    """
    Junction detection and elevation blending settings.

    Attributes:
        enable_junction_harmonization: Run junction harmonization at all
        junction_detection_radius_meters: Paths closer than this meet at a junction
        junction_blend_distance_meters: Distance along each path over which the
            junction elevation fades back to the path's own profile
        blend_function_type: Curve used for the fade
        enable_endpoint_taper: Taper dangling road ends back toward the terrain
        endpoint_taper_distance_meters: Length of the endpoint taper
        endpoint_terrain_blend_strength: 0 keeps the road elevation at the end,
            1 snaps the end to the terrain
        enable_cross_material_harmonization: Detect junctions between paths of
            different materials
    """

    enable_junction_harmonization: bool = True
    junction_detection_radius_meters: float = 20.0
    junction_blend_distance_meters: float = 40.0
    blend_function_type: str = "cosine"
    enable_endpoint_taper: bool = True
    endpoint_taper_distance_meters: float = 30.0
    endpoint_terrain_blend_strength: float = 0.3
    enable_cross_material_harmonization: bool = True

    def validate(self) -> list[str]:
        errors = []
        if self.junction_detection_radius_meters <= 0:
            errors.append("JunctionDetectionRadiusMeters must be greater than 0")
        if self.junction_blend_distance_meters <= 0:
            errors.append("JunctionBlendDistanceMeters must be greater than 0")
        if self.endpoint_taper_distance_meters < 0:
            errors.append("EndpointTaperDistanceMeters must be non-negative")
        if not 0.0 <= self.endpoint_terrain_blend_strength <= 1.0:
            errors.append("EndpointTerrainBlendStrength must be between 0 and 1")
        if self.blend_function_type not in BLEND_FUNCTIONS:
            errors.append(f"Unknown junction blend function '{self.blend_function_type}'")
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JunctionHarmonizationParameters":
        """Deserialize from dictionary."""
        return cls(**_filter_known(cls, data))


@dataclass
class PostProcessingParameters:
    """
    Final smoothing pass restricted to the road corridor.

    Attributes:
        enabled: Run the pass
        smoothing_type: "gaussian", "box", "bilateral" or "median"
        kernel_size: Filter footprint in pixels, must be odd
        sigma: Gaussian sigma in pixels (also the bilateral spatial sigma)
        iterations: Number of passes
        mask_extension_meters: Margin added to the road half-width to build the
            smoothing mask; should be at least twice the cross-section interval
    """

    enabled: bool = True
    smoothing_type: str = "gaussian"
    kernel_size: int = 7
    sigma: float = 1.5
    iterations: int = 1
    mask_extension_meters: float = 6.0

    def validate(self) -> list[str]:
        errors = []
        if self.smoothing_type not in POST_PROCESSING_TYPES:
            errors.append(f"Unknown post-processing smoothing type '{self.smoothing_type}'")
        if self.kernel_size < 1:
            errors.append("SmoothingKernelSize must be at least 1")
        if self.sigma <= 0:
            errors.append("SmoothingSigma must be greater than 0")
        if self.iterations < 1:
            errors.append("SmoothingIterations must be at least 1")
        if self.mask_extension_meters < 0:
            errors.append("SmoothingMaskExtensionMeters must be non-negative")
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PostProcessingParameters":
        """Deserialize from dictionary."""
        return cls(**_filter_known(cls, data))


@dataclass
class SplineParameters:
    """
    Centerline extraction and spline fitting settings.

    Pixel distances are in terrain pixels.
    """

    interpolation: str = "tcb"
    tension: float = 0.5
    continuity: float = 0.0
    bias: float = 0.0
    densify_max_spacing_pixels: float = 1.0
    simplify_tolerance_pixels: float = 0.5
    use_graph_ordering: bool = True
    ordering_neighbor_radius_pixels: float = 2.5
    bridge_endpoint_max_distance_pixels: float = 4.0
    min_path_length_pixels: float = 20.0
    prefer_straight_through_junctions: bool = False
    junction_angle_threshold_degrees: float = 45.0
    skeleton_dilation_radius: int = 0
    layer_threshold: int = DEFAULT_LAYER_THRESHOLD

    def validate(self) -> list[str]:
        errors = []
        if self.interpolation not in SPLINE_INTERPOLATIONS:
            errors.append(f"Unknown spline interpolation '{self.interpolation}'")
        for name in ("tension", "continuity", "bias"):
            if not -1.0 <= getattr(self, name) <= 1.0:
                errors.append(f"Spline {name} must be between -1 and 1")
        if self.densify_max_spacing_pixels <= 0:
            errors.append("DensifyMaxSpacingPixels must be greater than 0")
        if self.simplify_tolerance_pixels < 0:
            errors.append("SimplifyTolerancePixels must be non-negative")
        if self.ordering_neighbor_radius_pixels <= 0:
            errors.append("OrderingNeighborRadiusPixels must be greater than 0")
        if self.bridge_endpoint_max_distance_pixels < 0:
            errors.append("BridgeEndpointMaxDistancePixels must be non-negative")
        if self.min_path_length_pixels < 0:
            errors.append("MinPathLengthPixels must be non-negative")
        if not 0.0 <= self.junction_angle_threshold_degrees <= 180.0:
            errors.append("JunctionAngleThreshold must be between 0 and 180 degrees")
        if not 0 <= self.skeleton_dilation_radius <= 5:
            errors.append("SkeletonDilationRadius must be between 0 and 5")
        if not 0 <= self.layer_threshold <= 255:
            errors.append("LayerThreshold must be between 0 and 255")
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SplineParameters":
        """Deserialize from dictionary."""
        return cls(**_filter_known(cls, data))


@dataclass
class DirectMaskParameters:
    """Settings for smoothing straight from the road mask, without centerlines."""

    max_sample_radius_pixels: int = 10
    slope_constraint_passes: int = 5
    layer_threshold: int = DEFAULT_LAYER_THRESHOLD

    def validate(self) -> list[str]:
        errors = []
        if self.max_sample_radius_pixels < 1:
            errors.append("MaxSampleRadiusPixels must be at least 1")
        if self.slope_constraint_passes < 0:
            errors.append("SlopeConstraintPasses must be non-negative")
        if not 0 <= self.layer_threshold <= 255:
            errors.append("LayerThreshold must be between 0 and 255")
        return errors

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DirectMaskParameters":
        """Deserialize from dictionary."""
        return cls(**_filter_known(cls, data))


@dataclass
class RoadSmoothingParameters:
    """
    Per-material road smoothing configuration.

    Attributes:
        approach: "spline" (centerline + cross-sections) or "direct_mask"
        road_width_meters: Fully flattened corridor width
        terrain_affected_range_meters: Shoulder width on each side over which
            the road blends back into the terrain
        road_max_slope_degrees: Longitudinal grade limit
        side_max_slope_degrees: Embankment grade limit in the shoulder
        enable_max_slope_constraint: Clamp the longitudinal grade
        enable_side_slope_constraint: Clamp the embankment grade
        cross_section_interval_meters: Spacing between cross-sections
        blend_function_type: Shoulder blend curve
        smoothing_window_size: Box filter window in cross-sections (odd)
        use_butterworth_filter: Use the Butterworth low-pass instead of the box filter
        butterworth_filter_order: Butterworth order (2-6 typical)
        global_leveling_strength: 0 keeps the local profile, 1 levels the whole
            network to a single elevation
        exclusion_layers: Image paths or 2D arrays marking areas (water,
            bridges) where the road keeps its material but the terrain is not
            smoothed
    """

    approach: str = "spline"
    road_width_meters: float = 8.0
    terrain_affected_range_meters: float = 15.0
    road_max_slope_degrees: float = 8.0
    side_max_slope_degrees: float = 30.0
    enable_max_slope_constraint: bool = False
    enable_side_slope_constraint: bool = False
    cross_section_interval_meters: float = 2.0
    blend_function_type: str = "cosine"
    smoothing_window_size: int = 101
    use_butterworth_filter: bool = True
    butterworth_filter_order: int = 3
    global_leveling_strength: float = 0.0
    spline: SplineParameters = field(default_factory=SplineParameters)
    direct_mask: DirectMaskParameters = field(default_factory=DirectMaskParameters)
    junctions: JunctionHarmonizationParameters = field(
        default_factory=JunctionHarmonizationParameters
    )
    post_processing: PostProcessingParameters = field(default_factory=PostProcessingParameters)
    exclusion_layers: list = field(default_factory=list)

    @property
    def half_width_meters(self) -> float:
        return self.road_width_meters / 2.0

    @property
    def impact_radius_meters(self) -> float:
        """Distance from the centerline beyond which terrain is untouched."""
        return self.road_width_meters / 2.0 + self.terrain_affected_range_meters

    def validate(self) -> list[str]:
        """
        Check value ranges.

        Returns:
            List of error messages, empty when the configuration is usable
        """
        errors = []
        if self.approach not in ROAD_APPROACHES:
            errors.append(f"Unknown road smoothing approach '{self.approach}'")
        if self.road_width_meters <= 0:
            errors.append("RoadWidthMeters must be greater than 0")
        if self.terrain_affected_range_meters < 0:
            errors.append("TerrainAffectedRangeMeters must be non-negative")
        if not 0 < self.road_max_slope_degrees < 90:
            errors.append("RoadMaxSlopeDegrees must be between 0 and 90")
        if not 0 < self.side_max_slope_degrees < 90:
            errors.append("SideMaxSlopeDegrees must be between 0 and 90")
        if self.cross_section_interval_meters <= 0:
            errors.append("CrossSectionIntervalMeters must be greater than 0")
        if self.blend_function_type not in BLEND_FUNCTIONS:
            errors.append(f"Unknown blend function '{self.blend_function_type}'")
        if self.smoothing_window_size < 1:
            errors.append("SmoothingWindowSize must be at least 1")
        if not 1 <= self.butterworth_filter_order <= 8:
            errors.append("ButterworthFilterOrder must be between 1 and 8")
        if not 0.0 <= self.global_leveling_strength <= 1.0:
            errors.append("GlobalLevelingStrength must be between 0 and 1")

        errors.extend(self.spline.validate())
        errors.extend(self.direct_mask.validate())
        errors.extend(self.junctions.validate())
        errors.extend(self.post_processing.validate())
        return errors

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize to dictionary.

        Nested bundles become nested dicts; in-memory exclusion layers are dropped.
        """
        data = asdict(self)
        data["exclusion_layers"] = [
            str(s) for s in self.exclusion_layers if isinstance(s, (str, os.PathLike))
        ]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RoadSmoothingParameters":
        """Deserialize from dictionary."""
        data = dict(data)
        nested = {
            "spline": SplineParameters,
            "direct_mask": DirectMaskParameters,
            "junctions": JunctionHarmonizationParameters,
            "post_processing": PostProcessingParameters,
        }
        kwargs = _filter_known(cls, data)
        for key, nested_cls in nested.items():
            if isinstance(kwargs.get(key), dict):
                kwargs[key] = nested_cls.from_dict(kwargs[key])
        return cls(**kwargs)
