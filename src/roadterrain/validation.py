"""
Advisory validation of road smoothing parameters.

These checks never block generation. They flag parameter combinations that
are legal but known to produce visible artifacts, each with a recommendation
the caller can show to the user.
"""

import logging
from dataclasses import dataclass
from typing import Literal

from src.roadterrain.parameters import RoadSmoothingParameters

logger = logging.getLogger(__name__)

Severity = Literal["info", "warning", "error"]


@dataclass(frozen=True)
class ValidationWarning:
    """A single advisory finding."""

    severity: Severity
    title: str
    message: str
    recommendation: str

    def __str__(self) -> str:
        return f"[{self.severity}] {self.title}: {self.message} {self.recommendation}"


def recommended_max_interval(params: RoadSmoothingParameters) -> float:
    """Largest cross-section spacing that still gives continuous coverage."""
    return params.impact_radius_meters / 3.0


def get_validation_warnings(params: RoadSmoothingParameters) -> list[ValidationWarning]:
    """
    Collect advisory warnings for one road material.

    Args:
        params: Road smoothing configuration to inspect

    Returns:
        Warnings ordered roughly by severity of the visual impact
    """
    warnings: list[ValidationWarning] = []
    leveling = params.global_leveling_strength
    affected = params.terrain_affected_range_meters

    if leveling > 0.5 and affected < 15.0:
        warnings.append(
            ValidationWarning(
                "error",
                "Disconnected Road Risk",
                f"GlobalLevelingStrength ({leveling:.2f}) above 0.5 with "
                f"TerrainAffectedRangeMeters ({affected:.1f}m) below 15m is likely to "
                "leave disconnected, dotted road segments.",
                "Reduce GlobalLevelingStrength to 0.5 or less, or raise "
                "TerrainAffectedRangeMeters to at least 15m (20m+ recommended).",
            )
        )
    elif leveling > 0.3 and affected < 12.0:
        warnings.append(
            ValidationWarning(
                "warning",
                "Blend Zone May Be Too Narrow",
                f"GlobalLevelingStrength ({leveling:.2f}) with TerrainAffectedRangeMeters "
                f"({affected:.1f}m) may produce visible transitions.",
                "Raise TerrainAffectedRangeMeters to at least 12m.",
            )
        )

    max_interval = recommended_max_interval(params)
    if params.cross_section_interval_meters > max_interval:
        warnings.append(
            ValidationWarning(
                "warning",
                "Cross-Section Spacing May Cause Gaps",
                f"CrossSectionIntervalMeters ({params.cross_section_interval_meters:.2f}m) "
                f"is large compared to the road impact radius "
                f"({params.impact_radius_meters:.1f}m).",
                f"Reduce CrossSectionIntervalMeters to {max_interval:.2f}m or less.",
            )
        )

    if params.approach == "spline" and params.smoothing_window_size % 2 == 0:
        warnings.append(
            ValidationWarning(
                "info",
                "Window Size Should Be Odd",
                f"SmoothingWindowSize ({params.smoothing_window_size}) should be odd "
                "for a symmetric filter.",
                f"Use {params.smoothing_window_size + 1}.",
            )
        )

    post = params.post_processing
    if post.enabled and post.kernel_size % 2 == 0:
        warnings.append(
            ValidationWarning(
                "warning",
                "Kernel Size Must Be Odd",
                f"SmoothingKernelSize ({post.kernel_size}) must be odd.",
                f"Use {post.kernel_size + 1}.",
            )
        )

    min_extension = params.cross_section_interval_meters * 2.0
    if post.enabled and post.mask_extension_meters < min_extension:
        warnings.append(
            ValidationWarning(
                "info",
                "Mask Extension May Be Insufficient",
                f"SmoothingMaskExtensionMeters ({post.mask_extension_meters:.1f}m) should "
                f"be at least twice CrossSectionIntervalMeters "
                f"({params.cross_section_interval_meters:.2f}m) to remove staircase artifacts.",
                f"Increase it to {min_extension:.1f}m or more.",
            )
        )

    if (
        params.approach == "spline"
        and not params.use_butterworth_filter
        and params.smoothing_window_size > 150
    ):
        warnings.append(
            ValidationWarning(
                "info",
                "Consider Butterworth Filter",
                f"A smoothing window of {params.smoothing_window_size} suggests hilly "
                "terrain, where the Butterworth filter follows elevation changes better "
                "than the box filter.",
                "Enable the Butterworth filter.",
            )
        )

    if params.use_butterworth_filter and params.butterworth_filter_order > 6:
        warnings.append(
            ValidationWarning(
                "info",
                "High Butterworth Order",
                f"Filter order {params.butterworth_filter_order} is very steep and may "
                "ring near sharp elevation transitions.",
                "Order 3-4 suits most terrain.",
            )
        )

    if params.road_width_meters < 3.0:
        warnings.append(
            ValidationWarning(
                "info",
                "Narrow Road",
                f"Road width ({params.road_width_meters:.1f}m) is very narrow. Single-lane "
                "roads are usually 3-4m and two-lane roads 6-8m.",
                "Make sure this is intended, for example a footpath or trail.",
            )
        )

    if params.road_max_slope_degrees > 12.0:
        warnings.append(
            ValidationWarning(
                "info",
                "Steep Road Grade",
                f"Max road slope ({params.road_max_slope_degrees:.1f} deg) exceeds typical "
                "limits. Highways stay around 4-6 deg, mountain roads 8-10 deg.",
                "Grades above 12 deg look unrealistic for paved roads.",
            )
        )

    for warning in warnings:
        logger.debug(f"Validation: {warning}")

    return warnings
