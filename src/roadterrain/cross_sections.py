"""
Cross-section generation and rasterization.

A cross-section is a sample point on a road centerline carrying a target
elevation and the local direction of the road. Rasterization stamps the
target elevations into a heightmap: each pixel takes its nearest
cross-section, measures its lateral distance from the centerline and blends

    new = target * w + existing * (1 - w)

with w = 1 inside the road half-width, 0 beyond half-width + affected range,
and a monotonic blend-function falloff in between.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from scipy import ndimage
from scipy.spatial import cKDTree

from src.roadterrain.blending import apply_blend
from src.roadterrain.parameters import RoadSmoothingParameters
from src.roadterrain.splines import RoadSpline

logger = logging.getLogger(__name__)


@dataclass
class CrossSection:
    """
    One sample across the road.

    Attributes:
        center: (x, y) centerline position in pixels
        tangent: Unit direction of travel
        normal: Unit vector to the right of travel
        distance: Distance along the path from its start, in meters
        target_elevation: Elevation the road surface should have here
        terrain_elevation: Terrain elevation at the center before smoothing
        width_meters: Road width at this sample
        path_id: Path this section belongs to
        local_index: Index within the path
        index: Global index across all paths of a network
        is_excluded: Excluded sections are not stamped
        smoothed_elevation: Target elevation before junction harmonization,
            recorded on the first harmonization pass
    """

    center: np.ndarray
    tangent: np.ndarray
    normal: np.ndarray
    distance: float
    target_elevation: float = 0.0
    terrain_elevation: float = 0.0
    width_meters: float = 0.0
    path_id: int = 0
    local_index: int = 0
    index: int = 0
    is_excluded: bool = False
    smoothed_elevation: Optional[float] = None


@dataclass
class RasterizationResult:
    """Output of one stamping pass."""

    heightmap: np.ndarray
    distance: np.ndarray
    modified_pixels: int


def build_cross_sections(
    spline: RoadSpline,
    interval_pixels: float,
    width_meters: float,
    meters_per_pixel: float,
    path_id: int = 0,
    start_index: int = 0,
) -> List[CrossSection]:
    """
    Sample a spline at a fixed arc-length interval.

    Args:
        spline: Fitted centerline in pixel space
        interval_pixels: Spacing between sections in pixels
        width_meters: Road width stored on each section
        meters_per_pixel: Ground resolution, used for the distance field
        path_id: Identifier stored on each section
        start_index: First global index

    Returns:
        Cross-sections ordered along the path; the last sits on the path end
    """
    distances, points = spline.sample_by_distance(interval_pixels)
    tangents = spline.tangent_at(distances)
    normals = spline.normal_at(distances)

    return [
        CrossSection(
            center=points[i],
            tangent=tangents[i],
            normal=normals[i],
            distance=float(distances[i] * meters_per_pixel),
            width_meters=width_meters,
            path_id=path_id,
            local_index=i,
            index=start_index + i,
        )
        for i in range(len(distances))
    ]


def cross_section_weight(
    distance: np.ndarray,
    half_width: float,
    affected_range: float,
    blend_type: str = "cosine",
) -> np.ndarray:
    """
    Road influence at a lateral distance from the centerline.

    Args:
        distance: Lateral distance(s) in meters
        half_width: Road half-width in meters (weight 1 inside)
        affected_range: Shoulder width in meters (weight 0 beyond half_width + range)
        blend_type: Blend function shaping the shoulder

    Returns:
        Weights in [0, 1], non-increasing with distance
    """
    distance = np.asarray(distance, dtype=np.float64)
    if affected_range <= 0:
        return (distance <= half_width).astype(np.float64)
    t = (distance - half_width) / affected_range
    weight = 1.0 - np.asarray(apply_blend(t, blend_type))
    weight = np.where(distance <= half_width, 1.0, weight)
    weight = np.where(distance >= half_width + affected_range, 0.0, weight)
    return weight


def rasterize_cross_sections(
    heightmap: np.ndarray,
    sections: Sequence[CrossSection],
    params: RoadSmoothingParameters,
    meters_per_pixel: float,
    spacing_pixels: Optional[float] = None,
    exclusion_mask: Optional[np.ndarray] = None,
) -> RasterizationResult:
    """
    Stamp cross-section target elevations into a heightmap.

    Args:
        heightmap: 2D elevation array; not modified
        sections: Cross-sections of one network (excluded ones are skipped)
        params: Width, affected range, blend function and side slope settings
        meters_per_pixel: Ground resolution
        spacing_pixels: Section spacing; defaults to the configured interval
        exclusion_mask: Boolean mask of pixels that must not be changed

    Returns:
        RasterizationResult with the new heightmap, the per-pixel distance to
        the nearest centerline in meters (inf where no section is in reach) and the
        number of pixels changed
    """
    if heightmap.ndim != 2:
        raise ValueError(f"Heightmap must be 2D, got shape {heightmap.shape}")

    result = heightmap.astype(np.float64, copy=True)
    distance_field = np.full(heightmap.shape, np.inf)
    active = [s for s in sections if not s.is_excluded]
    if not active:
        return RasterizationResult(result, distance_field, 0)

    if spacing_pixels is None:
        spacing_pixels = params.cross_section_interval_meters / meters_per_pixel
    half_width = params.half_width_meters
    affected = params.terrain_affected_range_meters
    reach_meters = max(params.impact_radius_meters, half_width + params.post_processing.mask_extension_meters)
    reach_pixels = reach_meters / meters_per_pixel + spacing_pixels

    centers = np.array([s.center for s in active])
    tangents = np.array([s.tangent for s in active])
    normals = np.array([s.normal for s in active])
    targets = np.array([s.target_elevation for s in active])

    # Candidate pixels: within reach of any section center
    h, w = heightmap.shape
    seeds = np.ones(heightmap.shape, dtype=bool)
    cols = np.clip(np.round(centers[:, 0]).astype(int), 0, w - 1)
    rows = np.clip(np.round(centers[:, 1]).astype(int), 0, h - 1)
    seeds[rows, cols] = False
    near = ndimage.distance_transform_edt(seeds) <= reach_pixels + 1.0

    ys, xs = np.nonzero(near)
    pixels = np.column_stack([xs, ys]).astype(np.float64)
    _, nearest = cKDTree(centers).query(pixels)

    offset = pixels - centers[nearest]
    lateral = np.abs(np.einsum("ij,ij->i", offset, normals[nearest]))
    along = np.abs(np.einsum("ij,ij->i", offset, tangents[nearest]))
    overshoot = np.maximum(0.0, along - spacing_pixels / 2.0)
    dist_m = np.hypot(lateral, overshoot) * meters_per_pixel

    weight = cross_section_weight(dist_m, half_width, affected, params.blend_function_type)
    if exclusion_mask is not None:
        excluded = exclusion_mask[ys, xs]
        weight[excluded] = 0.0
        dist_m[excluded] = np.inf
    inside = weight > 0.0
    target = targets[nearest]
    existing = result[ys, xs]

    if params.enable_side_slope_constraint:
        max_diff = np.maximum(dist_m - half_width, 0.0) * np.tan(np.radians(params.side_max_slope_degrees))
        existing = target + np.clip(existing - target, -max_diff, max_diff)

    blended = target * weight + existing * (1.0 - weight)
    result[ys[inside], xs[inside]] = blended[inside]

    distance_field[ys, xs] = dist_m

    modified = int(np.count_nonzero(np.abs(result - heightmap) > 1e-6))
    logger.debug(f"Stamped {len(active)} cross-sections, {modified} pixels changed")
    return RasterizationResult(result, distance_field, modified)
