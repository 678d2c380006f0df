"""
Road networks: one material's roads, ready to be stamped into a heightmap.

Two variants share the RoadNetwork interface so the compositor does not care
how a material's roads were extracted:

- SplineRoadNetwork: centerline paths -> splines -> cross-sections with
  smoothed target elevations. Takes part in junction harmonization.
- DirectMaskRoadNetwork: works straight from the road mask, averaging the
  terrain under the road and blending outward with a distance transform.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from scipy import ndimage

from src.roadterrain.cross_sections import (
    CrossSection,
    RasterizationResult,
    build_cross_sections,
    cross_section_weight,
    rasterize_cross_sections,
)
from src.roadterrain.features import binarize_layer, path_length, rasterize_paths
from src.roadterrain.parameters import RoadSmoothingParameters
from src.roadterrain.profile import sample_elevations, smooth_network_profiles
from src.roadterrain.skeleton import PathOrderer
from src.roadterrain.splines import RoadSpline, fit_spline

logger = logging.getLogger(__name__)


@dataclass
class RoadPath:
    """
    One continuous road of a network.

    Attributes:
        path_id: Unique id within the network
        material_index: Index of the owning material
        material_name: Name of the owning material
        points: Ordered N x 2 (x, y) centerline in pixels
        spline: Fitted centerline
        sections: Cross-sections with target elevations
        width_meters: Road width
    """

    path_id: int
    material_index: int
    material_name: str
    points: np.ndarray
    spline: Optional[RoadSpline] = None
    sections: List[CrossSection] = field(default_factory=list)
    width_meters: float = 0.0

    @property
    def length_pixels(self) -> float:
        return self.spline.length if self.spline is not None else path_length(self.points)

    @property
    def start(self) -> np.ndarray:
        return self.sections[0].center if self.sections else self.points[0]

    @property
    def end(self) -> np.ndarray:
        return self.sections[-1].center if self.sections else self.points[-1]


class RoadNetwork:
    """
    Base class for a material's road network.

    Attributes:
        material_name: Owning material
        material_index: Position of the material in the compositing order
        params: Smoothing configuration of the material
        meters_per_pixel: Ground resolution
        paths: Centerline paths (empty for mask-only networks)
        exclusion_mask: Pixels the network must leave untouched, or None
    """

    approach = "base"

    def __init__(
        self,
        material_name: str,
        material_index: int,
        params: RoadSmoothingParameters,
        meters_per_pixel: float,
    ):
        if meters_per_pixel <= 0:
            raise ValueError(f"meters_per_pixel must be positive, got {meters_per_pixel}")
        self.material_name = material_name
        self.material_index = material_index
        self.params = params
        self.meters_per_pixel = meters_per_pixel
        self.paths: List[RoadPath] = []
        self.exclusion_mask: Optional[np.ndarray] = None

    @property
    def sections(self) -> List[CrossSection]:
        return [s for p in self.paths for s in p.sections]

    @property
    def supports_junctions(self) -> bool:
        return bool(self.paths)

    def set_exclusion_mask(self, mask: Optional[np.ndarray]) -> None:
        """Keep the terrain under mask untouched when this network is stamped."""
        self.exclusion_mask = None if mask is None else np.asarray(mask, dtype=bool)

    def apply(self, heightmap: np.ndarray) -> RasterizationResult:
        """Stamp this network into a copy of heightmap."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(material='{self.material_name}', "
            f"paths={len(self.paths)}, sections={len(self.sections)})"
        )


class SplineRoadNetwork(RoadNetwork):
    """Centerline network stamped through cross-sections."""

    approach = "spline"

    @property
    def interval_pixels(self) -> float:
        return self.params.cross_section_interval_meters / self.meters_per_pixel

    def build(self, paths: List[np.ndarray], heightmap: np.ndarray) -> "SplineRoadNetwork":
        """
        Fit splines, lay out cross-sections and compute target elevations.

        Args:
            paths: Ordered pixel paths
            heightmap: Terrain the road is laid on (sampled, not modified)

        Returns:
            self
        """
        params = self.params
        min_length = params.spline.min_path_length_pixels
        index = 0
        rejected = 0

        for path in paths:
            spline = fit_spline(path, params.spline, min_length=min_length)
            if spline is None:
                rejected += 1
                continue
            path_id = len(self.paths)
            sections = build_cross_sections(
                spline,
                self.interval_pixels,
                params.road_width_meters,
                self.meters_per_pixel,
                path_id=path_id,
                start_index=index,
            )
            index += len(sections)
            self.paths.append(
                RoadPath(
                    path_id=path_id,
                    material_index=self.material_index,
                    material_name=self.material_name,
                    points=np.asarray(path, dtype=np.float64),
                    spline=spline,
                    sections=sections,
                    width_meters=params.road_width_meters,
                )
            )

        raw = [sample_elevations(heightmap, np.array([s.center for s in p.sections])) for p in self.paths]
        smoothed = smooth_network_profiles(raw, params, params.cross_section_interval_meters)
        for path, terrain, target in zip(self.paths, raw, smoothed):
            for section, t, z in zip(path.sections, terrain, target):
                section.terrain_elevation = float(t)
                section.target_elevation = float(z)

        logger.info(
            f"Material '{self.material_name}': {len(self.paths)} splines, "
            f"{index} cross-sections ({rejected} paths rejected)"
        )
        return self

    def set_exclusion_mask(self, mask: Optional[np.ndarray]) -> None:
        super().set_exclusion_mask(mask)
        if self.exclusion_mask is None:
            for section in self.sections:
                section.is_excluded = False
            return
        h, w = self.exclusion_mask.shape
        excluded = 0
        for section in self.sections:
            col, row = np.round(section.center).astype(int)
            section.is_excluded = bool(0 <= row < h and 0 <= col < w and self.exclusion_mask[row, col])
            excluded += section.is_excluded
        if excluded:
            logger.info(f"Material '{self.material_name}': {excluded} cross-sections in exclusion zones")

    def apply(self, heightmap: np.ndarray) -> RasterizationResult:
        return rasterize_cross_sections(
            heightmap, self.sections, self.params, self.meters_per_pixel, self.interval_pixels,
            exclusion_mask=self.exclusion_mask,
        )


class DirectMaskRoadNetwork(RoadNetwork):
    """Mask-only network: no centerlines, no junction harmonization."""

    approach = "direct_mask"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.mask: Optional[np.ndarray] = None

    def build(self, mask: np.ndarray) -> "DirectMaskRoadNetwork":
        self.mask = np.asarray(mask, dtype=bool)
        logger.info(
            f"Material '{self.material_name}': direct mask with "
            f"{int(self.mask.sum())} road pixels"
        )
        return self

    @property
    def smoothing_mask(self) -> np.ndarray:
        """Road pixels outside exclusion zones."""
        if self.exclusion_mask is None:
            return self.mask
        return self.mask & ~self.exclusion_mask

    def road_elevations(self, heightmap: np.ndarray) -> np.ndarray:
        """
        Target elevation for every road pixel.

        Each road pixel averages the road pixels on a horizontal and vertical
        line through it (radius = half the road width, 1-10 pixels), then
        neighbouring road pixels whose difference exceeds the max grade are
        pulled to their mean.
        """
        mask = self.smoothing_mask
        params = self.params
        radius = int(params.road_width_meters / (2.0 * self.meters_per_pixel))
        radius = max(1, min(radius, params.direct_mask.max_sample_radius_pixels))

        cross = np.zeros((2 * radius + 1, 2 * radius + 1))
        cross[radius, :] = 1.0
        cross[:, radius] = 1.0

        weights = mask.astype(np.float64)
        height_sum = ndimage.correlate(heightmap * weights, cross, mode="constant")
        count = ndimage.correlate(weights, cross, mode="constant")
        elevations = np.where(mask & (count > 0), height_sum / np.maximum(count, 1e-9), heightmap)

        if params.enable_max_slope_constraint:
            elevations = self._constrain_neighbour_slopes(elevations)
        return elevations

    def _constrain_neighbour_slopes(self, elevations: np.ndarray) -> np.ndarray:
        max_diff = np.tan(np.radians(self.params.road_max_slope_degrees)) * self.meters_per_pixel
        out = elevations.copy()
        mask = self.smoothing_mask

        for _ in range(self.params.direct_mask.slope_constraint_passes):
            changed = False
            # Transposed views write through, so one row-pair routine covers both axes
            for grid, road in ((out, mask), (out.T, mask.T)):
                for parity in (0, 1):
                    upper = grid[parity:-1:2]
                    lower = grid[parity + 1::2]
                    steep = road[parity:-1:2] & road[parity + 1::2] & (np.abs(upper - lower) > max_diff)
                    if np.any(steep):
                        mean = (upper + lower) / 2.0
                        upper[steep] = mean[steep]
                        lower[steep] = mean[steep]
                        changed = True
            if not changed:
                break
        return out

    def apply(self, heightmap: np.ndarray) -> RasterizationResult:
        if heightmap.shape != self.mask.shape:
            raise ValueError(
                f"Mask shape {self.mask.shape} does not match heightmap {heightmap.shape}"
            )
        params = self.params
        original = heightmap.astype(np.float64, copy=True)
        mask = self.smoothing_mask
        if not mask.any():
            return RasterizationResult(original, np.full(original.shape, np.inf), 0)

        road = self.road_elevations(original)
        edge_distance, (iy, ix) = ndimage.distance_transform_edt(~mask, return_indices=True)
        edge_m = edge_distance * self.meters_per_pixel
        target = road[iy, ix]

        weight = cross_section_weight(
            edge_m, 0.0, params.terrain_affected_range_meters, params.blend_function_type
        )
        if self.exclusion_mask is not None:
            weight[self.exclusion_mask] = 0.0
        existing = original
        if params.enable_side_slope_constraint:
            max_diff = edge_m * np.tan(np.radians(params.side_max_slope_degrees))
            existing = target + np.clip(original - target, -max_diff, max_diff)

        result = np.where(weight > 0, target * weight + existing * (1.0 - weight), original)
        distance = np.where(mask, 0.0, edge_m + params.half_width_meters)
        if self.exclusion_mask is not None:
            distance[self.exclusion_mask] = np.inf
        modified = int(np.count_nonzero(np.abs(result - original) > 1e-6))
        return RasterizationResult(result, distance, modified)


def build_road_network(
    material_name: str,
    material_index: int,
    params: RoadSmoothingParameters,
    heightmap: np.ndarray,
    meters_per_pixel: float,
    paths: Optional[List[np.ndarray]] = None,
    mask: Optional[np.ndarray] = None,
) -> RoadNetwork:
    """
    Build the network variant selected by params.approach.

    Either source works for either variant: a spline network skeletonizes a
    mask when no paths are given, and a mask network paints paths into a
    corridor mask when no mask is given.

    Args:
        material_name: Owning material
        material_index: Compositing position of the material
        params: Road smoothing configuration
        heightmap: Current terrain
        meters_per_pixel: Ground resolution
        paths: Vector-derived centerline paths in pixels
        mask: Greyscale (0-255) or boolean layer mask

    Returns:
        A built RoadNetwork

    Raises:
        ValueError: If neither paths nor mask is given
    """
    if paths is None and mask is None:
        raise ValueError(f"Material '{material_name}' has neither paths nor a layer mask")

    if params.approach == "direct_mask":
        if mask is None:
            width_px = params.road_width_meters / meters_per_pixel
            mask = rasterize_paths(paths, width_px, heightmap.shape)
        binary = mask if mask.dtype == bool else binarize_layer(mask, params.direct_mask.layer_threshold)
        return DirectMaskRoadNetwork(material_name, material_index, params, meters_per_pixel).build(binary)

    if paths is None:
        binary = mask if mask.dtype == bool else binarize_layer(mask, params.spline.layer_threshold)
        paths = PathOrderer(params.spline).extract_paths(binary)
    network = SplineRoadNetwork(material_name, material_index, params, meters_per_pixel)
    return network.build(paths, heightmap)
