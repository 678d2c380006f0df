"""
Vector feature ingestion and rasterization.

Converts pre-fetched map features (GeoJSON-style LineStrings and Polygons in
WGS84) into terrain pixel space:

- Line features become ordered point paths (N x 2 arrays of x, y), clipped to
  the terrain, de-duplicated and joined where their ends touch.
- Polygon features are filled into a uint8 layer mask (0 or 255).

Raster layer masks go through binarize_layer() and the skeleton extractor in
src.roadterrain.skeleton instead; both routes end in the same path list.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

import numpy as np
from rasterio.features import rasterize
from shapely.geometry import LineString, Polygon, box, mapping

from src.roadterrain.geo import CoordinateTransformer

logger = logging.getLogger(__name__)

GeometryKind = Literal["LineString", "Polygon"]


@dataclass
class FeatureGeometry:
    """
    A single line or polygon feature in geographic coordinates.

    Attributes:
        kind: "LineString" or "Polygon"
        coordinates: (lon, lat) pairs; the exterior ring for polygons
        holes: Interior rings for polygons
        properties: Source tags (e.g. highway type)
    """

    kind: GeometryKind
    coordinates: List[Tuple[float, float]]
    holes: List[List[Tuple[float, float]]] = field(default_factory=list)
    properties: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.kind not in ("LineString", "Polygon"):
            raise ValueError(f"Unsupported geometry kind '{self.kind}'")
        minimum = 2 if self.kind == "LineString" else 3
        if len(self.coordinates) < minimum:
            raise ValueError(
                f"{self.kind} needs at least {minimum} coordinates, got {len(self.coordinates)}"
            )

    @property
    def is_line(self) -> bool:
        return self.kind == "LineString"


def parse_feature_collection(collection: Dict[str, Any]) -> List[FeatureGeometry]:
    """
    Parse a GeoJSON FeatureCollection into FeatureGeometry objects.

    Multi-geometries are exploded. Unsupported or malformed features are
    logged and skipped.

    Args:
        collection: GeoJSON FeatureCollection dict

    Returns:
        List of line and polygon features
    """
    features: List[FeatureGeometry] = []
    skipped = 0

    for feature in collection.get("features", []):
        try:
            geometry = feature.get("geometry") or {}
            kind = geometry.get("type")
            coords = geometry.get("coordinates", [])
            properties = feature.get("properties") or {}

            if kind == "LineString":
                parts = [("LineString", coords)]
            elif kind == "MultiLineString":
                parts = [("LineString", part) for part in coords]
            elif kind == "Polygon":
                parts = [("Polygon", coords)]
            elif kind == "MultiPolygon":
                parts = [("Polygon", part) for part in coords]
            else:
                logger.debug(f"Skipping unsupported geometry type: {kind}")
                skipped += 1
                continue

            for part_kind, part in parts:
                if part_kind == "LineString":
                    ring = [(float(x), float(y)) for x, y, *_ in part]
                    features.append(FeatureGeometry("LineString", ring, properties=properties))
                else:
                    rings = [[(float(x), float(y)) for x, y, *_ in r] for r in part]
                    features.append(
                        FeatureGeometry("Polygon", rings[0], holes=rings[1:], properties=properties)
                    )

        except (TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Failed to parse feature: {e}")
            skipped += 1
            continue

    logger.info(f"Parsed {len(features)} features ({skipped} skipped)")
    return features


def path_length(points: np.ndarray) -> float:
    """Polyline length of an N x 2 point array."""
    if len(points) < 2:
        return 0.0
    return float(np.sum(np.linalg.norm(np.diff(points, axis=0), axis=1)))


def remove_duplicate_points(points: np.ndarray, tolerance: float = 0.01) -> np.ndarray:
    """Drop consecutive points closer than tolerance to the last kept point."""
    if len(points) == 0:
        return points
    kept = [points[0]]
    for p in points[1:]:
        if np.hypot(p[0] - kept[-1][0], p[1] - kept[-1][1]) >= tolerance:
            kept.append(p)
    return np.asarray(kept, dtype=np.float64)


def join_adjacent_paths(paths: List[np.ndarray], tolerance: float = 1.0) -> List[np.ndarray]:
    """
    Merge paths whose endpoints lie within tolerance of each other.

    All four endpoint pairings are tried; merging repeats until no pair joins.
    """
    paths = [p for p in paths if len(p) >= 2]
    merged = True

    while merged:
        merged = False
        for i in range(len(paths)):
            for j in range(i + 1, len(paths)):
                a, b = paths[i], paths[j]
                joined = None
                if np.linalg.norm(a[-1] - b[0]) <= tolerance:
                    joined = np.vstack([a, b[1:]])
                elif np.linalg.norm(a[-1] - b[-1]) <= tolerance:
                    joined = np.vstack([a, b[::-1][1:]])
                elif np.linalg.norm(a[0] - b[-1]) <= tolerance:
                    joined = np.vstack([b, a[1:]])
                elif np.linalg.norm(a[0] - b[0]) <= tolerance:
                    joined = np.vstack([b[::-1], a[1:]])

                if joined is not None:
                    paths[i] = joined
                    del paths[j]
                    merged = True
                    break
            if merged:
                break

    return paths


class VectorFeatureProcessor:
    """
    Projects geographic features into terrain pixel space.

    Attributes:
        transformer: Geo to terrain pixel mapping
        endpoint_join_tolerance: Max pixel gap between joined path ends
        duplicate_tolerance: Consecutive points closer than this are merged
        min_path_length: Paths shorter than this (pixels) are dropped
    """

    def __init__(
        self,
        transformer: CoordinateTransformer,
        endpoint_join_tolerance: float = 1.0,
        duplicate_tolerance: float = 0.01,
        min_path_length: float = 0.0,
    ):
        self.transformer = transformer
        self.endpoint_join_tolerance = endpoint_join_tolerance
        self.duplicate_tolerance = duplicate_tolerance
        self.min_path_length = min_path_length
        self.bounds = box(0.0, 0.0, float(transformer.terrain_width), float(transformer.terrain_height))

    @property
    def shape(self) -> Tuple[int, int]:
        return self.transformer.terrain_height, self.transformer.terrain_width

    def project(self, coordinates: Sequence[Tuple[float, float]]) -> np.ndarray:
        """Project (lon, lat) pairs to an N x 2 array of terrain (x, y) pixels."""
        coords = np.asarray(coordinates, dtype=np.float64)
        x, y = self.transformer.geo_to_terrain_pixel(coords[:, 0], coords[:, 1])
        return np.column_stack([x, y])

    def lines_to_paths(self, features: Sequence[FeatureGeometry]) -> List[np.ndarray]:
        """
        Convert line features to clipped, joined pixel paths.

        Args:
            features: Features of any kind; polygons are ignored

        Returns:
            List of N x 2 (x, y) arrays in terrain pixel space
        """
        paths: List[np.ndarray] = []
        outside = 0

        for feature in features:
            if not feature.is_line:
                continue
            pixels = self.project(feature.coordinates)
            clipped = LineString(pixels).intersection(self.bounds)
            if clipped.is_empty:
                outside += 1
                continue

            for part in getattr(clipped, "geoms", [clipped]):
                if part.geom_type != "LineString":
                    continue
                path = remove_duplicate_points(np.asarray(part.coords)[:, :2], self.duplicate_tolerance)
                if len(path) >= 2:
                    paths.append(path)

        paths = join_adjacent_paths(paths, self.endpoint_join_tolerance)
        kept = [p for p in paths if path_length(p) >= self.min_path_length]

        logger.info(
            f"Converted line features to {len(kept)} paths "
            f"({outside} outside terrain, {len(paths) - len(kept)} too short)"
        )
        return kept

    def polygons_to_mask(self, features: Sequence[FeatureGeometry]) -> np.ndarray:
        """Fill polygon features into a uint8 mask (255 inside)."""
        polygons = []
        for feature in features:
            if feature.is_line:
                continue
            shell = self.project(feature.coordinates)
            holes = [self.project(h) for h in feature.holes]
            polygon = Polygon(shell, holes)
            if not polygon.is_valid:
                polygon = polygon.buffer(0)
            if polygon.intersects(self.bounds):
                polygons.append(polygon.intersection(self.bounds))
        return rasterize_polygons(polygons, self.shape)


def rasterize_polygons(polygons: Sequence[Any], shape: Tuple[int, int]) -> np.ndarray:
    """
    Burn shapely polygons given in pixel coordinates into a uint8 mask.

    Args:
        polygons: Shapely geometries in (x, y) pixel space
        shape: (height, width) of the output mask

    Returns:
        uint8 array, 255 inside any polygon and 0 elsewhere
    """
    shapes = [(mapping(p), 255) for p in polygons if not p.is_empty]
    if not shapes:
        return np.zeros(shape, dtype=np.uint8)
    return rasterize(shapes, out_shape=shape, fill=0, dtype="uint8")


def rasterize_paths(
    paths: Sequence[np.ndarray], width_pixels: float, shape: Tuple[int, int]
) -> np.ndarray:
    """
    Paint pixel paths as corridors of the given width into a uint8 mask.

    Args:
        paths: N x 2 (x, y) arrays in pixel space
        width_pixels: Corridor width in pixels
        shape: (height, width) of the output mask

    Returns:
        uint8 array, 255 on the corridor and 0 elsewhere
    """
    radius = max(width_pixels / 2.0, 0.5)
    corridors = [LineString(p).buffer(radius) for p in paths if len(p) >= 2]
    return rasterize_polygons(corridors, shape)


def binarize_layer(layer: np.ndarray, threshold: int = 128) -> np.ndarray:
    """
    Threshold a greyscale layer mask.

    Args:
        layer: 2D greyscale array (0-255)
        threshold: Pixels strictly above this are foreground

    Returns:
        Boolean mask

    Raises:
        ValueError: If layer is not 2D
    """
    layer = np.asarray(layer)
    if layer.ndim != 2:
        raise ValueError(f"Layer mask must be 2D, got shape {layer.shape}")
    return layer > threshold


def features_to_layer(
    processor: VectorFeatureProcessor,
    features: Sequence[FeatureGeometry],
    line_width_pixels: Optional[float] = None,
) -> np.ndarray:
    """
    Build a complete layer mask from features: filled polygons plus, when a
    width is given, line corridors.
    """
    mask = processor.polygons_to_mask(features)
    if line_width_pixels:
        paths = processor.lines_to_paths(features)
        mask = np.maximum(mask, rasterize_paths(paths, line_width_pixels, processor.shape))
    return mask
