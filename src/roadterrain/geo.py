"""
Geographic coordinate handling.

Maps between geographic coordinates (WGS84 longitude/latitude, as delivered by
map feature sources), a raster's native projected or geographic space, and
destination terrain pixel space.

Pixel conventions:
- Image pixel space has its origin at the top-left corner, x to the right and
  y downward. Heightmap arrays are indexed [y, x] in this space.
- Terrain pixel space has its origin at the bottom-left corner; convert with
  CoordinateTransformer.to_terrain_y().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
from affine import Affine
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError, ProjError

logger = logging.getLogger(__name__)

METERS_PER_DEGREE_LAT = 111320.0

# Pixel sizes below this are degrees, not meters
GEOGRAPHIC_PIXEL_SIZE_LIMIT = 0.1

ArrayLike = Union[float, np.ndarray]


def meters_per_degree(latitude: float) -> Tuple[float, float]:
    """
    Approximate ground distance of one degree at a latitude.

    Args:
        latitude: Latitude in degrees

    Returns:
        (meters per degree of longitude, meters per degree of latitude)
    """
    return METERS_PER_DEGREE_LAT * np.cos(np.radians(latitude)), METERS_PER_DEGREE_LAT


@dataclass(frozen=True)
class GeoBoundingBox:
    """WGS84 bounding box in degrees."""

    min_longitude: float
    min_latitude: float
    max_longitude: float
    max_latitude: float

    def __post_init__(self):
        if self.min_longitude > self.max_longitude:
            raise ValueError(
                f"min_longitude ({self.min_longitude}) > max_longitude ({self.max_longitude})"
            )
        if self.min_latitude > self.max_latitude:
            raise ValueError(
                f"min_latitude ({self.min_latitude}) > max_latitude ({self.max_latitude})"
            )

    @classmethod
    def from_south_west_north_east(cls, bbox: Tuple[float, float, float, float]) -> "GeoBoundingBox":
        """Build from a (south, west, north, east) tuple."""
        south, west, north, east = bbox
        return cls(west, south, east, north)

    @property
    def width(self) -> float:
        return self.max_longitude - self.min_longitude

    @property
    def height(self) -> float:
        return self.max_latitude - self.min_latitude

    @property
    def center(self) -> Tuple[float, float]:
        """(longitude, latitude) of the box center."""
        return (
            (self.min_longitude + self.max_longitude) / 2.0,
            (self.min_latitude + self.max_latitude) / 2.0,
        )

    def contains(self, longitude: float, latitude: float) -> bool:
        return (
            self.min_longitude <= longitude <= self.max_longitude
            and self.min_latitude <= latitude <= self.max_latitude
        )

    def intersects(self, other: "GeoBoundingBox") -> bool:
        return not (
            other.min_longitude > self.max_longitude
            or other.max_longitude < self.min_longitude
            or other.min_latitude > self.max_latitude
            or other.max_latitude < self.min_latitude
        )

    def to_overpass_bbox(self) -> str:
        """Overpass QL bbox string: south,west,north,east."""
        return (
            f"{self.min_latitude:.6f},{self.min_longitude:.6f},"
            f"{self.max_latitude:.6f},{self.max_longitude:.6f}"
        )

    def to_file_name_string(self) -> str:
        """Filesystem-safe identifier, used as a cache key."""
        parts = [self.min_latitude, self.min_longitude, self.max_latitude, self.max_longitude]
        return "_".join(f"{v:.6f}".replace("-", "m").replace(".", "p") for v in parts)

    def __str__(self) -> str:
        return (
            f"[{self.min_longitude:.6f}, {self.min_latitude:.6f}] - "
            f"[{self.max_longitude:.6f}, {self.max_latitude:.6f}]"
        )


@dataclass(frozen=True)
class GeoTransform:
    """
    Affine pixel-to-native mapping of a source raster.

    Coefficients follow the GDAL ordering:
    (origin_x, pixel_size_x, rotation_x, origin_y, rotation_y, pixel_size_y).
    """

    origin_x: float
    pixel_size_x: float
    rotation_x: float
    origin_y: float
    rotation_y: float
    pixel_size_y: float

    @classmethod
    def from_gdal(cls, coefficients) -> "GeoTransform":
        if len(coefficients) != 6:
            raise ValueError(f"GeoTransform needs 6 coefficients, got {len(coefficients)}")
        return cls(*[float(c) for c in coefficients])

    @classmethod
    def from_affine(cls, transform: Affine) -> "GeoTransform":
        return cls(transform.c, transform.a, transform.b, transform.f, transform.d, transform.e)

    def to_gdal(self) -> Tuple[float, ...]:
        return (
            self.origin_x,
            self.pixel_size_x,
            self.rotation_x,
            self.origin_y,
            self.rotation_y,
            self.pixel_size_y,
        )

    @property
    def affine(self) -> Affine:
        return Affine(
            self.pixel_size_x,
            self.rotation_x,
            self.origin_x,
            self.rotation_y,
            self.pixel_size_y,
            self.origin_y,
        )

    @property
    def determinant(self) -> float:
        return self.pixel_size_x * self.pixel_size_y - self.rotation_x * self.rotation_y

    def pixel_to_native(self, col: ArrayLike, row: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        x = self.origin_x + col * self.pixel_size_x + row * self.rotation_x
        y = self.origin_y + col * self.rotation_y + row * self.pixel_size_y
        return x, y

    def native_to_pixel(self, x: ArrayLike, y: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """
        Invert the transform.

        A degenerate transform (|det| < 1e-15) is treated as identity so callers
        get a usable, if meaningless, mapping instead of a division by zero.
        """
        det = self.determinant
        if abs(det) < 1e-15:
            logger.warning("GeoTransform is degenerate, using identity inverse")
            return x, y
        dx = x - self.origin_x
        dy = y - self.origin_y
        col = (dx * self.pixel_size_y - dy * self.rotation_x) / det
        row = (dy * self.pixel_size_x - dx * self.rotation_y) / det
        return col, row


def is_geographic_crs(geotransform: GeoTransform) -> bool:
    """Pixel sizes below 0.1 are taken to be degrees."""
    return abs(geotransform.pixel_size_x) < GEOGRAPHIC_PIXEL_SIZE_LIMIT


class CoordinateTransformer:
    """
    Bidirectional WGS84 <-> terrain pixel mapping for one source raster.

    Handles a crop window inside the source raster and scaling from the crop
    size to the terrain size. When the source projection cannot be built the
    transformer falls back to linear interpolation inside a WGS84 bounding box
    and marks itself as degraded; without a bounding box it becomes
    unavailable and callers must skip geographic features.

    Attributes:
        geotransform: Source raster transform
        native_crs: Parsed source CRS, or None
        degraded: True when running on the linear bounding-box fallback
        available: False when no geo mapping can be produced at all
        warnings: Human-readable degraded-mode messages
    """

    def __init__(
        self,
        geotransform: GeoTransform,
        native_size: Tuple[int, int],
        terrain_size: Union[int, Tuple[int, int]],
        projection: Optional[str] = None,
        crop_offset: Tuple[int, int] = (0, 0),
        crop_size: Optional[Tuple[int, int]] = None,
        bounding_box: Optional[GeoBoundingBox] = None,
        source_crs: str = "EPSG:4326",
    ):
        """
        Args:
            geotransform: Affine transform of the source raster
            native_size: (width, height) of the source raster in pixels
            terrain_size: Terrain edge length, or (width, height)
            projection: WKT, PROJ string or EPSG code of the source raster
            crop_offset: (x, y) pixel offset of the crop window in the source
            crop_size: (width, height) of the crop window; defaults to the
                remainder of the raster after the offset
            bounding_box: WGS84 bounds of the crop window, used for the
                linear fallback
            source_crs: CRS of incoming feature coordinates
        """
        if isinstance(terrain_size, (int, np.integer)):
            terrain_size = (int(terrain_size), int(terrain_size))
        if min(terrain_size) <= 0 or min(native_size) <= 0:
            raise ValueError(
                f"Sizes must be positive (native={native_size}, terrain={terrain_size})"
            )

        self.geotransform = geotransform
        self.native_width, self.native_height = native_size
        self.terrain_width, self.terrain_height = terrain_size
        self.crop_x, self.crop_y = crop_offset
        if crop_size is None:
            crop_size = (self.native_width - self.crop_x, self.native_height - self.crop_y)
        self.crop_width, self.crop_height = crop_size
        self.scale_x = self.terrain_width / self.crop_width
        self.scale_y = self.terrain_height / self.crop_height
        self.bounding_box = bounding_box
        self.source_crs = source_crs
        self.is_geographic = is_geographic_crs(geotransform)

        self.native_crs: Optional[CRS] = None
        self.degraded = False
        self.available = True
        self.warnings: list[str] = []
        self._forward: Optional[Transformer] = None
        self._inverse: Optional[Transformer] = None

        self._build_projection(projection)

    @classmethod
    def from_raster(
        cls,
        path: Union[str, Path],
        terrain_size: Union[int, Tuple[int, int]],
        **kwargs,
    ) -> "CoordinateTransformer":
        """Read transform, projection and size from a georeferenced raster."""
        import rasterio

        with rasterio.open(path) as src:
            geotransform = GeoTransform.from_affine(src.transform)
            projection = src.crs.to_wkt() if src.crs is not None else None
            native_size = (src.width, src.height)

        return cls(geotransform, native_size, terrain_size, projection=projection, **kwargs)

    def _build_projection(self, projection: Optional[str]) -> None:
        if projection:
            try:
                self.native_crs = CRS.from_user_input(projection)
                source = CRS.from_user_input(self.source_crs)
                if not self.native_crs.equals(source):
                    self._forward = Transformer.from_crs(source, self.native_crs, always_xy=True)
                    self._inverse = Transformer.from_crs(self.native_crs, source, always_xy=True)
                return
            except (CRSError, ProjError) as e:
                self._degrade(f"Could not build projection from source raster: {e}")
                return

        if self.is_geographic:
            # No projection given but the raster is in degrees: assume WGS84
            logger.debug("No projection supplied, treating geographic raster as WGS84")
            return

        self._degrade("Source raster has no projection information")

    def _degrade(self, reason: str) -> None:
        self.native_crs = None
        self._forward = None
        self._inverse = None
        self.degraded = True
        if self.bounding_box is not None:
            message = f"{reason}; using linear bounding-box interpolation"
        else:
            self.available = False
            message = f"{reason}; geographic features will be skipped"
        self.warnings.append(message)
        logger.warning(message)

    @property
    def uses_linear_fallback(self) -> bool:
        return self.degraded and self.available

    def geo_to_native(self, lon: ArrayLike, lat: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        if self._forward is None:
            return lon, lat
        return self._forward.transform(lon, lat)

    def native_to_geo(self, x: ArrayLike, y: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        if self._inverse is None:
            return x, y
        return self._inverse.transform(x, y)

    def geo_to_terrain_pixel(self, lon: ArrayLike, lat: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """
        Map WGS84 coordinates to image pixel space at terrain resolution.

        Returns:
            (x, y) with origin at the top-left terrain corner

        Raises:
            RuntimeError: If the transformer is unavailable
        """
        if not self.available:
            raise RuntimeError("Coordinate transformer is unavailable: " + "; ".join(self.warnings))

        lon = np.asarray(lon, dtype=np.float64)
        lat = np.asarray(lat, dtype=np.float64)

        if self.uses_linear_fallback:
            bbox = self.bounding_box
            x = (lon - bbox.min_longitude) / bbox.width * self.terrain_width
            y = (bbox.max_latitude - lat) / bbox.height * self.terrain_height
            return x, y

        native_x, native_y = self.geo_to_native(lon, lat)
        col, row = self.geotransform.native_to_pixel(
            np.asarray(native_x, dtype=np.float64), np.asarray(native_y, dtype=np.float64)
        )
        x = (col - self.crop_x) * self.scale_x
        y = (row - self.crop_y) * self.scale_y
        return x, y

    def terrain_pixel_to_geo(self, x: ArrayLike, y: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """Inverse of geo_to_terrain_pixel."""
        if not self.available:
            raise RuntimeError("Coordinate transformer is unavailable: " + "; ".join(self.warnings))

        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)

        if self.uses_linear_fallback:
            bbox = self.bounding_box
            lon = bbox.min_longitude + x / self.terrain_width * bbox.width
            lat = bbox.max_latitude - y / self.terrain_height * bbox.height
            return lon, lat

        col = x / self.scale_x + self.crop_x
        row = y / self.scale_y + self.crop_y
        native_x, native_y = self.geotransform.pixel_to_native(col, row)
        return self.native_to_geo(native_x, native_y)

    def to_terrain_y(self, y: ArrayLike) -> ArrayLike:
        """Flip an image-space row to the bottom-left terrain convention."""
        return self.terrain_height - 1 - y

    @property
    def center_latitude(self) -> float:
        if self.uses_linear_fallback:
            return self.bounding_box.center[1]
        _, lat = self.terrain_pixel_to_geo(self.terrain_width / 2.0, self.terrain_height / 2.0)
        return float(lat)

    @property
    def meters_per_pixel(self) -> float:
        """Ground size of one terrain pixel along x."""
        native_pixel = abs(self.geotransform.pixel_size_x)
        if self.uses_linear_fallback:
            lon_scale, _ = meters_per_degree(self.bounding_box.center[1])
            return float(self.bounding_box.width * lon_scale / self.terrain_width)
        if self.is_geographic:
            lon_scale, _ = meters_per_degree(self.center_latitude)
            native_pixel *= lon_scale
        return float(native_pixel / self.scale_x)

    def terrain_bounding_box(self) -> GeoBoundingBox:
        """WGS84 bounds of the terrain area, from its four corners."""
        xs = np.array([0.0, self.terrain_width, 0.0, self.terrain_width])
        ys = np.array([0.0, 0.0, self.terrain_height, self.terrain_height])
        lons, lats = self.terrain_pixel_to_geo(xs, ys)
        return GeoBoundingBox(
            float(np.min(lons)), float(np.min(lats)), float(np.max(lons)), float(np.max(lats))
        )
