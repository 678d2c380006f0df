"""
Heightmap loading for terrain generation.

A heightmap can come from an in-memory array, a georeferenced raster readable
by rasterio (GeoTIFF, HGT, ...), or a 16-bit greyscale PNG whose values are
scaled to meters by a maximum height. The result is resampled to the terrain
size when needed.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
import rasterio
from PIL import Image, UnidentifiedImageError
from scipy import ndimage

from src.roadterrain.exceptions import HeightmapSourceError
from src.roadterrain.geo import GeoTransform

logger = logging.getLogger(__name__)

PNG_SUFFIXES = (".png",)
UINT16_MAX = 65535.0


@dataclass
class HeightmapSource:
    """
    Where the heightmap comes from.

    Attributes:
        array: In-memory elevation grid
        path: Raster or PNG file
        max_height: Elevation of the brightest PNG value (meters)
        band: Raster band to read (1-based)
    """

    array: Optional[np.ndarray] = None
    path: Optional[Union[str, Path]] = None
    max_height: float = 1000.0
    band: int = 1

    def __post_init__(self):
        if self.array is None and self.path is None:
            raise ValueError("HeightmapSource needs an array or a path")

    @property
    def is_georeferenced(self) -> bool:
        return self.path is not None and Path(self.path).suffix.lower() not in PNG_SUFFIXES


@dataclass
class LoadedHeightmap:
    """Heightmap plus what is known about its georeferencing."""

    heightmap: np.ndarray
    geotransform: Optional[GeoTransform] = None
    projection: Optional[str] = None
    native_size: Optional[Tuple[int, int]] = None

    @property
    def elevation_range(self) -> Tuple[float, float]:
        return float(np.nanmin(self.heightmap)), float(np.nanmax(self.heightmap))


def _read_raster(path: Path, band: int) -> LoadedHeightmap:
    try:
        with rasterio.open(path) as src:
            data = src.read(band).astype(np.float64)
            nodata = src.nodata
            geotransform = GeoTransform.from_affine(src.transform)
            projection = src.crs.to_wkt() if src.crs is not None else None
            native_size = (src.width, src.height)
    except rasterio.errors.RasterioIOError as e:
        raise HeightmapSourceError(f"Cannot read heightmap raster {path}: {e}") from e
    except IndexError as e:
        raise HeightmapSourceError(f"Heightmap raster {path} has no band {band}") from e

    if nodata is not None:
        invalid = data == nodata
        if invalid.any():
            fill = float(np.min(data[~invalid])) if (~invalid).any() else 0.0
            logger.warning(f"Filled {int(invalid.sum())} nodata pixels with {fill:.2f}")
            data[invalid] = fill

    logger.info(f"Loaded raster heightmap {path.name}: {data.shape[1]}x{data.shape[0]}")
    return LoadedHeightmap(data, geotransform, projection, native_size)


def _read_png(path: Path, max_height: float) -> LoadedHeightmap:
    try:
        with Image.open(path) as img:
            data = np.array(img)
    except (OSError, UnidentifiedImageError) as e:
        raise HeightmapSourceError(f"Cannot read heightmap image {path}: {e}") from e

    if data.ndim == 3:
        data = data[..., 0]
    scale = UINT16_MAX if data.dtype != np.uint8 else 255.0
    heightmap = data.astype(np.float64) / scale * max_height
    logger.info(f"Loaded PNG heightmap {path.name}: {data.shape[1]}x{data.shape[0]} ({data.dtype})")
    return LoadedHeightmap(heightmap, native_size=(data.shape[1], data.shape[0]))


def resample_heightmap(heightmap: np.ndarray, terrain_size: int) -> np.ndarray:
    """Resample to terrain_size x terrain_size with bilinear interpolation."""
    h, w = heightmap.shape
    if (h, w) == (terrain_size, terrain_size):
        return heightmap
    zoom = (terrain_size / h, terrain_size / w)
    resampled = ndimage.zoom(heightmap, zoom, order=1)
    # zoom can be off by one from rounding
    resampled = resampled[:terrain_size, :terrain_size]
    if resampled.shape != (terrain_size, terrain_size):
        resampled = np.pad(
            resampled,
            ((0, terrain_size - resampled.shape[0]), (0, terrain_size - resampled.shape[1])),
            mode="edge",
        )
    logger.info(f"Resampled heightmap {w}x{h} -> {terrain_size}x{terrain_size}")
    return resampled


def load_heightmap(source: HeightmapSource, terrain_size: Optional[int] = None) -> LoadedHeightmap:
    """
    Load a heightmap from any supported source.

    Args:
        source: Array or file to load
        terrain_size: Resample to this square size when given

    Returns:
        LoadedHeightmap with a float64 grid

    Raises:
        HeightmapSourceError: If the source is missing, unreadable or not 2D
    """
    if source.array is not None:
        heightmap = np.asarray(source.array, dtype=np.float64)
        loaded = LoadedHeightmap(heightmap, native_size=(heightmap.shape[-1], heightmap.shape[0]))
    else:
        path = Path(source.path)
        if not path.exists():
            raise HeightmapSourceError(f"Heightmap file does not exist: {path}")
        if path.suffix.lower() in PNG_SUFFIXES:
            loaded = _read_png(path, source.max_height)
        else:
            loaded = _read_raster(path, source.band)

    if loaded.heightmap.ndim != 2 or loaded.heightmap.size == 0:
        raise HeightmapSourceError(f"Heightmap must be a non-empty 2D grid, got shape {loaded.heightmap.shape}")
    if not np.all(np.isfinite(loaded.heightmap)):
        raise HeightmapSourceError("Heightmap contains non-finite values")

    if terrain_size is not None:
        loaded.heightmap = resample_heightmap(loaded.heightmap, terrain_size)

    low, high = loaded.elevation_range
    logger.info(f"  Value range: {low:.2f} to {high:.2f}")
    return loaded
