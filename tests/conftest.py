"""Pytest configuration and fixtures for road terrain tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import pytest
import numpy as np


TERRAIN_SIZE = 128

# WGS84 box that maps onto a 128x128 terrain, 0.1 degree on each side
BBOX_WEST, BBOX_SOUTH, BBOX_EAST, BBOX_NORTH = -83.10, 42.30, -83.00, 42.40


@pytest.fixture
def flat_heightmap():
    """256x256 terrain at a constant 100 m."""
    return np.full((256, 256), 100.0)


@pytest.fixture
def sloped_heightmap():
    """128x128 terrain rising along x with a gentle wave along y."""
    y, x = np.mgrid[0:TERRAIN_SIZE, 0:TERRAIN_SIZE]
    return 100.0 + 0.2 * x + 5.0 * np.sin(y / 10.0)


@pytest.fixture
def peaked_heightmap():
    """Gaussian hill on a 100 m plain, 128x128."""
    x = np.linspace(-10, 10, TERRAIN_SIZE)
    X, Y = np.meshgrid(x, x)
    return 100.0 + 50.0 * np.exp(-(X**2 + Y**2) / 20.0)


@pytest.fixture
def straight_road_layer():
    """128x128 layer (0-255) with a horizontal 5 px road across the middle."""
    layer = np.zeros((TERRAIN_SIZE, TERRAIN_SIZE), dtype=np.uint8)
    layer[62:67, 10:118] = 255
    return layer


@pytest.fixture
def crossing_road_paths():
    """A horizontal and a vertical centerline crossing at (64, 64)."""
    horizontal = np.array([[12.0, 64.0], [116.0, 64.0]])
    vertical = np.array([[64.0, 12.0], [64.0, 116.0]])
    return horizontal, vertical


@pytest.fixture
def road_bbox():
    """Bounding box matching the feature collection fixture."""
    from src.roadterrain.geo import GeoBoundingBox

    return GeoBoundingBox(BBOX_WEST, BBOX_SOUTH, BBOX_EAST, BBOX_NORTH)


@pytest.fixture
def road_feature_collection():
    """
    Two crossing roads plus a park polygon, in WGS84.

    In a 128x128 terrain over road_bbox the primary road runs along y=64 and
    the track along x=64.
    """
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {"highway": "primary", "name": "Main Street"},
                "geometry": {
                    "type": "LineString",
                    "coordinates": [[-83.09, 42.35], [-83.05, 42.35], [-83.01, 42.35]],
                },
            },
            {
                "type": "Feature",
                "properties": {"highway": "track"},
                "geometry": {
                    "type": "LineString",
                    "coordinates": [[-83.05, 42.39], [-83.05, 42.31]],
                },
            },
            {
                "type": "Feature",
                "properties": {"leisure": "park"},
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [
                        [[-83.09, 42.39], [-83.07, 42.39], [-83.07, 42.37], [-83.09, 42.37], [-83.09, 42.39]]
                    ],
                },
            },
            {
                "type": "Feature",
                "properties": {"amenity": "bench"},
                "geometry": {"type": "Point", "coordinates": [-83.05, 42.35]},
            },
        ],
    }


@pytest.fixture
def cache_dir(tmp_path):
    """Temporary cache directory for tests."""
    cache = tmp_path / "cache"
    cache.mkdir()
    return cache


@pytest.fixture
def project_root():
    """Get the project root directory."""
    return Path(__file__).parent.parent
