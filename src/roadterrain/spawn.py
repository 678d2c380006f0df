"""Suggested player spawn point on the generated road network."""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from src.roadterrain.network import RoadNetwork

logger = logging.getLogger(__name__)

MIN_SPAWN_ROAD_METERS = 20.0
SPAWN_FRACTION = 0.05
SPAWN_CLEARANCE = 0.5


@dataclass(frozen=True)
class SpawnPoint:
    """
    World-space spawn suggestion.

    Position is relative to the terrain centre in meters, with Y pointing up
    the image (bottom-left convention). Heading is in degrees counter-clockwise
    from +X.
    """

    x: float
    y: float
    z: float
    heading_degrees: float
    is_on_road: bool
    material_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "position": [self.x, self.y, self.z],
            "heading_degrees": self.heading_degrees,
            "is_on_road": self.is_on_road,
            "material_name": self.material_name,
        }


def _world_position(heightmap, px, py, meters_per_pixel, base_height):
    h, w = heightmap.shape
    col = int(np.clip(round(px), 0, w - 1))
    row = int(np.clip(round(py), 0, h - 1))
    x = (px - w / 2.0) * meters_per_pixel
    y = ((h - 1 - py) - h / 2.0) * meters_per_pixel
    z = float(heightmap[row, col]) + base_height + SPAWN_CLEARANCE
    return x, y, z


def find_spawn_point(
    networks: Sequence[RoadNetwork],
    heightmap: np.ndarray,
    meters_per_pixel: float,
    base_height: float = 0.0,
) -> SpawnPoint:
    """
    Pick a spawn point near the start of the widest, then longest, road.

    Roads shorter than 20 m are ignored. With no usable road the terrain
    centre is returned with is_on_road False.

    Args:
        networks: Road networks of the run
        heightmap: Final heightmap
        meters_per_pixel: Ground resolution
        base_height: Offset added to the terrain elevation

    Returns:
        SpawnPoint
    """
    candidates = []
    for network in networks:
        for path in network.paths:
            if path.spline is None:
                continue
            length_m = path.spline.length * meters_per_pixel
            if length_m >= MIN_SPAWN_ROAD_METERS:
                candidates.append((path.width_meters, length_m, network.material_name, path))

    if not candidates:
        h, w = heightmap.shape
        x, y, z = _world_position(heightmap, (w - 1) / 2.0, (h - 1) / 2.0, meters_per_pixel, base_height)
        logger.info("No road long enough for spawning, using terrain centre")
        return SpawnPoint(x, y, z, 0.0, False)

    width, length_m, material, path = max(candidates, key=lambda c: (c[0], c[1]))
    distance = path.spline.length * SPAWN_FRACTION
    px, py = path.spline.point_at(distance)
    tx, ty = path.spline.tangent_at(distance)

    x, y, z = _world_position(heightmap, px, py, meters_per_pixel, base_height)
    # Image Y grows downward
    heading = math.degrees(math.atan2(-ty, tx))
    logger.info(f"Spawn on '{material}' road ({width:.1f} m wide, {length_m:.0f} m long)")
    return SpawnPoint(x, y, z, heading, True, material)
