"""
Junction detection and elevation harmonization across road networks.

Detection works on the cross-sections of every spline network at once, so
roads of different materials that meet are found together:

- path ends closer than the detection radius are clustered (union-find)
- a cluster (or a single end) that lands on the middle of another path
  becomes a T-junction with that path's nearest cross-section
- paths whose centerlines cross away from any end add a mid-spline crossing

Harmonization replaces the converging target elevations with one
inverse-distance weighted elevation and blends it back into each path over
the junction blend distance. Ends that meet nothing are optionally tapered
toward the original terrain.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from scipy.spatial import cKDTree
from shapely.geometry import LineString

from src.roadterrain.blending import apply_blend
from src.roadterrain.network import RoadNetwork, RoadPath
from src.roadterrain.parameters import JunctionHarmonizationParameters

logger = logging.getLogger(__name__)

JUNCTION_KINDS = ("endpoint", "t_junction", "y_junction", "crossroads", "complex", "mid_spline_crossing")

IDW_EPSILON = 0.1
CROSSING_DEDUP_FACTOR = 0.5
STRAIGHT_THROUGH_DEGREES = 30.0

PathKey = Tuple[int, int]


@dataclass
class JunctionParticipant:
    """
    One path taking part in a junction.

    Attributes:
        material_index: Material owning the path
        path_id: Path within that material's network
        section_index: Local index of the cross-section closest to the junction
        end: "start" or "end" when the path terminates here, None for mid-path
    """

    material_index: int
    path_id: int
    section_index: int
    end: Optional[str] = None

    @property
    def key(self) -> PathKey:
        return (self.material_index, self.path_id)


@dataclass
class JunctionSite:
    """
    A place where two or more paths meet.

    Attributes:
        id: Stable id (detection order)
        position: (x, y) pixel position
        kind: One of JUNCTION_KINDS
        participants: Paths meeting here
        target_elevation: Harmonized elevation (set by JunctionHarmonizer)
        is_excluded: Excluded junctions keep their original targets
        exclusion_reason: Free text recorded by whoever excluded it
    """

    id: int
    position: np.ndarray
    kind: str
    participants: List[JunctionParticipant] = field(default_factory=list)
    target_elevation: Optional[float] = None
    is_excluded: bool = False
    exclusion_reason: str = ""

    @property
    def materials(self) -> Set[int]:
        return {p.material_index for p in self.participants}

    @property
    def is_cross_material(self) -> bool:
        return len(self.materials) > 1

    def exclude(self, reason: str = "") -> None:
        self.is_excluded = True
        self.exclusion_reason = reason

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": [float(v) for v in self.position],
            "kind": self.kind,
            "participants": [
                {"material_index": p.material_index, "path_id": p.path_id, "section_index": p.section_index, "end": p.end}
                for p in self.participants
            ],
            "target_elevation": self.target_elevation,
            "is_excluded": self.is_excluded,
            "exclusion_reason": self.exclusion_reason,
        }


def _collect_paths(networks: Sequence[RoadNetwork]) -> Dict[PathKey, RoadPath]:
    paths = {}
    for network in networks:
        if not network.supports_junctions:
            continue
        for path in network.paths:
            if path.sections:
                paths[(network.material_index, path.path_id)] = path
    return paths


def _centers(path: RoadPath) -> np.ndarray:
    return np.array([s.center for s in path.sections])


def _find_root(parent: List[int], i: int) -> int:
    while parent[i] != i:
        parent[i] = parent[parent[i]]
        i = parent[i]
    return i


class NetworkJunctionDetector:
    """
    Finds junctions across all road networks of a generation run.

    Attributes:
        radius_pixels: Detection radius in pixels
        cross_material: Whether paths of different materials may share a junction
    """

    def __init__(
        self,
        params: Optional[JunctionHarmonizationParameters] = None,
        meters_per_pixel: float = 1.0,
    ):
        params = params or JunctionHarmonizationParameters()
        if meters_per_pixel <= 0:
            raise ValueError(f"meters_per_pixel must be positive, got {meters_per_pixel}")
        self.radius_pixels = params.junction_detection_radius_meters / meters_per_pixel
        self.cross_material = params.enable_cross_material_harmonization

    def _compatible(self, a: PathKey, b: PathKey) -> bool:
        return self.cross_material or a[0] == b[0]

    def detect(self, networks: Sequence[RoadNetwork]) -> List[JunctionSite]:
        """
        Detect junctions between every pair of spline paths.

        Args:
            networks: Built road networks; mask-only networks are ignored

        Returns:
            Junctions ordered by detection, ids 0..N-1
        """
        paths = _collect_paths(networks)
        if not paths:
            return []

        keys = sorted(paths)
        centers = {k: _centers(paths[k]) for k in keys}
        trees = {k: cKDTree(centers[k]) for k in keys}

        # Path ends: (key, "start"/"end", section index, position)
        ends = []
        for k in keys:
            pts = centers[k]
            ends.append((k, "start", 0, pts[0]))
            ends.append((k, "end", len(pts) - 1, pts[-1]))

        parent = list(range(len(ends)))
        positions = np.array([e[3] for e in ends])
        for a, b in sorted(cKDTree(positions).query_pairs(self.radius_pixels)):
            # A path only meets itself when it closes into a loop
            if a // 2 == b // 2 and paths[ends[a][0]].length_pixels <= 2 * self.radius_pixels:
                continue
            if not self._compatible(ends[a][0], ends[b][0]):
                continue
            ra, rb = _find_root(parent, a), _find_root(parent, b)
            if ra != rb:
                parent[max(ra, rb)] = min(ra, rb)

        clusters: Dict[int, List[int]] = {}
        for i in range(len(ends)):
            clusters.setdefault(_find_root(parent, i), []).append(i)

        junctions: List[JunctionSite] = []
        for root in sorted(clusters):
            members = clusters[root]
            member_keys = {ends[i][0] for i in members}
            position = positions[members].mean(axis=0)
            participants = [JunctionParticipant(ends[i][0][0], ends[i][0][1], ends[i][2], ends[i][1]) for i in members]

            for k in keys:
                if k in member_keys or not any(self._compatible(k, mk) for mk in member_keys):
                    continue
                distance, idx = trees[k].query(position)
                last = len(centers[k]) - 1
                if distance <= self.radius_pixels and 0 < idx < last:
                    participants.append(JunctionParticipant(k[0], k[1], int(idx), None))

            if len(participants) < 2:
                continue
            junctions.append(
                JunctionSite(
                    id=len(junctions),
                    position=position,
                    kind=self._classify(participants, paths),
                    participants=participants,
                )
            )

        self._add_crossings(junctions, keys, paths, centers, trees)

        logger.info(
            f"Detected {len(junctions)} junctions "
            f"({sum(j.is_cross_material for j in junctions)} cross-material)"
        )
        return junctions

    def _add_crossings(self, junctions, keys, paths, centers, trees) -> None:
        seen: Set[Tuple[PathKey, PathKey, int, int]] = set()
        min_separation = CROSSING_DEDUP_FACTOR * self.radius_pixels

        for i, ka in enumerate(keys):
            if len(centers[ka]) < 2:
                continue
            line_a = LineString(centers[ka])
            for kb in keys[i + 1 :]:
                if len(centers[kb]) < 2 or not self._compatible(ka, kb):
                    continue
                hit = line_a.intersection(LineString(centers[kb]))
                if hit.is_empty:
                    continue
                points = [g for g in getattr(hit, "geoms", [hit]) if g.geom_type == "Point"]
                for point in points:
                    position = np.array([point.x, point.y])
                    key = (ka, kb, int(round(point.x)), int(round(point.y)))
                    if key in seen:
                        continue
                    seen.add(key)
                    if any(np.linalg.norm(j.position - position) < min_separation for j in junctions):
                        continue
                    if any(self._joins(j, ka, kb, position) for j in junctions):
                        continue
                    participants = [
                        JunctionParticipant(k[0], k[1], int(trees[k].query(position)[1]), None) for k in (ka, kb)
                    ]
                    junctions.append(
                        JunctionSite(len(junctions), position, "mid_spline_crossing", participants)
                    )

    def _joins(self, junction: JunctionSite, ka: PathKey, kb: PathKey, position: np.ndarray) -> bool:
        """Whether junction already connects both paths near position."""
        keys = {p.key for p in junction.participants}
        return (
            ka in keys
            and kb in keys
            and np.linalg.norm(junction.position - position) <= self.radius_pixels
        )

    @staticmethod
    def _classify(participants: List[JunctionParticipant], paths: Dict[PathKey, RoadPath]) -> str:
        arms = sum(1 if p.end is not None else 2 for p in participants)
        if arms == 2:
            return "endpoint"
        if arms == 3:
            if any(p.end is None for p in participants):
                return "t_junction"
            directions = []
            for p in participants:
                sections = paths[p.key].sections
                inner = sections[min(len(sections) - 1, 3)] if p.end == "start" else sections[max(0, len(sections) - 4)]
                v = inner.center - sections[p.section_index].center
                n = np.linalg.norm(v)
                directions.append(v / n if n > 0 else v)
            for a in range(3):
                for b in range(a + 1, 3):
                    angle = np.degrees(np.arccos(np.clip(np.dot(directions[a], directions[b]), -1.0, 1.0)))
                    if 180.0 - angle <= STRAIGHT_THROUGH_DEGREES:
                        return "t_junction"
            return "y_junction"
        if arms == 4:
            return "crossroads"
        return "complex"


class JunctionHarmonizer:
    """
    Reconciles target elevations at junctions and tapers dangling ends.

    Attributes:
        params: Blend distance, blend function and endpoint taper settings
        meters_per_pixel: Ground resolution
    """

    def __init__(
        self,
        params: Optional[JunctionHarmonizationParameters] = None,
        meters_per_pixel: float = 1.0,
    ):
        self.params = params or JunctionHarmonizationParameters()
        self.meters_per_pixel = meters_per_pixel

    def harmonize(self, networks: Sequence[RoadNetwork], junctions: Sequence[JunctionSite]) -> Set[int]:
        """
        Rewrite cross-section target elevations in place.

        Every call starts from the pre-harmonization targets recorded on the
        sections the first time, so harmonizing again after changing junction
        exclusions does not build on an earlier result.

        Args:
            networks: Built road networks
            junctions: Detected junctions; excluded ones are skipped

        Returns:
            Material indices whose targets differ from the pre-harmonization targets
        """
        paths = _collect_paths(networks)
        if not paths:
            return set()

        for path in paths.values():
            for section in path.sections:
                if section.smoothed_elevation is None:
                    section.smoothed_elevation = section.target_elevation

        original = {k: np.array([s.smoothed_elevation for s in p.sections]) for k, p in paths.items()}
        best_distance = {k: np.full(len(v), np.inf) for k, v in original.items()}
        best_value = {k: v.copy() for k, v in original.items()}

        blend_distance = self.params.junction_blend_distance_meters
        active = [j for j in junctions if not j.is_excluded]
        for junction in junctions:
            if junction.is_excluded:
                junction.target_elevation = None
        for junction in active:
            elevation = self._junction_elevation(junction, paths, original)
            junction.target_elevation = elevation
            for participant in junction.participants:
                self._propagate(
                    paths[participant.key], participant.section_index, elevation,
                    original[participant.key], best_distance[participant.key],
                    best_value[participant.key], blend_distance, self.params.blend_function_type,
                )

        skipped = len(junctions) - len(active)
        if skipped:
            logger.info(f"Skipped {skipped} excluded junctions")

        tapered = 0
        if self.params.enable_endpoint_taper:
            joined = {(p.key, p.end) for j in junctions for p in j.participants if p.end is not None}
            for key, path in paths.items():
                for end, index in (("start", 0), ("end", len(path.sections) - 1)):
                    if (key, end) in joined:
                        continue
                    self._taper(path, index, best_value[key])
                    tapered += 1

        changed = set()
        for key, path in paths.items():
            values = best_value[key]
            if np.any(np.abs(values - original[key]) > 1e-9):
                changed.add(key[0])
            for section, z in zip(path.sections, values):
                section.target_elevation = float(z)

        logger.info(f"Harmonized {len(active)} junctions, tapered {tapered} dangling ends")
        return changed

    def _junction_elevation(self, junction: JunctionSite, paths, targets) -> float:
        weights, values = [], []
        for participant in junction.participants:
            section = paths[participant.key].sections[participant.section_index]
            d = float(np.linalg.norm(section.center - junction.position)) * self.meters_per_pixel
            weights.append(1.0 / (d + IDW_EPSILON))
            values.append(targets[participant.key][participant.section_index])
        weights = np.array(weights)
        return float(np.dot(weights, values) / weights.sum())

    @staticmethod
    def _propagate(path, index, elevation, original, best_distance, best_value, blend_distance, blend_type):
        along = np.array([s.distance for s in path.sections])
        d = np.abs(along - along[index])
        if blend_distance > 0:
            reach = (d < blend_distance) & (d < best_distance)
            b = np.asarray(apply_blend(d / blend_distance, blend_type))
        else:
            reach = (d == 0) & (d < best_distance)
            b = np.zeros_like(d)
        best_value[reach] = elevation * (1.0 - b[reach]) + original[reach] * b[reach]
        best_distance[reach] = d[reach]

    def _taper(self, path: RoadPath, index: int, values: np.ndarray) -> None:
        strength = self.params.endpoint_terrain_blend_strength
        taper = self.params.endpoint_taper_distance_meters
        terrain = path.sections[index].terrain_elevation
        end_elevation = values[index] * (1.0 - strength) + terrain * strength

        along = np.array([s.distance for s in path.sections])
        d = np.abs(along - along[index])
        if taper <= 0:
            values[index] = end_elevation
            return
        reach = d < taper
        b = np.asarray(apply_blend(d / taper, "quintic"))
        values[reach] = end_elevation * (1.0 - b[reach]) + values[reach] * b[reach]
