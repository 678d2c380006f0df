"""
Centerline extraction from raster road masks.

A binary road mask is thinned to a 1-pixel skeleton (skimage), turned into a
graph of endpoint and junction nodes connected by pixel runs, and the runs are
stitched into ordered paths:

1. thin the mask and drop specks smaller than 3 pixels
2. classify skeleton pixels by the number of 0->1 transitions around them
   (1 = endpoint, 2 = through, >=3 = junction); adjacent junction pixels are
   merged into one node
3. trace the runs between nodes, including closed loops
4. prune short spurs, continue straight through junctions when requested,
   bridge small gaps between dangling ends, drop short paths
5. densify and order the resulting paths deterministically

Points are (x, y) in image pixel space throughout.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy import ndimage
from scipy.spatial import cKDTree
from skimage.morphology import disk, skeletonize

from src.roadterrain.features import path_length
from src.roadterrain.parameters import SplineParameters

logger = logging.getLogger(__name__)

# Circular neighbour order: N, NE, E, SE, S, SW, W, NW
_RING = [(-1, 0), (-1, 1), (0, 1), (1, 1), (1, 0), (1, -1), (0, -1), (-1, -1)]
_ORTHOGONAL = {(-1, 0), (0, 1), (1, 0), (0, -1)}
_EIGHT_CONNECTED = np.ones((3, 3), dtype=bool)

MIN_COMPONENT_PIXELS = 3


def extract_skeleton(mask: np.ndarray, dilation_radius: int = 0) -> np.ndarray:
    """
    Thin a binary mask to a 1-pixel skeleton.

    Args:
        mask: 2D boolean road mask
        dilation_radius: Optional dilation (0-5 pixels) applied first, closing
            small holes that would otherwise become skeleton loops

    Returns:
        Boolean skeleton with components under 3 pixels removed

    Raises:
        ValueError: If mask is not 2D
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.ndim != 2:
        raise ValueError(f"Mask must be 2D, got shape {mask.shape}")

    if dilation_radius > 0:
        mask = ndimage.binary_dilation(mask, structure=disk(dilation_radius))

    skeleton = skeletonize(mask)

    labels, count = ndimage.label(skeleton, structure=_EIGHT_CONNECTED)
    if count:
        sizes = np.bincount(labels.ravel())
        small = sizes < MIN_COMPONENT_PIXELS
        small[0] = False
        skeleton[small[labels]] = False

    logger.debug(f"Skeleton: {int(skeleton.sum())} pixels in {count} components")
    return skeleton


def transition_counts(skeleton: np.ndarray) -> np.ndarray:
    """Number of 0->1 transitions walking once around each pixel's 8-neighbourhood."""
    padded = np.pad(skeleton.astype(np.int8), 1)
    h, w = skeleton.shape
    ring = [padded[1 + dy : 1 + dy + h, 1 + dx : 1 + dx + w] for dy, dx in _RING]
    counts = np.zeros((h, w), dtype=np.int8)
    for k in range(8):
        counts += (ring[k] == 0) & (ring[(k + 1) % 8] == 1)
    return counts * skeleton


@dataclass
class SkeletonNode:
    """An endpoint pixel or a cluster of adjacent junction pixels."""

    id: int
    kind: str
    pixels: List[Tuple[int, int]]
    position: np.ndarray


@dataclass
class SkeletonEdge:
    """A run of skeleton pixels between two nodes (None for a dead end or loop)."""

    points: np.ndarray
    start_node: Optional[int] = None
    end_node: Optional[int] = None

    @property
    def length(self) -> float:
        return path_length(self.points)


@dataclass
class SkeletonGraph:
    """Node/edge view of a skeleton. Transient: built and discarded per material."""

    shape: Tuple[int, int]
    nodes: List[SkeletonNode] = field(default_factory=list)
    edges: List[SkeletonEdge] = field(default_factory=list)

    @property
    def endpoints(self) -> List[SkeletonNode]:
        return [n for n in self.nodes if n.kind == "endpoint"]

    @property
    def junctions(self) -> List[SkeletonNode]:
        return [n for n in self.nodes if n.kind == "junction"]

    def degree(self, node_id: int) -> int:
        return sum(
            (e.start_node == node_id) + (e.end_node == node_id) for e in self.edges
        )

    @classmethod
    def from_skeleton(cls, skeleton: np.ndarray) -> "SkeletonGraph":
        """
        Trace a skeleton into nodes and edges.

        Args:
            skeleton: Boolean 1-pixel skeleton

        Returns:
            SkeletonGraph
        """
        skeleton = np.asarray(skeleton, dtype=bool)
        graph = cls(shape=skeleton.shape)
        h, w = skeleton.shape
        transitions = transition_counts(skeleton)

        node_of: Dict[Tuple[int, int], int] = {}

        for r, c in np.argwhere(skeleton & (transitions == 1)):
            node = SkeletonNode(len(graph.nodes), "endpoint", [(r, c)], np.array([c, r], float))
            graph.nodes.append(node)
            node_of[(r, c)] = node.id

        junction_labels, junction_count = ndimage.label(
            skeleton & (transitions >= 3), structure=_EIGHT_CONNECTED
        )
        for label in range(1, junction_count + 1):
            pixels = [tuple(p) for p in np.argwhere(junction_labels == label)]
            centroid = np.mean(np.array(pixels, dtype=float), axis=0)
            node = SkeletonNode(len(graph.nodes), "junction", pixels, centroid[::-1].copy())
            graph.nodes.append(node)
            for p in pixels:
                node_of[p] = node.id

        def neighbours(r, c):
            result = []
            for dy, dx in _RING:
                nr, nc = r + dy, c + dx
                if 0 <= nr < h and 0 <= nc < w and skeleton[nr, nc]:
                    result.append(((nr, nc), (dy, dx) in _ORTHOGONAL))
            return result

        visited = set()
        direct_links = set()

        for node in graph.nodes:
            own = set(node.pixels)
            starts = sorted({n for p in node.pixels for n, _ in neighbours(*p)} - own)
            for first in starts:
                if first in node_of:
                    key = tuple(sorted((node.id, node_of[first])))
                    if key in direct_links:
                        continue
                    direct_links.add(key)
                    other = graph.nodes[node_of[first]]
                    graph.edges.append(
                        SkeletonEdge(np.vstack([node.position, other.position]), node.id, other.id)
                    )
                    continue
                if first in visited:
                    continue

                run = [node.position, np.array([first[1], first[0]], float)]
                visited.add(first)
                end_node = None
                current, previous = first, None

                while True:
                    candidates = [
                        (n, ortho)
                        for n, ortho in neighbours(*current)
                        if n != previous and n not in visited
                    ]
                    arrivals = sorted(
                        n for n, _ in candidates if n in node_of and node_of[n] != node.id
                    )
                    if arrivals:
                        end_node = node_of[arrivals[0]]
                        run.append(graph.nodes[end_node].position)
                        break
                    interior = [(n, o) for n, o in candidates if n not in node_of]
                    if not interior:
                        # Only the start node is left: a loop closes on itself
                        if len(run) > 3 and any(n in own for n, _ in candidates):
                            end_node = node.id
                            run.append(node.position)
                        break
                    interior.sort(key=lambda item: (not item[1], item[0]))
                    previous, current = current, interior[0][0]
                    visited.add(current)
                    run.append(np.array([current[1], current[0]], float))

                graph.edges.append(SkeletonEdge(np.vstack(run), node.id, end_node))

        # Closed loops have no nodes at all
        remaining = skeleton.copy()
        for r, c in visited:
            remaining[r, c] = False
        for r, c in node_of:
            remaining[r, c] = False
        loop_labels, loop_count = ndimage.label(remaining, structure=_EIGHT_CONNECTED)
        for label in range(1, loop_count + 1):
            pixels = np.argwhere(loop_labels == label)[:, ::-1].astype(float)
            if len(pixels) < MIN_COMPONENT_PIXELS:
                continue
            ordered = order_points_greedy(pixels)
            graph.edges.append(SkeletonEdge(np.vstack([ordered, ordered[:1]])))

        logger.debug(
            f"Skeleton graph: {len(graph.endpoints)} endpoints, "
            f"{len(graph.junctions)} junctions, {len(graph.edges)} edges"
        )
        return graph


def order_points_greedy(points: np.ndarray) -> np.ndarray:
    """
    Order an unordered point cloud by repeatedly stepping to the nearest
    unvisited point, starting from the top-left-most point.
    """
    points = np.asarray(points, dtype=float)
    if len(points) <= 2:
        return points

    tree = cKDTree(points)
    start = int(np.lexsort((points[:, 0], points[:, 1]))[0])
    order = [start]
    used = np.zeros(len(points), dtype=bool)
    used[start] = True

    for _ in range(len(points) - 1):
        k = min(len(points), 16)
        while True:
            _, idx = tree.query(points[order[-1]], k=k)
            free = [i for i in np.atleast_1d(idx) if not used[i]]
            if free or k == len(points):
                break
            k = min(len(points), k * 2)
        nxt = free[0]
        used[nxt] = True
        order.append(nxt)

    return points[order]


def densify_path(points: np.ndarray, max_spacing: float) -> np.ndarray:
    """
    Insert evenly spaced points so no segment is longer than max_spacing.

    Args:
        points: N x 2 path
        max_spacing: Maximum distance between consecutive points

    Returns:
        Densified path containing all original points
    """
    if max_spacing <= 0:
        raise ValueError(f"max_spacing must be positive, got {max_spacing}")
    points = np.asarray(points, dtype=float)
    if len(points) < 2:
        return points

    out = [points[0]]
    for a, b in zip(points[:-1], points[1:]):
        d = float(np.linalg.norm(b - a))
        extra = int(np.ceil(d / max_spacing)) - 1
        for k in range(1, extra + 1):
            out.append(a + (b - a) * (k / (extra + 1)))
        out.append(b)
    return np.asarray(out)


def _direction_at(edge: SkeletonEdge, at_start: bool, reach: int = 5) -> np.ndarray:
    pts = edge.points if at_start else edge.points[::-1]
    k = min(reach, len(pts) - 1)
    v = pts[k] - pts[0]
    n = np.linalg.norm(v)
    return v / n if n > 0 else v


class PathOrderer:
    """
    Turns a SkeletonGraph into ordered, gap-bridged road paths.

    Attributes:
        params: Spline/skeleton settings (bridge distance, minimum length,
            junction policy, ordering mode, densify spacing)
    """

    def __init__(self, params: Optional[SplineParameters] = None):
        self.params = params or SplineParameters()

    def extract_paths(self, mask: np.ndarray) -> List[np.ndarray]:
        """Full raster route: skeletonize, build the graph and order paths."""
        skeleton = extract_skeleton(mask, self.params.skeleton_dilation_radius)
        graph = SkeletonGraph.from_skeleton(skeleton)
        return self.order(graph)

    def order(self, graph: SkeletonGraph) -> List[np.ndarray]:
        """
        Build ordered paths from a skeleton graph.

        Returns:
            List of densified N x 2 paths in deterministic order
        """
        edges = self._prune_spurs(graph)
        chains = self._link_chains(graph, edges)
        chains = self._bridge(chains)

        min_length = self.params.min_path_length_pixels
        paths = [c["points"] for c in chains if path_length(c["points"]) >= min_length]
        dropped = len(chains) - len(paths)

        paths = [densify_path(p, self.params.densify_max_spacing_pixels) for p in paths]

        if self.params.use_graph_ordering:
            paths = self._order_by_neighbourhood(paths)
        else:
            paths = self._order_greedy(paths)

        logger.info(f"Extracted {len(paths)} paths ({dropped} shorter than {min_length}px dropped)")
        return paths

    def _prune_spurs(self, graph: SkeletonGraph) -> List[SkeletonEdge]:
        """Drop short runs hanging off a junction with a free far end."""
        min_length = self.params.min_path_length_pixels
        kinds = {n.id: n.kind for n in graph.nodes}
        kept = []
        for edge in graph.edges:
            ends = [kinds.get(edge.start_node), kinds.get(edge.end_node)]
            is_spur = "junction" in ends and ends.count("junction") == 1
            if is_spur and edge.length < min_length:
                continue
            kept.append(edge)
        if len(kept) < len(graph.edges):
            logger.debug(f"Pruned {len(graph.edges) - len(kept)} spurs")
        return kept

    def _link_chains(self, graph: SkeletonGraph, edges: List[SkeletonEdge]) -> List[dict]:
        incident: Dict[int, List[Tuple[int, int]]] = {}
        for i, edge in enumerate(edges):
            if edge.start_node is not None:
                incident.setdefault(edge.start_node, []).append((i, 0))
            if edge.end_node is not None:
                incident.setdefault(edge.end_node, []).append((i, 1))

        links: Dict[Tuple[int, int], Tuple[int, int]] = {}
        threshold = self.params.junction_angle_threshold_degrees

        for node_id in sorted(incident):
            ends = incident[node_id]
            if len(ends) == 2:
                a, b = ends
                if a[0] != b[0]:
                    links[a], links[b] = b, a
                continue
            if len(ends) < 3 or not self.params.prefer_straight_through_junctions:
                continue

            candidates = []
            for x in range(len(ends)):
                for y in range(x + 1, len(ends)):
                    ea, eb = ends[x], ends[y]
                    if ea[0] == eb[0]:
                        continue
                    da = _direction_at(edges[ea[0]], ea[1] == 0)
                    db = _direction_at(edges[eb[0]], eb[1] == 0)
                    angle = np.degrees(np.arccos(np.clip(np.dot(da, db), -1.0, 1.0)))
                    deviation = 180.0 - angle
                    if deviation <= threshold:
                        candidates.append((deviation, ea, eb))
            candidates.sort(key=lambda item: item[0])
            for _, ea, eb in candidates:
                if ea in links or eb in links:
                    continue
                links[ea], links[eb] = eb, ea

        kinds = {n.id: n.kind for n in graph.nodes}

        def free(edge, at_start):
            node = edge.start_node if at_start else edge.end_node
            return kinds.get(node) != "junction"

        used = [False] * len(edges)
        chains = []

        def walk(first, entry):
            pieces, start_free = [], free(edges[first], entry == 0)
            current, enter = first, entry
            while True:
                used[current] = True
                pts = edges[current].points if enter == 0 else edges[current].points[::-1]
                pieces.append(pts if not pieces else pts[1:])
                exit_end = 1 - enter
                nxt = links.get((current, exit_end))
                if nxt is None or used[nxt[0]]:
                    end_free = free(edges[current], exit_end == 0)
                    break
                current, enter = nxt
            return {"points": np.vstack(pieces), "start_free": start_free, "end_free": end_free}

        for i in range(len(edges)):
            for end in (0, 1):
                if not used[i] and (i, end) not in links:
                    chains.append(walk(i, end))
        for i in range(len(edges)):
            if not used[i]:
                chains.append(walk(i, 0))

        return chains

    def _bridge(self, chains: List[dict]) -> List[dict]:
        """Join dangling chain ends closer than the bridge distance."""
        max_gap = self.params.bridge_endpoint_max_distance_pixels
        if max_gap <= 0:
            return chains

        bridged = 0
        while True:
            best = None
            for i in range(len(chains)):
                for j in range(i + 1, len(chains)):
                    for ei in (0, 1):
                        if not chains[i]["start_free" if ei == 0 else "end_free"]:
                            continue
                        for ej in (0, 1):
                            if not chains[j]["start_free" if ej == 0 else "end_free"]:
                                continue
                            pi = chains[i]["points"][0 if ei == 0 else -1]
                            pj = chains[j]["points"][0 if ej == 0 else -1]
                            d = float(np.linalg.norm(pi - pj))
                            if d <= max_gap and (best is None or d < best[0]):
                                best = (d, i, ei, j, ej)
            if best is None:
                break

            _, i, ei, j, ej = best
            a = chains[i]["points"] if ei == 1 else chains[i]["points"][::-1]
            b = chains[j]["points"] if ej == 0 else chains[j]["points"][::-1]
            a_start_free = chains[i]["end_free" if ei == 0 else "start_free"]
            b_end_free = chains[j]["end_free" if ej == 0 else "start_free"]
            joined = {"points": np.vstack([a, b]), "start_free": a_start_free, "end_free": b_end_free}
            chains = [c for k, c in enumerate(chains) if k not in (i, j)] + [joined]
            bridged += 1

        if bridged:
            logger.debug(f"Bridged {bridged} gaps")
        return chains

    @staticmethod
    def _canonical(path: np.ndarray) -> np.ndarray:
        """Orient a path so it starts at its top-left-most end."""
        s, e = path[0], path[-1]
        return path if (s[1], s[0]) <= (e[1], e[0]) else path[::-1]

    def _order_by_neighbourhood(self, paths: List[np.ndarray]) -> List[np.ndarray]:
        """
        Group paths whose ends touch (within the neighbour radius) and emit each
        group breadth-first, starting from its top-left-most path.
        """
        if len(paths) <= 1:
            return [self._canonical(p) for p in paths]

        paths = [self._canonical(p) for p in paths]
        keys = [(p[0][1], p[0][0], p[-1][1], p[-1][0]) for p in paths]
        order = sorted(range(len(paths)), key=lambda i: keys[i])

        ends = np.vstack([np.vstack([p[0], p[-1]]) for p in paths])
        tree = cKDTree(ends)
        adjacency: Dict[int, set] = {i: set() for i in range(len(paths))}
        for a, b in tree.query_pairs(self.params.ordering_neighbor_radius_pixels):
            pa, pb = a // 2, b // 2
            if pa != pb:
                adjacency[pa].add(pb)
                adjacency[pb].add(pa)

        result, seen = [], set()
        for root in order:
            if root in seen:
                continue
            queue = [root]
            seen.add(root)
            while queue:
                current = queue.pop(0)
                path = paths[current]
                if result:
                    tail = result[-1][-1]
                    if np.linalg.norm(path[-1] - tail) < np.linalg.norm(path[0] - tail):
                        path = path[::-1]
                result.append(path)
                for nb in sorted(adjacency[current], key=lambda i: keys[i]):
                    if nb not in seen:
                        seen.add(nb)
                        queue.append(nb)
        return result

    def _order_greedy(self, paths: List[np.ndarray]) -> List[np.ndarray]:
        """Chain paths by always jumping to the nearest remaining path end."""
        if not paths:
            return []
        paths = [self._canonical(p) for p in paths]
        remaining = sorted(range(len(paths)), key=lambda i: (paths[i][0][1], paths[i][0][0]))
        result = [paths[remaining.pop(0)]]
        while remaining:
            tail = result[-1][-1]
            best, best_d, flip = None, np.inf, False
            for i in remaining:
                ds = np.linalg.norm(paths[i][0] - tail)
                de = np.linalg.norm(paths[i][-1] - tail)
                if ds < best_d:
                    best, best_d, flip = i, ds, False
                if de < best_d:
                    best, best_d, flip = i, de, True
            remaining.remove(best)
            result.append(paths[best][::-1] if flip else paths[best])
        return result
