"""
Parametric road curves.

RoadSpline interpolates a path's control points, parameterized by cumulative
chord length, so a distance along the road maps to a position, tangent and
normal. Three interpolation modes are available:

- "linear": straight segments through the control points
- "tcb": Kochanek-Bartels (tension/continuity/bias) Hermite spline
- "akima": Akima spline for 5+ points, natural cubic for 3-4 points
"""

import logging
from typing import Optional, Tuple, Union

import numpy as np
from scipy.interpolate import Akima1DInterpolator, CubicSpline
from shapely.geometry import LineString

from src.roadterrain.parameters import SplineParameters
from src.roadterrain.skeleton import densify_path

logger = logging.getLogger(__name__)

MIN_POINTS_FOR_AKIMA = 5
MIN_TOTAL_LENGTH = 0.001

ArrayLike = Union[float, np.ndarray]


class RoadSpline:
    """
    Interpolating curve through ordered control points.

    Attributes:
        control_points: N x 2 array of (x, y) control points
        distances: Cumulative chord length at each control point
        length: Total chord length (the valid distance range is [0, length])
        interpolation: "linear", "tcb" or "akima"
    """

    def __init__(
        self,
        control_points: np.ndarray,
        interpolation: str = "tcb",
        tension: float = 0.0,
        continuity: float = 0.0,
        bias: float = 0.0,
    ):
        """
        Args:
            control_points: Ordered N x 2 points, N >= 2
            interpolation: "linear", "tcb" or "akima"
            tension: TCB tension, 1 flattens tangents, -1 exaggerates them
            continuity: TCB continuity, nonzero values introduce corners
            bias: TCB bias, shifts the tangent toward the previous or next segment

        Raises:
            ValueError: With fewer than 2 distinct points or a near-zero length
        """
        points = np.asarray(control_points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 2:
            raise ValueError(f"Control points must be N x 2, got shape {points.shape}")

        if len(points) > 1:
            step = np.linalg.norm(np.diff(points, axis=0), axis=1)
            points = np.vstack([points[:1], points[1:][step > 1e-9]])
        if len(points) < 2:
            raise ValueError("Need at least 2 distinct control points for a spline")

        segment = np.linalg.norm(np.diff(points, axis=0), axis=1)
        self.distances = np.concatenate([[0.0], np.cumsum(segment)])
        self.length = float(self.distances[-1])
        if self.length < MIN_TOTAL_LENGTH:
            raise ValueError("Control points result in a zero-length spline")

        if interpolation not in ("linear", "tcb", "akima"):
            raise ValueError(f"Unknown interpolation '{interpolation}'")

        self.control_points = points
        self.interpolation = interpolation
        self.tension = tension
        self.continuity = continuity
        self.bias = bias

        self._curve = None
        if interpolation == "akima" and len(points) >= MIN_POINTS_FOR_AKIMA:
            self._curve = Akima1DInterpolator(self.distances, points, axis=0)
        elif interpolation == "akima" and len(points) >= 3:
            self._curve = CubicSpline(self.distances, points, axis=0, bc_type="natural")
        elif interpolation == "tcb":
            self._out_tangents, self._in_tangents = self._tcb_tangents()

    def __repr__(self) -> str:
        return (
            f"RoadSpline(points={len(self.control_points)}, length={self.length:.2f}, "
            f"interpolation='{self.interpolation}')"
        )

    def _tcb_tangents(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Outgoing and incoming Kochanek-Bartels tangents per control point,
        scaled for non-uniform knot spacing.
        """
        p = self.control_points
        n = len(p)
        h = np.diff(self.distances)
        t, c, b = self.tension, self.continuity, self.bias

        out_t = np.zeros_like(p)
        in_t = np.zeros_like(p)
        out_t[0] = p[1] - p[0]
        in_t[-1] = p[-1] - p[-2]

        if n > 2:
            prev = p[1:-1] - p[:-2]
            nxt = p[2:] - p[1:-1]
            out_t[1:-1] = ((1 - t) * (1 + b) * (1 + c) / 2) * prev + (
                (1 - t) * (1 - b) * (1 - c) / 2
            ) * nxt
            in_t[1:-1] = ((1 - t) * (1 + b) * (1 - c) / 2) * prev + (
                (1 - t) * (1 - b) * (1 + c) / 2
            ) * nxt

            h_prev, h_next = h[:-1], h[1:]
            total = (h_prev + h_next)[:, None]
            out_t[1:-1] *= 2 * h_next[:, None] / total
            in_t[1:-1] *= 2 * h_prev[:, None] / total

        return out_t, in_t

    def _locate(self, distance: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        seg = np.clip(np.searchsorted(self.distances, distance, side="right") - 1, 0, len(self.distances) - 2)
        h = self.distances[seg + 1] - self.distances[seg]
        u = (distance - self.distances[seg]) / h
        return seg, u, h

    def _evaluate(self, distance: np.ndarray, derivative: bool) -> np.ndarray:
        if self._curve is not None:
            return self._curve(distance, 1) if derivative else self._curve(distance)

        p = self.control_points
        seg, u, h = self._locate(distance)
        p0, p1 = p[seg], p[seg + 1]

        if self.interpolation != "tcb":
            if derivative:
                return (p1 - p0) / h[:, None]
            return p0 + (p1 - p0) * u[:, None]

        m0 = self._out_tangents[seg]
        m1 = self._in_tangents[seg + 1]
        u = u[:, None]
        if derivative:
            d00 = 6 * u**2 - 6 * u
            d10 = 3 * u**2 - 4 * u + 1
            d01 = -6 * u**2 + 6 * u
            d11 = 3 * u**2 - 2 * u
            return (d00 * p0 + d10 * m0 + d01 * p1 + d11 * m1) / h[:, None]
        h00 = 2 * u**3 - 3 * u**2 + 1
        h10 = u**3 - 2 * u**2 + u
        h01 = -2 * u**3 + 3 * u**2
        h11 = u**3 - u**2
        return h00 * p0 + h10 * m0 + h01 * p1 + h11 * m1

    def point_at(self, distance: ArrayLike) -> np.ndarray:
        """
        Position at one or more distances along the spline.

        Distances are clamped to [0, length].

        Returns:
            (2,) array for a scalar distance, N x 2 for an array
        """
        scalar = np.ndim(distance) == 0
        d = np.clip(np.atleast_1d(np.asarray(distance, dtype=np.float64)), 0.0, self.length)
        result = self._evaluate(d, derivative=False)
        return result[0] if scalar else result

    def tangent_at(self, distance: ArrayLike) -> np.ndarray:
        """Unit tangent; (1, 0) where the derivative vanishes."""
        scalar = np.ndim(distance) == 0
        d = np.clip(np.atleast_1d(np.asarray(distance, dtype=np.float64)), 0.0, self.length)
        deriv = self._evaluate(d, derivative=True)
        norm = np.linalg.norm(deriv, axis=1)
        tangent = np.tile([1.0, 0.0], (len(d), 1))
        ok = norm > 0.001
        tangent[ok] = deriv[ok] / norm[ok, None]
        return tangent[0] if scalar else tangent

    def normal_at(self, distance: ArrayLike) -> np.ndarray:
        """Unit normal pointing to the right of the direction of travel: (ty, -tx)."""
        tangent = self.tangent_at(distance)
        return np.stack([tangent[..., 1], -tangent[..., 0]], axis=-1)

    def sample_distances(self, interval: float) -> np.ndarray:
        """Distances every `interval` units from 0, always ending at the total length."""
        if interval <= 0:
            raise ValueError(f"Sampling interval must be positive, got {interval}")
        distances = np.arange(0.0, self.length, interval)
        if len(distances) == 0 or self.length - distances[-1] > 1e-6:
            distances = np.append(distances, self.length)
        return distances

    def sample_by_distance(self, interval: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Resample the spline at a fixed arc-length interval.

        Returns:
            (distances, points) where points is N x 2
        """
        distances = self.sample_distances(interval)
        return distances, self.point_at(distances)


def simplify_path(points: np.ndarray, tolerance: float) -> np.ndarray:
    """Douglas-Peucker simplification; endpoints are always kept."""
    points = np.asarray(points, dtype=np.float64)
    if tolerance <= 0 or len(points) < 3:
        return points
    simplified = LineString(points).simplify(tolerance, preserve_topology=False)
    return np.asarray(simplified.coords)[:, :2]


def fit_spline(
    path: np.ndarray,
    params: Optional[SplineParameters] = None,
    min_length: float = 0.0,
) -> Optional[RoadSpline]:
    """
    Simplify, densify and fit a spline through one ordered path.

    Degenerate paths are rejected with a warning instead of raising.

    Args:
        path: N x 2 ordered points in pixel space
        params: Simplify/densify tolerances and interpolation settings
        min_length: Reject paths shorter than this (pixels)

    Returns:
        Fitted RoadSpline, or None when the path was rejected
    """
    params = params or SplineParameters()
    points = simplify_path(path, params.simplify_tolerance_pixels)
    points = densify_path(points, params.densify_max_spacing_pixels)

    try:
        spline = RoadSpline(
            points,
            interpolation=params.interpolation,
            tension=params.tension,
            continuity=params.continuity,
            bias=params.bias,
        )
    except ValueError as e:
        logger.warning(f"Rejected path with {len(path)} points: {e}")
        return None

    if spline.length < min_length:
        logger.warning(f"Rejected path of length {spline.length:.1f}px (minimum {min_length:.1f}px)")
        return None

    return spline
