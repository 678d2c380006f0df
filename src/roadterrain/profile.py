"""
Longitudinal elevation smoothing along road paths.

An elevation profile is the terrain height sampled at each cross-section of a
path. This module smooths profiles with either a moving-window box filter or a
zero-phase Butterworth low-pass, optionally levels a whole network toward its
average elevation, and clamps the grade between consecutive samples.
"""

import logging
from typing import List, Sequence

import numpy as np
from scipy import ndimage, signal

from src.roadterrain.parameters import RoadSmoothingParameters

logger = logging.getLogger(__name__)

MAX_SLOPE_ITERATIONS = 10
LEVELING_EPSILON = 0.001


def normalize_window_size(size: int, name: str = "SmoothingWindowSize") -> int:
    """
    Return a usable odd window size.

    Even sizes become size + 1 and log a warning; sizes below 1 become 1.
    """
    size = int(size)
    if size < 1:
        logger.warning(f"{name} ({size}) must be at least 1, using 1")
        return 1
    if size % 2 == 0:
        logger.warning(f"{name} ({size}) is even, using {size + 1} for a symmetric window")
        return size + 1
    return size


def sample_elevations(heightmap: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Bilinearly sample a heightmap at (x, y) pixel positions.

    Args:
        heightmap: 2D elevation array indexed [y, x]
        points: N x 2 array of (x, y)

    Returns:
        N elevations; positions outside the grid take the nearest edge value
    """
    points = np.asarray(points, dtype=np.float64)
    if len(points) == 0:
        return np.zeros(0)
    return ndimage.map_coordinates(
        heightmap.astype(np.float64, copy=False), [points[:, 1], points[:, 0]], order=1, mode="nearest"
    )


def box_filter(values: np.ndarray, window_size: int) -> np.ndarray:
    """
    Centered moving average using prefix sums.

    Windows shrink near the ends instead of padding, so the first and last
    samples average only the samples that exist.

    Args:
        values: 1D profile
        window_size: Odd window length in samples

    Returns:
        Smoothed profile, same length as values
    """
    values = np.asarray(values, dtype=np.float64)
    n = len(values)
    if n == 0 or window_size <= 1:
        return values.copy()

    half = window_size // 2
    prefix = np.concatenate([[0.0], np.cumsum(values)])
    idx = np.arange(n)
    lo = np.maximum(0, idx - half)
    hi = np.minimum(n, idx + half + 1)
    return (prefix[hi] - prefix[lo]) / (hi - lo)


def butterworth_filter(values: np.ndarray, window_size: int, order: int = 3) -> np.ndarray:
    """
    Zero-phase Butterworth low-pass over a profile.

    The cutoff is tied to the window size (normalized cutoff 2 / window,
    clamped to [0.001, 0.99]) so both filters respond to the same setting.
    Forward-backward filtering removes phase lag at the ends of the road.

    Args:
        values: 1D profile
        window_size: Equivalent smoothing window in samples
        order: Filter order, clamped to 1-8

    Returns:
        Filtered profile; profiles too short for the filter fall back to the
        box filter
    """
    values = np.asarray(values, dtype=np.float64)
    order = int(np.clip(order, 1, 8))
    cutoff = float(np.clip(2.0 / max(window_size, 1), 0.001, 0.99))

    sos = signal.butter(order, cutoff, btype="low", output="sos")
    padlen = 3 * (2 * len(sos) + 1)
    if len(values) <= padlen:
        logger.warning(
            f"Profile of {len(values)} samples is too short for a Butterworth filter "
            f"(order {order}), using box filter"
        )
        return box_filter(values, window_size)

    return signal.sosfiltfilt(sos, values, padlen=padlen)


def apply_global_leveling(values: np.ndarray, target: float, strength: float) -> np.ndarray:
    """Linear blend of a profile toward a single target elevation."""
    values = np.asarray(values, dtype=np.float64)
    if strength <= LEVELING_EPSILON:
        return values
    return values * (1.0 - strength) + target * strength


def network_average(profiles: Sequence[np.ndarray]) -> float:
    """Average elevation over every sample of every profile."""
    non_empty = [p for p in profiles if len(p)]
    if not non_empty:
        return 0.0
    return float(np.mean(np.concatenate(non_empty)))


def constrain_slope(values: np.ndarray, spacing: float, max_slope_degrees: float) -> np.ndarray:
    """
    Limit the rise between consecutive samples.

    Alternating forward and backward passes pull outliers toward their
    neighbours until no step exceeds tan(max_slope) * spacing, or until the
    iteration limit is reached.
    """
    out = np.asarray(values, dtype=np.float64).copy()
    if len(out) < 2:
        return out
    max_rise = np.tan(np.radians(max_slope_degrees)) * spacing

    for _ in range(MAX_SLOPE_ITERATIONS):
        changed = False
        for i in range(1, len(out)):
            rise = out[i] - out[i - 1]
            if abs(rise) > max_rise + 1e-9:
                out[i] = out[i - 1] + np.sign(rise) * max_rise
                changed = True
        for i in range(len(out) - 2, -1, -1):
            rise = out[i] - out[i + 1]
            if abs(rise) > max_rise + 1e-9:
                out[i] = out[i + 1] + np.sign(rise) * max_rise
                changed = True
        if not changed:
            break

    return out


def smooth_profile(values: np.ndarray, params: RoadSmoothingParameters) -> np.ndarray:
    """Apply the configured longitudinal filter to one profile."""
    window = normalize_window_size(params.smoothing_window_size)
    if params.use_butterworth_filter:
        return butterworth_filter(values, window, params.butterworth_filter_order)
    return box_filter(values, window)


def smooth_network_profiles(
    profiles: List[np.ndarray], params: RoadSmoothingParameters, spacing: float
) -> List[np.ndarray]:
    """
    Smooth every profile of one material's road network.

    Args:
        profiles: Raw elevation profiles, one per path
        params: Filter, leveling and slope settings
        spacing: Distance between samples in meters

    Returns:
        Smoothed profiles in the same order
    """
    smoothed = [smooth_profile(p, params) for p in profiles]

    if params.global_leveling_strength > LEVELING_EPSILON:
        target = network_average(smoothed)
        logger.info(
            f"Leveling {len(smoothed)} profiles toward {target:.2f} "
            f"(strength {params.global_leveling_strength:.2f})"
        )
        smoothed = [apply_global_leveling(p, target, params.global_leveling_strength) for p in smoothed]

    if params.enable_max_slope_constraint:
        smoothed = [constrain_slope(p, spacing, params.road_max_slope_degrees) for p in smoothed]

    return smoothed
