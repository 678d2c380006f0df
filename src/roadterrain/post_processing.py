"""
Final smoothing pass over road-affected terrain.

Cross-section stamping samples the road at discrete intervals, which can leave
small steps between neighbouring stamps. This pass filters the heightmap but
only writes back pixels inside the road corridor mask (road half-width plus a
mask extension), so untouched terrain keeps its exact values.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage
from skimage.restoration import denoise_bilateral

from src.roadterrain.parameters import PostProcessingParameters
from src.roadterrain.profile import normalize_window_size

logger = logging.getLogger(__name__)

BILATERAL_RANGE_FACTOR = 0.5


def build_smoothing_mask(
    distance_fields: Sequence[Tuple[np.ndarray, float]],
    shape: Tuple[int, int],
) -> np.ndarray:
    """
    Union of all road corridors that should be smoothed.

    Args:
        distance_fields: (distance in meters to the nearest centerline,
            corridor limit in meters) per road material
        shape: Heightmap shape

    Returns:
        Boolean mask
    """
    mask = np.zeros(shape, dtype=bool)
    for distance, limit in distance_fields:
        if distance.shape != shape:
            raise ValueError(f"Distance field shape {distance.shape} does not match {shape}")
        mask |= distance <= limit
    return mask


def _bilateral(values: np.ndarray, kernel_size: int, sigma: float) -> np.ndarray:
    """Edge-preserving average over a square window."""
    # denoise_bilateral expects non-negative intensities
    base = float(values.min())
    smoothed = denoise_bilateral(
        values - base,
        win_size=kernel_size,
        sigma_color=max(sigma * BILATERAL_RANGE_FACTOR, 1e-6),
        sigma_spatial=sigma,
        mode="edge",
    )
    return smoothed + base


class PostProcessingSmoother:
    """
    Masked smoothing of a heightmap.

    Example:
        >>> smoother = PostProcessingSmoother(PostProcessingParameters(smoothing_type="box"))
        >>> smoothed = smoother.smooth(heightmap, corridor_mask)
    """

    def __init__(self, params: Optional[PostProcessingParameters] = None):
        self.params = params or PostProcessingParameters()
        self.kernel_size = normalize_window_size(self.params.kernel_size, "Post-processing kernel size")

    def filter_once(self, heightmap: np.ndarray) -> np.ndarray:
        """Apply the configured filter to the whole grid once."""
        kind = self.params.smoothing_type
        size = self.kernel_size
        sigma = max(self.params.sigma, 1e-6)

        if kind == "gaussian":
            # Truncate so the kernel spans kernel_size pixels
            truncate = max((size // 2) / sigma, 0.5)
            return ndimage.gaussian_filter(heightmap, sigma=sigma, truncate=truncate, mode="nearest")
        if kind == "box":
            return ndimage.uniform_filter(heightmap, size=size, mode="nearest")
        if kind == "median":
            return ndimage.median_filter(heightmap, size=size, mode="nearest")
        if kind == "bilateral":
            return _bilateral(heightmap, size, sigma)
        raise ValueError(f"Unknown smoothing type '{kind}'")

    def smooth(self, heightmap: np.ndarray, mask: np.ndarray) -> np.ndarray:
        """
        Smooth heightmap inside mask.

        Args:
            heightmap: 2D elevation array; not modified
            mask: Boolean mask of pixels allowed to change

        Returns:
            New heightmap; pixels outside mask are identical to the input
        """
        if heightmap.shape != mask.shape:
            raise ValueError(f"Mask shape {mask.shape} does not match heightmap {heightmap.shape}")

        result = heightmap.astype(np.float64, copy=True)
        if not self.params.enabled or not mask.any():
            return result

        for _ in range(max(1, self.params.iterations)):
            filtered = self.filter_once(result)
            result[mask] = filtered[mask]

        logger.info(
            f"Post-processing: {self.params.smoothing_type} "
            f"(kernel {self.kernel_size}, {self.params.iterations} iterations) "
            f"over {int(mask.sum())} pixels"
        )
        return result
