"""
Blend functions mapping a normalized distance t in [0, 1] to a blend weight.

All functions accept scalars or numpy arrays, clamp t to [0, 1] and return
0 at t=0 and 1 at t=1. The weight is the fraction of the *original* terrain
kept, so callers compute ``target * (1 - b) + original * b``.
"""

from typing import Literal, Union

import numpy as np

BlendFunctionType = Literal["linear", "cosine", "cubic", "quintic"]

NumericType = Union[float, np.ndarray]


def linear(t: NumericType) -> NumericType:
    """Identity ramp."""
    return np.clip(t, 0.0, 1.0)


def cosine(t: NumericType) -> NumericType:
    """Half-cosine ease in/out: 0.5 - 0.5*cos(pi*t)."""
    t = np.clip(t, 0.0, 1.0)
    return 0.5 - 0.5 * np.cos(np.pi * t)


def cubic(t: NumericType) -> NumericType:
    """Hermite smoothstep: t^2 (3 - 2t)."""
    t = np.clip(t, 0.0, 1.0)
    return t * t * (3.0 - 2.0 * t)


def quintic(t: NumericType) -> NumericType:
    """Perlin smootherstep: t^3 (t (6t - 15) + 10)."""
    t = np.clip(t, 0.0, 1.0)
    return t * t * t * (t * (t * 6.0 - 15.0) + 10.0)


BLEND_FUNCTIONS = {
    "linear": linear,
    "cosine": cosine,
    "cubic": cubic,
    "smoothstep": cubic,
    "quintic": quintic,
}


def apply_blend(t: NumericType, blend_type: str = "cosine") -> NumericType:
    """
    Evaluate the named blend function.

    Args:
        t: Normalized distance (scalar or array), clamped to [0, 1]
        blend_type: One of "linear", "cosine", "cubic" ("smoothstep"), "quintic"

    Returns:
        Blend weight(s) in [0, 1]

    Raises:
        ValueError: If blend_type is unknown
    """
    try:
        fn = BLEND_FUNCTIONS[blend_type]
    except KeyError:
        raise ValueError(
            f"Unknown blend function '{blend_type}'. "
            f"Available: {list(BLEND_FUNCTIONS.keys())}"
        ) from None
    result = fn(np.asarray(t, dtype=np.float64))
    if np.ndim(result) == 0:
        return float(result)
    return result
