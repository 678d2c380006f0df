"""
Exclusion zones: areas such as water or bridges where a road keeps its
material but the terrain under it is left alone.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np

from src.roadterrain.features import binarize_layer
from src.roadterrain.materials import LayerSource, load_layer_mask

logger = logging.getLogger(__name__)

EXCLUSION_THRESHOLD = 128


def combine_exclusion_layers(
    sources: Sequence[LayerSource], shape: Tuple[int, int], material_name: str = ""
) -> Optional[np.ndarray]:
    """
    OR-combine exclusion layers into one boolean mask.

    Pixels brighter than 128 in any layer are excluded. Missing files and
    layers whose size does not match the terrain are logged and skipped.

    Args:
        sources: Image paths or 2D arrays (0-255 or boolean)
        shape: Terrain (height, width)
        material_name: Used in messages

    Returns:
        Boolean mask, or None when no layer could be used

    Raises:
        MaterialProcessingError: If an existing image cannot be read
    """
    combined = None
    for source in sources:
        if not isinstance(source, np.ndarray) and not Path(source).exists():
            logger.warning(f"Material '{material_name}': exclusion layer not found: {source}")
            continue
        layer = load_layer_mask(source, shape, material_name)
        if layer is None:
            continue
        mask = binarize_layer(layer, EXCLUSION_THRESHOLD)
        combined = mask if combined is None else combined | mask

    if combined is not None:
        logger.info(
            f"Material '{material_name}': {int(combined.sum())} pixels excluded from road smoothing"
        )
    return combined
