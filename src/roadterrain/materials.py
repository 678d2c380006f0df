"""
Terrain materials and their layer masks.

A material is a painted terrain layer. The list order is the painting
priority: material 0 is the base that covers everything without needing a
layer, and every later material claims the pixels where its layer mask is
set, later materials winning over earlier ones. A material after index 0
without any layer source can never claim a pixel, so it is moved to the end
of the list before generation.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from src.roadterrain.exceptions import MaterialProcessingError
from src.roadterrain.features import FeatureGeometry
from src.roadterrain.parameters import RoadSmoothingParameters

logger = logging.getLogger(__name__)

LAYER_CLAIM_THRESHOLD = 127

LayerSource = Union[str, Path, np.ndarray]


@dataclass
class MaterialDefinition:
    """
    One terrain material.

    Attributes:
        name: Material name, also used in log messages
        layer_source: Greyscale layer image path or array (0-255)
        road_params: Road smoothing settings; None for non-road materials
        features: Vector features rasterized into the layer when no image is given
        feature_filter: Property values selecting this material's features from a
            shared feature collection ("*" matches any value)
        index: Position in the compositing order (set by reorder_materials)
    """

    name: str
    layer_source: Optional[LayerSource] = None
    road_params: Optional[RoadSmoothingParameters] = None
    features: List[FeatureGeometry] = field(default_factory=list)
    feature_filter: Dict[str, Any] = field(default_factory=dict)
    index: int = 0

    @property
    def is_road(self) -> bool:
        return self.road_params is not None

    @property
    def has_layer(self) -> bool:
        return self.layer_source is not None or bool(self.features) or bool(self.feature_filter)

    def to_dict(self) -> dict[str, Any]:
        source = self.layer_source
        return {
            "name": self.name,
            "layer_source": str(source) if isinstance(source, (str, Path)) else None,
            "road_params": self.road_params.to_dict() if self.road_params else None,
            "feature_filter": dict(self.feature_filter),
            "index": self.index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MaterialDefinition":
        road = data.get("road_params")
        return cls(
            name=data["name"],
            layer_source=data.get("layer_source"),
            road_params=RoadSmoothingParameters.from_dict(road) if road is not None else None,
            feature_filter=dict(data.get("feature_filter", {})),
            index=data.get("index", 0),
        )


def reorder_materials(
    materials: List[MaterialDefinition],
) -> Tuple[List[MaterialDefinition], bool]:
    """
    Move unreachable materials to the end and renumber.

    Material 0 stays first. Materials with a layer source keep their relative
    order, followed by the ones without, also in their original order.

    Args:
        materials: Materials in caller order

    Returns:
        (reordered materials with index 0..N-1, whether the order changed)
    """
    if not materials:
        return [], False

    first, rest = materials[0], materials[1:]
    with_layer = [m for m in rest if m.has_layer]
    without_layer = [m for m in rest if not m.has_layer]
    ordered = [first] + with_layer + without_layer

    changed = any(a is not b for a, b in zip(ordered, materials))
    for i, material in enumerate(ordered):
        material.index = i

    if changed:
        logger.warning(
            "Moved materials without a layer to the end: "
            + ", ".join(f"'{m.name}'" for m in without_layer)
        )
    return ordered, changed


def load_layer_mask(
    source: LayerSource, shape: Tuple[int, int], material_name: str = ""
) -> Optional[np.ndarray]:
    """
    Load a greyscale layer mask at terrain resolution.

    Args:
        source: Image path or 2D array
        shape: Expected (height, width)
        material_name: Used in messages

    Returns:
        uint8 array, or None when the size does not match (logged as warning)

    Raises:
        MaterialProcessingError: If the image cannot be read
    """
    if isinstance(source, np.ndarray):
        layer = source
    else:
        path = Path(source)
        try:
            with Image.open(path) as img:
                layer = np.array(img.convert("L"))
        except (OSError, UnidentifiedImageError) as e:
            raise MaterialProcessingError(material_name, f"cannot read layer image {path}: {e}") from e

    if layer.ndim != 2:
        raise MaterialProcessingError(material_name, f"layer must be 2D, got shape {layer.shape}")

    if layer.shape != tuple(shape):
        logger.warning(
            f"Material '{material_name}': layer size {layer.shape[1]}x{layer.shape[0]} does not match "
            f"terrain size {shape[1]}x{shape[0]}, layer ignored"
        )
        return None

    if layer.dtype == bool:
        return layer.astype(np.uint8) * 255
    return np.clip(layer, 0, 255).astype(np.uint8)


def build_material_index_map(
    layers: List[Optional[np.ndarray]], shape: Tuple[int, int]
) -> np.ndarray:
    """
    Per-pixel material index.

    Every pixel starts as material 0; each later material with a layer claims
    the pixels where its layer is above 127, so the highest index wins.

    Args:
        layers: One entry per material in compositing order (None = no layer)
        shape: Terrain (height, width)

    Returns:
        uint8 index map (uint16 when there are more than 256 materials)
    """
    dtype = np.uint8 if len(layers) <= 256 else np.uint16
    index_map = np.zeros(shape, dtype=dtype)
    for i, layer in enumerate(layers):
        if i == 0 or layer is None:
            continue
        index_map[layer > LAYER_CLAIM_THRESHOLD] = i
    return index_map


def material_weight_layers(index_map: np.ndarray, count: int) -> List[np.ndarray]:
    """One 0/255 weight layer per material, derived from the index map."""
    return [np.where(index_map == i, 255, 0).astype(np.uint8) for i in range(count)]


def select_features(
    features: Sequence[FeatureGeometry], feature_filter: Dict[str, Any]
) -> List[FeatureGeometry]:
    """
    Features whose properties match every key of feature_filter.

    A filter value may be a single value, a list of accepted values or "*"
    for any value of a present key. An empty filter selects nothing.
    """
    if not feature_filter:
        return []

    def matches(feature: FeatureGeometry) -> bool:
        for key, expected in feature_filter.items():
            if key not in feature.properties:
                return False
            value = feature.properties[key]
            if expected == "*":
                continue
            if isinstance(expected, (list, tuple, set)):
                if value not in expected:
                    return False
            elif value != expected:
                return False
        return True

    return [f for f in features if matches(f)]
