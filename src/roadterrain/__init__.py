"""
Road-aware terrain synthesis package.

Core functionality:
- Coordinate mapping between WGS84, source rasters and terrain pixels
- Road extraction from vector features or painted layer masks
- Spline fitting, elevation profile smoothing and cross-section stamping
- Junction harmonization across materials and masked post-processing
- TerrainCompositor orchestrating a full generation run
"""

from .parameters import (
    RoadSmoothingParameters,
    SplineParameters,
    DirectMaskParameters,
    JunctionHarmonizationParameters,
    PostProcessingParameters,
)
from .materials import MaterialDefinition, reorder_materials
from .validation import ValidationWarning, get_validation_warnings
from .data_loading import HeightmapSource, load_heightmap
from .cache import TerrainCache
from .pipeline import (
    CancellationToken,
    GenerationStage,
    RoadNetworkPlan,
    TerrainCompositor,
    TerrainCreationRequest,
    TerrainCreationResult,
)

__all__ = [
    "RoadSmoothingParameters",
    "SplineParameters",
    "DirectMaskParameters",
    "JunctionHarmonizationParameters",
    "PostProcessingParameters",
    "MaterialDefinition",
    "reorder_materials",
    "ValidationWarning",
    "get_validation_warnings",
    "HeightmapSource",
    "load_heightmap",
    "TerrainCache",
    "CancellationToken",
    "GenerationStage",
    "RoadNetworkPlan",
    "TerrainCompositor",
    "TerrainCreationRequest",
    "TerrainCreationResult",
]
