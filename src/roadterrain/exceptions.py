"""
Exception types raised by the terrain generation pipeline.

Fatal errors abort a generation run. Recoverable errors are caught at the
compositor boundary and only skip the material that raised them.
"""


class TerrainGenerationError(Exception):
    """Base class for all terrain generation errors."""


class HeightmapSourceError(TerrainGenerationError):
    """The heightmap source is missing, unreadable or malformed."""


class MaterialProcessingError(TerrainGenerationError):
    """A single material could not be processed."""

    def __init__(self, material_name: str, message: str):
        super().__init__(f"Material '{material_name}': {message}")
        self.material_name = material_name


class GenerationCancelled(TerrainGenerationError):
    """The caller cancelled the run between two stages."""
