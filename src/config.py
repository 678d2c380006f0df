"""Configuration module for the road terrain project.

Centralizes data paths and default settings.
"""
from pathlib import Path

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
DEBUG_DIR = DATA_DIR / "debug"

# Cache directories (created on demand by the cache classes)
CACHE_DIR = DATA_DIR / "cache"
FEATURE_CACHE = CACHE_DIR / "features"

# Default settings
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_METERS_PER_PIXEL = 1.0
DEFAULT_LAYER_THRESHOLD = 128
DEFAULT_BASE_HEIGHT = 0.0


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing and return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
