"""
Caller-owned caches for a terrain generation session.

Two things are worth keeping between runs over the same area:

- fetched vector feature collections, stored on disk as JSON keyed by a hash
  of the query bounding box
- coordinate transformers, kept in memory keyed by their construction inputs

Neither cache is global: the caller creates a TerrainCache, passes it to the
compositor and resets it explicitly.
"""

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from src.config import FEATURE_CACHE, ensure_dir
from src.roadterrain.geo import CoordinateTransformer, GeoBoundingBox

logger = logging.getLogger(__name__)


class FeatureCache:
    """
    Disk cache of GeoJSON feature collections keyed by bounding box.

    The cache stores:
    - the feature collection as <name>_<hash>.json
    - metadata (bounding box, query, feature count, timestamp) beside it

    Attributes:
        cache_dir: Directory where cache files are stored
        enabled: Whether caching is enabled
    """

    def __init__(self, cache_dir: Optional[Path] = None, enabled: bool = True):
        """
        Args:
            cache_dir: Directory for cache files. If None, uses the project feature cache
            enabled: Whether caching is enabled (default: True)
        """
        self.cache_dir = Path(cache_dir) if cache_dir is not None else FEATURE_CACHE
        self.enabled = enabled
        self.hits = 0
        self.misses = 0

        if self.enabled:
            ensure_dir(self.cache_dir)
            logger.debug(f"Feature cache initialized at: {self.cache_dir}")

    def compute_key(self, bbox: GeoBoundingBox, query: str = "") -> str:
        """
        SHA256 of the bounding box and query.

        Args:
            bbox: Query bounding box
            query: Extra discriminator (feature filter, source name)

        Returns:
            Hex digest
        """
        metadata_str = "|".join([bbox.to_file_name_string(), bbox.to_overpass_bbox(), query])
        return hashlib.sha256(metadata_str.encode()).hexdigest()

    def get_cache_path(self, key: str, cache_name: str = "features") -> Path:
        return self.cache_dir / f"{cache_name}_{key}.json"

    def get_metadata_path(self, key: str, cache_name: str = "features") -> Path:
        return self.cache_dir / f"{cache_name}_{key}_meta.json"

    def save(
        self, bbox: GeoBoundingBox, collection: Dict[str, Any], query: str = ""
    ) -> Optional[Path]:
        """
        Store a feature collection.

        Args:
            bbox: Query bounding box
            collection: GeoJSON FeatureCollection dict
            query: Extra discriminator

        Returns:
            Path of the cache file, or None when caching is disabled
        """
        if not self.enabled:
            return None

        key = self.compute_key(bbox, query)
        cache_path = self.get_cache_path(key)

        with open(cache_path, "w") as f:
            json.dump(collection, f)

        metadata = {
            "key": key,
            "bbox": bbox.to_overpass_bbox(),
            "query": query,
            "feature_count": len(collection.get("features", [])),
            "cache_time": time.time(),
        }
        with open(self.get_metadata_path(key), "w") as f:
            json.dump(metadata, f, indent=2)

        logger.info(f"Cached {metadata['feature_count']} features for {bbox}")
        return cache_path

    def load(self, bbox: GeoBoundingBox, query: str = "") -> Optional[Dict[str, Any]]:
        """
        Load a cached feature collection.

        Returns:
            FeatureCollection dict, or None on a miss or an unreadable file
        """
        if not self.enabled:
            return None

        cache_path = self.get_cache_path(self.compute_key(bbox, query))
        if not cache_path.exists():
            self.misses += 1
            logger.debug(f"Cache miss: {cache_path.name}")
            return None

        try:
            with open(cache_path) as f:
                collection = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.misses += 1
            logger.warning(f"Failed to load cache {cache_path.name}: {e}")
            return None

        self.hits += 1
        logger.debug(f"Cache hit: {cache_path.name}")
        return collection

    def invalidate(self, bbox: GeoBoundingBox, query: str = "") -> bool:
        """Delete the entry for one bounding box. Returns whether it existed."""
        key = self.compute_key(bbox, query)
        existed = False
        for path in (self.get_cache_path(key), self.get_metadata_path(key)):
            if path.exists():
                path.unlink()
                existed = True
        if existed:
            logger.debug(f"Invalidated feature cache for {bbox}")
        return existed

    def clear_cache(self, cache_name: str = "features") -> int:
        """
        Delete all cached files for a cache name.

        Returns:
            Number of files deleted
        """
        if not self.enabled or not self.cache_dir.exists():
            return 0

        deleted_count = 0
        for cache_file in self.cache_dir.glob(f"{cache_name}_*"):
            try:
                cache_file.unlink()
                deleted_count += 1
            except OSError as e:
                logger.warning(f"Failed to delete {cache_file.name}: {e}")

        self.hits = self.misses = 0
        logger.info(f"Cleared {deleted_count} cache files for '{cache_name}'")
        return deleted_count

    def get_cache_stats(self) -> dict:
        stats = {
            "cache_dir": str(self.cache_dir),
            "enabled": self.enabled,
            "cache_files": 0,
            "total_size_mb": 0,
            "hits": self.hits,
            "misses": self.misses,
        }
        if not self.cache_dir.exists():
            return stats

        for cache_file in self.cache_dir.glob("*.json"):
            if cache_file.is_file() and not cache_file.name.endswith("_meta.json"):
                stats["cache_files"] += 1
                stats["total_size_mb"] += cache_file.stat().st_size / (1024 * 1024)
        return stats


class TransformCache:
    """In-memory cache of CoordinateTransformer instances."""

    def __init__(self):
        self._entries: Dict[Hashable, CoordinateTransformer] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(
        geotransform: Tuple[float, ...],
        native_size: Tuple[int, int],
        terrain_size: Any,
        projection: Optional[str] = None,
        crop_offset: Tuple[int, int] = (0, 0),
        crop_size: Optional[Tuple[int, int]] = None,
    ) -> Tuple:
        return (
            tuple(float(v) for v in geotransform),
            tuple(native_size),
            terrain_size if isinstance(terrain_size, int) else tuple(terrain_size),
            projection,
            tuple(crop_offset),
            tuple(crop_size) if crop_size is not None else None,
        )

    def get_or_create(
        self, key: Hashable, factory: Callable[[], CoordinateTransformer]
    ) -> CoordinateTransformer:
        """Return the cached transformer for key, building it with factory on a miss."""
        if key in self._entries:
            self.hits += 1
            return self._entries[key]
        self.misses += 1
        transformer = factory()
        self._entries[key] = transformer
        return transformer

    def invalidate(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear_cache(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self.hits = self.misses = 0
        return count

    def get_cache_stats(self) -> dict:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)


class TerrainCache:
    """
    Bundle of the caches one compositor session uses.

    Attributes:
        features: FeatureCache on disk
        transforms: TransformCache in memory
    """

    def __init__(self, cache_dir: Optional[Path] = None, enabled: bool = True):
        self.features = FeatureCache(cache_dir, enabled=enabled)
        self.transforms = TransformCache()

    def reset(self) -> None:
        """Drop every cached transformer and feature collection."""
        removed = self.transforms.clear_cache()
        deleted = self.features.clear_cache()
        logger.info(f"Cache reset: {removed} transformers, {deleted} feature files")

    def get_cache_stats(self) -> dict:
        return {
            "features": self.features.get_cache_stats(),
            "transforms": self.transforms.get_cache_stats(),
        }
