#!/usr/bin/env python3
"""
Generate a road-smoothed heightmap from the command line.

Inputs:
- a heightmap (GeoTIFF/HGT via rasterio, or a 16-bit PNG)
- a JSON material list (see MaterialDefinition.to_dict for the format)
- optionally a GeoJSON FeatureCollection of roads and areas plus its bbox

Outputs (in --output-dir):
- heightmap.npy            final elevations (float64)
- heightmap.png            16-bit preview scaled to the elevation range
- material_index.png       per-pixel material index
- summary.json             elevation range, counts, spawn point, warnings

Usage:
    python examples/generate_terrain.py heightmap.tif materials.json \\
        --features roads.geojson --bbox 42.25 -83.5 42.5 -82.8 --debug
"""

import json
import logging
import sys
from pathlib import Path

import numpy as np
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import DEFAULT_LOG_LEVEL
from src.roadterrain.cache import TerrainCache
from src.roadterrain.data_loading import HeightmapSource
from src.roadterrain.geo import GeoBoundingBox
from src.roadterrain.materials import MaterialDefinition
from src.roadterrain.pipeline import TerrainCompositor, TerrainCreationRequest

logger = logging.getLogger(__name__)


def load_materials(path: Path) -> list:
    with open(path) as f:
        data = json.load(f)
    entries = data["materials"] if isinstance(data, dict) else data
    return [MaterialDefinition.from_dict(entry) for entry in entries]


def save_outputs(result, output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)

    np.save(output_dir / "heightmap.npy", result.heightmap)

    low, high = result.min_elevation, result.max_elevation
    span = high - low if high > low else 1.0
    preview = ((result.heightmap - low) / span * 65535.0).astype(np.uint16)
    Image.fromarray(preview).save(output_dir / "heightmap.png")
    Image.fromarray(result.material_index_map.astype(np.uint8)).save(output_dir / "material_index.png")

    summary = {
        "min_elevation": low,
        "max_elevation": high,
        "materials": list(result.material_names),
        "material_order_changed": result.material_order_changed,
        "counts": result.counts,
        "spawn_point": result.spawn_point.to_dict() if result.spawn_point else None,
        "junctions": [j.to_dict() for j in result.junctions],
        "validation_warnings": [
            {"material": name, "severity": w.severity, "title": w.title, "recommendation": w.recommendation}
            for name, w in result.validation_warnings
        ],
        "warnings": result.log.warnings,
        "errors": result.log.errors,
    }
    with open(output_dir / "summary.json", "w") as f:
        json.dump(summary, f, indent=2)
    logger.info(f"Wrote outputs to {output_dir}")


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Road-aware terrain generation")
    parser.add_argument("heightmap", type=Path, help="Heightmap raster or 16-bit PNG")
    parser.add_argument("materials", type=Path, help="JSON material list")
    parser.add_argument("--features", type=Path, default=None, help="GeoJSON FeatureCollection")
    parser.add_argument(
        "--bbox",
        type=float,
        nargs=4,
        default=None,
        help="Bounding box of the terrain: south west north east",
    )
    parser.add_argument("--terrain-size", type=int, default=None, help="Resample to this square size")
    parser.add_argument("--meters-per-pixel", type=float, default=None, help="Override ground resolution")
    parser.add_argument("--max-height", type=float, default=1000.0, help="Elevation of white in PNG input")
    parser.add_argument("--base-height", type=float, default=0.0, help="Offset added to spawn elevation")
    parser.add_argument(
        "--output-dir", type=Path, default=Path("examples/output/terrain"), help="Output directory"
    )
    parser.add_argument("--cache-dir", type=Path, default=None, help="Feature cache directory")
    parser.add_argument("--no-cache", action="store_true", help="Disable the feature cache")
    parser.add_argument("--debug", action="store_true", help="Write debug images to the output directory")
    parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING if args.quiet else getattr(logging, DEFAULT_LOG_LEVEL),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    collection = None
    if args.features is not None:
        with open(args.features) as f:
            collection = json.load(f)

    request = TerrainCreationRequest(
        heightmap=HeightmapSource(path=args.heightmap, max_height=args.max_height),
        materials=load_materials(args.materials),
        terrain_size=args.terrain_size,
        meters_per_pixel=args.meters_per_pixel,
        bounding_box=GeoBoundingBox.from_south_west_north_east(tuple(args.bbox)) if args.bbox else None,
        feature_collection=collection,
        base_height=args.base_height,
        debug=args.debug,
        debug_dir=args.output_dir / "debug",
    )

    compositor = TerrainCompositor(
        TerrainCache(args.cache_dir, enabled=not args.no_cache),
        verbose=not args.quiet,
    )
    result = compositor.generate(request)

    if not result.success:
        logger.error(f"Generation {result.stage.value}: {result.error}")
        return 1

    save_outputs(result, args.output_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
