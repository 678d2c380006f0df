"""
Terrain generation pipeline.

TerrainCompositor runs one offline generation as a small state machine:

    Idle -> Validating -> Transforming -> PerMaterialProcessing (i = 0..N-1)
         -> JunctionHarmonization -> PostProcessing -> Done

with Failed reachable from any stage on an unrecoverable error (missing
heightmap, no valid material) and Cancelled when the caller's cancellation
token fires between stages. Errors inside one material are logged and only
skip that material.

The run can be split in two phases: analyze() stops after the per-material
stage and returns a RoadNetworkPlan whose junctions the caller may exclude,
and generate(request, plan) finishes the run from that plan.

Example:
    from src.roadterrain.pipeline import TerrainCompositor, TerrainCreationRequest

    compositor = TerrainCompositor(verbose=True)
    plan = compositor.analyze(request)
    plan.exclude_junction(3, "bridge over the river")
    result = compositor.generate(request, plan=plan)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from src.config import DEBUG_DIR, DEFAULT_BASE_HEIGHT, DEFAULT_METERS_PER_PIXEL
from src.roadterrain.cache import TerrainCache, TransformCache
from src.roadterrain.data_loading import HeightmapSource, LoadedHeightmap, load_heightmap
from src.roadterrain.diagnostics import (
    DiagnosticLog,
    DiagnosticLogHandler,
    export_material_debug_image,
    export_network_debug_image,
)
from src.roadterrain.exceptions import (
    GenerationCancelled,
    HeightmapSourceError,
    MaterialProcessingError,
    TerrainGenerationError,
)
from src.roadterrain.exclusion import combine_exclusion_layers
from src.roadterrain.features import (
    FeatureGeometry,
    VectorFeatureProcessor,
    features_to_layer,
    parse_feature_collection,
)
from src.roadterrain.geo import CoordinateTransformer, GeoBoundingBox, GeoTransform
from src.roadterrain.junctions import JunctionHarmonizer, JunctionSite, NetworkJunctionDetector
from src.roadterrain.materials import (
    MaterialDefinition,
    build_material_index_map,
    load_layer_mask,
    material_weight_layers,
    reorder_materials,
    select_features,
)
from src.roadterrain.network import RoadNetwork, build_road_network
from src.roadterrain.parameters import JunctionHarmonizationParameters, PostProcessingParameters
from src.roadterrain.post_processing import PostProcessingSmoother, build_smoothing_mask
from src.roadterrain.spawn import SpawnPoint, find_spawn_point
from src.roadterrain.validation import ValidationWarning, get_validation_warnings

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "src.roadterrain"


class GenerationStage(str, Enum):
    """States of one generation run."""

    IDLE = "idle"
    VALIDATING = "validating"
    TRANSFORMING = "transforming"
    PER_MATERIAL_PROCESSING = "per_material_processing"
    JUNCTION_HARMONIZATION = "junction_harmonization"
    POST_PROCESSING = "post_processing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStage.DONE, GenerationStage.FAILED, GenerationStage.CANCELLED)


ProgressCallback = Callable[[GenerationStage, float, str], None]


class CancellationToken:
    """Cooperative cancellation, checked by the compositor between stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled("Generation cancelled by caller")


@dataclass
class TerrainCreationRequest:
    """
    Everything one generation run needs.

    Attributes:
        heightmap: Heightmap source
        materials: Materials in caller order
        terrain_size: Square output size; defaults to the heightmap size
        meters_per_pixel: Ground resolution; derived from georeferencing when None
        bounding_box: WGS84 bounds of the terrain, for features and fallback mapping
        feature_collection: Pre-fetched GeoJSON FeatureCollection
        feature_query: Discriminator for the feature cache key
        source_crs: CRS of feature coordinates
        base_height: Offset added to spawn elevations
        junction_params: Overrides the first road material's junction settings
        post_processing: Overrides the first road material's post-processing
        debug: Write debug images
        debug_dir: Where debug images go
    """

    heightmap: HeightmapSource
    materials: List[MaterialDefinition]
    terrain_size: Optional[int] = None
    meters_per_pixel: Optional[float] = None
    bounding_box: Optional[GeoBoundingBox] = None
    feature_collection: Optional[Dict[str, Any]] = None
    feature_query: str = ""
    source_crs: str = "EPSG:4326"
    base_height: float = DEFAULT_BASE_HEIGHT
    junction_params: Optional[JunctionHarmonizationParameters] = None
    post_processing: Optional[PostProcessingParameters] = None
    debug: bool = False
    debug_dir: Optional[Path] = None


@dataclass
class RoadNetworkPlan:
    """
    Result of the analysis phase.

    Holds the road networks, layers and detected junctions so a caller can
    review junctions and exclude some before the final generation. The
    analysis log travels with the plan and opens the log of the generation
    that finishes it.
    """

    materials: List[MaterialDefinition]
    base_heightmap: np.ndarray
    heightmap: np.ndarray
    meters_per_pixel: float
    networks: List[RoadNetwork] = field(default_factory=list)
    layers: List[Optional[np.ndarray]] = field(default_factory=list)
    distance_fields: Dict[int, np.ndarray] = field(default_factory=dict)
    junctions: List[JunctionSite] = field(default_factory=list)
    transformer: Optional[CoordinateTransformer] = None
    material_order_changed: bool = False
    skipped_materials: List[str] = field(default_factory=list)
    validation_warnings: List[Tuple[str, ValidationWarning]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    log: DiagnosticLog = field(default_factory=DiagnosticLog)

    def junction(self, junction_id: int) -> JunctionSite:
        for junction in self.junctions:
            if junction.id == junction_id:
                return junction
        raise KeyError(f"No junction with id {junction_id}")

    def exclude_junction(self, junction_id: int, reason: str = "") -> None:
        self.junction(junction_id).exclude(reason)

    @property
    def path_count(self) -> int:
        return sum(len(n.paths) for n in self.networks)

    @property
    def cross_section_count(self) -> int:
        return sum(len(n.sections) for n in self.networks)


@dataclass(frozen=True)
class TerrainCreationResult:
    """Outcome of one generation run. Heightmap and maps are None unless success."""

    success: bool
    stage: GenerationStage
    heightmap: Optional[np.ndarray] = None
    material_index_map: Optional[np.ndarray] = None
    material_layers: Optional[List[np.ndarray]] = None
    material_names: Tuple[str, ...] = ()
    spawn_point: Optional[SpawnPoint] = None
    min_elevation: Optional[float] = None
    max_elevation: Optional[float] = None
    junctions: Tuple[JunctionSite, ...] = ()
    validation_warnings: Tuple[Tuple[str, ValidationWarning], ...] = ()
    stage_history: Tuple[GenerationStage, ...] = ()
    counts: Dict[str, int] = field(default_factory=dict)
    material_order_changed: bool = False
    error: Optional[str] = None
    log: DiagnosticLog = field(default_factory=DiagnosticLog)


class TerrainCompositor:
    """
    Runs terrain generation requests.

    One compositor can run many requests in sequence; it holds no state
    between runs other than the caller-owned cache.

    Attributes:
        cache: Feature and transformer caches shared across runs
        verbose: Log stage progress and show progress bars
    """

    def __init__(
        self,
        cache: Optional[TerrainCache] = None,
        *,
        progress_callback: Optional[ProgressCallback] = None,
        cancellation_token: Optional[CancellationToken] = None,
        verbose: bool = True,
        log_level: int = logging.DEBUG,
    ):
        """
        Args:
            cache: Cache bundle; a disabled one is created when None
            progress_callback: Called as (stage, fraction, message)
            cancellation_token: Checked between stages
            verbose: Log stage progress and show progress bars
            log_level: Lowest level captured into the run's DiagnosticLog
        """
        self.cache = cache if cache is not None else TerrainCache(enabled=False)
        self.progress_callback = progress_callback
        self.cancellation_token = cancellation_token or CancellationToken()
        self.verbose = verbose
        self.log_level = log_level
        self.stage = GenerationStage.IDLE
        self.stage_history: List[GenerationStage] = []

    def _log(self, msg: str, *args, level: str = "info"):
        """Log message if verbose with lazy formatting."""
        if level == "warn":
            logger.warning(msg, *args)
        elif level == "error":
            logger.error(msg, *args)
        elif self.verbose:
            if level == "info":
                logger.info(msg, *args)
            elif level == "debug":
                logger.debug(msg, *args)

    def _enter(self, stage: GenerationStage, message: str = "") -> None:
        self.cancellation_token.raise_if_cancelled()
        self.stage = stage
        self.stage_history.append(stage)
        self._progress(0.0, message or stage.value)

    def _progress(self, fraction: float, message: str) -> None:
        if self.progress_callback is not None:
            self.progress_callback(self.stage, fraction, message)

    # ===== Public entry points =====

    def analyze(self, request: TerrainCreationRequest) -> RoadNetworkPlan:
        """
        Run validation, transforming and per-material processing.

        Returns:
            RoadNetworkPlan with networks and detected junctions

        Raises:
            TerrainGenerationError: On a fatal error
        """
        log = DiagnosticLog()
        with self._capture(log):
            self.stage_history = []
            plan = self._analyze(request)
        plan.log = log
        return plan

    def generate(
        self, request: TerrainCreationRequest, plan: Optional[RoadNetworkPlan] = None
    ) -> TerrainCreationResult:
        """
        Run a full generation, or finish one from an analysis plan.

        Never raises for run errors: failures and cancellation are reported
        through the returned result.

        Args:
            request: What to generate
            plan: Output of analyze(); junction exclusions made on it are honored

        Returns:
            TerrainCreationResult
        """
        log = DiagnosticLog()
        with self._capture(log):
            self.stage_history = []
            try:
                if plan is None:
                    plan = self._analyze(request)
                else:
                    log.records.extend(plan.log.records)
                    self._log("Using analysis plan with %d networks", len(plan.networks))
                result = self._finish(request, plan, log)
            except GenerationCancelled as e:
                self.stage = GenerationStage.CANCELLED
                self.stage_history.append(self.stage)
                self._log("Generation cancelled: %s", e, level="warn")
                return self._failure(GenerationStage.CANCELLED, str(e), log)
            except TerrainGenerationError as e:
                self.stage = GenerationStage.FAILED
                self.stage_history.append(self.stage)
                self._log("Generation failed: %s", e, level="error")
                return self._failure(GenerationStage.FAILED, str(e), log)
        return result

    # ===== Stages =====

    def _analyze(self, request: TerrainCreationRequest) -> RoadNetworkPlan:
        materials, order_changed, validation = self._validate(request)
        loaded, transformer, features, mpp, warnings = self._transform(request)

        plan = RoadNetworkPlan(
            materials=materials,
            base_heightmap=loaded.heightmap.copy(),
            heightmap=loaded.heightmap.copy(),
            meters_per_pixel=mpp,
            transformer=transformer,
            material_order_changed=order_changed,
            validation_warnings=validation,
            warnings=warnings,
        )
        self._process_materials(request, plan, features)

        junction_params = self._junction_params(request, plan)
        if junction_params is not None and junction_params.enable_junction_harmonization:
            detector = NetworkJunctionDetector(junction_params, mpp)
            plan.junctions = detector.detect(plan.networks)
        return plan

    def _validate(self, request: TerrainCreationRequest):
        self._enter(GenerationStage.VALIDATING)
        self._log("[1/5] Validating %d materials", len(request.materials))

        if not request.materials:
            raise TerrainGenerationError("No materials given")

        materials, changed = reorder_materials(list(request.materials))
        if changed:
            self._log("      Material order: %s", ", ".join(m.name for m in materials))

        validation: List[Tuple[str, ValidationWarning]] = []
        valid = []
        for material in materials:
            if not material.is_road:
                valid.append(material)
                continue
            errors = material.road_params.validate()
            if errors:
                self._log("Material '%s' skipped: %s", material.name, "; ".join(errors), level="error")
                continue
            for warning in get_validation_warnings(material.road_params):
                validation.append((material.name, warning))
                self._log("Material '%s': %s", material.name, warning, level="warn")
            valid.append(material)

        if not valid:
            raise TerrainGenerationError("No valid materials")
        for i, material in enumerate(valid):
            material.index = i
        return valid, changed, validation

    def _transform(self, request: TerrainCreationRequest):
        self._enter(GenerationStage.TRANSFORMING)
        self._log("[2/5] Loading heightmap and coordinate mapping")

        try:
            loaded = load_heightmap(request.heightmap, request.terrain_size)
        except HeightmapSourceError:
            raise
        except (OSError, ValueError) as e:
            raise HeightmapSourceError(f"Cannot load heightmap: {e}") from e

        warnings: List[str] = []
        transformer = self._build_transformer(request, loaded)
        if transformer is not None:
            warnings.extend(transformer.warnings)

        features: List[FeatureGeometry] = []
        collection = request.feature_collection
        if request.bounding_box is not None:
            if collection is None:
                collection = self.cache.features.load(request.bounding_box, request.feature_query)
            else:
                self.cache.features.save(request.bounding_box, collection, request.feature_query)
        if collection is not None:
            if transformer is None or not transformer.available:
                message = "Geographic features skipped: no coordinate mapping available"
                warnings.append(message)
                self._log(message, level="warn")
            else:
                features = parse_feature_collection(collection)
                self._log("      Parsed %d features", len(features))

        if request.meters_per_pixel is not None:
            mpp = request.meters_per_pixel
        elif transformer is not None and transformer.available:
            mpp = transformer.meters_per_pixel
        else:
            mpp = DEFAULT_METERS_PER_PIXEL
        self._log("      Terrain %dx%d at %.3f m/px", loaded.heightmap.shape[1], loaded.heightmap.shape[0], mpp)
        return loaded, transformer, features, mpp, warnings

    def _build_transformer(
        self, request: TerrainCreationRequest, loaded: LoadedHeightmap
    ) -> Optional[CoordinateTransformer]:
        geotransform, projection = loaded.geotransform, loaded.projection
        native_size = loaded.native_size or (loaded.heightmap.shape[1], loaded.heightmap.shape[0])

        if geotransform is None:
            bbox = request.bounding_box
            if bbox is None:
                return None
            width, height = native_size
            geotransform = GeoTransform(
                bbox.min_longitude, bbox.width / width, 0.0, bbox.max_latitude, 0.0, -bbox.height / height
            )
            projection = request.source_crs

        terrain_size = (loaded.heightmap.shape[1], loaded.heightmap.shape[0])
        key = TransformCache.make_key(geotransform.to_gdal(), native_size, terrain_size, projection)
        return self.cache.transforms.get_or_create(
            key,
            lambda: CoordinateTransformer(
                geotransform,
                native_size,
                terrain_size,
                projection=projection,
                bounding_box=request.bounding_box,
                source_crs=request.source_crs,
            ),
        )

    def _process_materials(
        self, request: TerrainCreationRequest, plan: RoadNetworkPlan, features: List[FeatureGeometry]
    ) -> None:
        self._enter(GenerationStage.PER_MATERIAL_PROCESSING)
        count = len(plan.materials)
        self._log("[3/5] Processing %d materials", count)

        processor = None
        if plan.transformer is not None and plan.transformer.available:
            processor = VectorFeatureProcessor(plan.transformer)

        shape = plan.heightmap.shape
        for i, material in enumerate(tqdm(plan.materials, desc="Materials", disable=not self.verbose)):
            self.cancellation_token.raise_if_cancelled()
            self._progress(i / count, f"Material '{material.name}'")
            try:
                layer, paths = self._resolve_layer(material, features, processor, plan)
                plan.layers.append(layer)
                if not material.is_road or (layer is None and paths is None):
                    continue

                network = build_road_network(
                    material.name,
                    material.index,
                    material.road_params,
                    plan.heightmap,
                    plan.meters_per_pixel,
                    paths=paths,
                    mask=layer if paths is None else None,
                )
                if material.road_params.exclusion_layers:
                    network.set_exclusion_mask(
                        combine_exclusion_layers(material.road_params.exclusion_layers, shape, material.name)
                    )
                before = plan.heightmap
                stamped = network.apply(plan.heightmap)
                plan.heightmap = stamped.heightmap
                plan.networks.append(network)
                plan.distance_fields[material.index] = stamped.distance
                self._log(
                    "      '%s': %d paths, %d pixels modified",
                    material.name, len(network.paths), stamped.modified_pixels,
                )
                if request.debug:
                    export_material_debug_image(
                        before, plan.heightmap, layer, material.name,
                        self._debug_dir(request) / f"material_{i:02d}_{material.name}.png",
                    )
            except (MaterialProcessingError, ValueError, RuntimeError) as e:
                self._log("Material '%s' skipped: %s", material.name, e, level="error")
                plan.skipped_materials.append(material.name)
                if len(plan.layers) <= i:
                    plan.layers.append(None)

            if plan.heightmap.shape != shape:
                raise TerrainGenerationError(f"Material '{material.name}' changed the heightmap shape")

        self._progress(1.0, "Materials done")

    def _resolve_layer(self, material, features, processor, plan):
        """Layer mask and, for vector roads, the pixel paths of one material."""
        shape = plan.heightmap.shape
        if material.layer_source is not None:
            return load_layer_mask(material.layer_source, shape, material.name), None

        selected = list(material.features) + select_features(features, material.feature_filter)
        if not selected:
            return None, None
        if processor is None:
            raise MaterialProcessingError(material.name, "has vector features but no coordinate mapping")

        width_px = None
        if material.is_road:
            width_px = material.road_params.road_width_meters / plan.meters_per_pixel
        layer = features_to_layer(processor, selected, width_px)
        paths = processor.lines_to_paths(selected) if material.is_road else None
        if paths is not None and not paths:
            paths = None
        return layer, paths

    def _finish(
        self, request: TerrainCreationRequest, plan: RoadNetworkPlan, log: DiagnosticLog
    ) -> TerrainCreationResult:
        heightmap = self._harmonize_junctions(request, plan)
        heightmap = self._post_process(request, plan, heightmap)

        self.cancellation_token.raise_if_cancelled()
        index_map = build_material_index_map(plan.layers, heightmap.shape)
        weight_layers = material_weight_layers(index_map, len(plan.materials))
        spawn = find_spawn_point(plan.networks, heightmap, plan.meters_per_pixel, request.base_height)

        self.stage = GenerationStage.DONE
        self.stage_history.append(self.stage)
        self._progress(1.0, "Done")
        self._log(
            "Generation done: elevation %.2f to %.2f, %d paths, %d junctions",
            float(heightmap.min()), float(heightmap.max()), plan.path_count, len(plan.junctions),
        )

        return TerrainCreationResult(
            success=True,
            stage=GenerationStage.DONE,
            heightmap=heightmap,
            material_index_map=index_map,
            material_layers=weight_layers,
            material_names=tuple(m.name for m in plan.materials),
            spawn_point=spawn,
            min_elevation=float(heightmap.min()),
            max_elevation=float(heightmap.max()),
            junctions=tuple(plan.junctions),
            validation_warnings=tuple(plan.validation_warnings),
            stage_history=tuple(self.stage_history),
            counts={
                "materials": len(plan.materials),
                "skipped_materials": len(plan.skipped_materials),
                "road_networks": len(plan.networks),
                "paths": plan.path_count,
                "cross_sections": plan.cross_section_count,
                "junctions": len(plan.junctions),
                "excluded_junctions": sum(j.is_excluded for j in plan.junctions),
            },
            material_order_changed=plan.material_order_changed,
            log=log,
        )

    def _harmonize_junctions(self, request: TerrainCreationRequest, plan: RoadNetworkPlan) -> np.ndarray:
        self._enter(GenerationStage.JUNCTION_HARMONIZATION)
        params = self._junction_params(request, plan)
        if params is None or not params.enable_junction_harmonization or not plan.networks:
            self._log("[4/5] Junction harmonization skipped")
            return plan.heightmap

        self._log("[4/5] Harmonizing %d junctions", len(plan.junctions))
        harmonizer = JunctionHarmonizer(params, plan.meters_per_pixel)
        changed = harmonizer.harmonize(plan.networks, plan.junctions)

        heightmap = plan.heightmap
        if changed:
            # Re-stamp every network in order so later materials still win
            heightmap = plan.base_heightmap.copy()
            for network in plan.networks:
                stamped = network.apply(heightmap)
                heightmap = stamped.heightmap
                plan.distance_fields[network.material_index] = stamped.distance
            self._log("      Re-stamped %d networks", len(plan.networks))

        if request.debug:
            export_network_debug_image(
                heightmap, plan.networks, plan.junctions, self._debug_dir(request) / "road_networks.png"
            )
        return heightmap

    def _post_process(
        self, request: TerrainCreationRequest, plan: RoadNetworkPlan, heightmap: np.ndarray
    ) -> np.ndarray:
        self._enter(GenerationStage.POST_PROCESSING)
        params = request.post_processing
        if params is None:
            params = next(
                (
                    n.params.post_processing
                    for n in plan.networks
                    if n.params.post_processing.enabled
                ),
                None,
            )
        if params is None or not params.enabled or not plan.distance_fields:
            self._log("[5/5] Post-processing skipped")
            return heightmap

        fields = [
            (plan.distance_fields[n.material_index], n.params.half_width_meters + params.mask_extension_meters)
            for n in plan.networks
            if n.material_index in plan.distance_fields
        ]
        mask = build_smoothing_mask(fields, heightmap.shape)
        self._log("[5/5] Post-processing %d pixels", int(mask.sum()))
        return PostProcessingSmoother(params).smooth(heightmap, mask)

    # ===== Helpers =====

    @staticmethod
    def _junction_params(
        request: TerrainCreationRequest, plan: RoadNetworkPlan
    ) -> Optional[JunctionHarmonizationParameters]:
        if request.junction_params is not None:
            return request.junction_params
        for network in plan.networks:
            if network.supports_junctions:
                return network.params.junctions
        return None

    @staticmethod
    def _debug_dir(request: TerrainCreationRequest) -> Path:
        return Path(request.debug_dir) if request.debug_dir is not None else DEBUG_DIR

    def _failure(self, stage: GenerationStage, error: str, log: DiagnosticLog) -> TerrainCreationResult:
        return TerrainCreationResult(
            success=False,
            stage=stage,
            stage_history=tuple(self.stage_history),
            error=error,
            log=log,
        )

    def _capture(self, log: DiagnosticLog):
        return _LogCapture(log, self.log_level)


class _LogCapture:
    """Attach a DiagnosticLogHandler to the package logger for one run."""

    def __init__(self, log: DiagnosticLog, level: int):
        self.handler = DiagnosticLogHandler(log, level)
        self.level = level
        self.logger = logging.getLogger(PACKAGE_LOGGER)
        self._previous_level = None

    def __enter__(self):
        self._previous_level = self.logger.level
        if self.logger.getEffectiveLevel() > self.level:
            self.logger.setLevel(self.level)
        self.logger.addHandler(self.handler)
        return self.handler

    def __exit__(self, exc_type, exc, tb):
        self.logger.removeHandler(self.handler)
        self.logger.setLevel(self._previous_level)
        return False
