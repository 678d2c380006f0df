"""
Tests for the terrain generation pipeline.
"""

import pytest
import numpy as np


@pytest.fixture
def mask_request(sloped_heightmap, straight_road_layer):
    """Grass base plus one road material painted from a layer mask."""
    from src.roadterrain.data_loading import HeightmapSource
    from src.roadterrain.materials import MaterialDefinition
    from src.roadterrain.parameters import RoadSmoothingParameters
    from src.roadterrain.pipeline import TerrainCreationRequest

    return TerrainCreationRequest(
        heightmap=HeightmapSource(array=sloped_heightmap),
        materials=[
            MaterialDefinition("grass"),
            MaterialDefinition("road", layer_source=straight_road_layer, road_params=RoadSmoothingParameters()),
        ],
        meters_per_pixel=1.0,
    )


@pytest.fixture
def feature_request(road_bbox, road_feature_collection):
    """Two road materials from one feature collection, crossing at (64, 64)."""
    from src.roadterrain.data_loading import HeightmapSource
    from src.roadterrain.materials import MaterialDefinition
    from src.roadterrain.parameters import RoadSmoothingParameters
    from src.roadterrain.pipeline import TerrainCreationRequest

    return TerrainCreationRequest(
        heightmap=HeightmapSource(array=np.full((128, 128), 100.0)),
        materials=[
            MaterialDefinition("grass"),
            MaterialDefinition(
                "asphalt", road_params=RoadSmoothingParameters(), feature_filter={"highway": "primary"}
            ),
            MaterialDefinition(
                "gravel",
                road_params=RoadSmoothingParameters(road_width_meters=4.0),
                feature_filter={"highway": "track"},
            ),
        ],
        meters_per_pixel=1.0,
        bounding_box=road_bbox,
        feature_collection=road_feature_collection,
    )


class TestGenerate:
    """Tests for full generation runs."""

    def test_layer_mask_run(self, mask_request, sloped_heightmap):
        from src.roadterrain.pipeline import GenerationStage, TerrainCompositor

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.success
        assert result.stage == GenerationStage.DONE
        assert result.stage_history == (
            GenerationStage.VALIDATING,
            GenerationStage.TRANSFORMING,
            GenerationStage.PER_MATERIAL_PROCESSING,
            GenerationStage.JUNCTION_HARMONIZATION,
            GenerationStage.POST_PROCESSING,
            GenerationStage.DONE,
        )
        assert result.heightmap.shape == (128, 128)
        assert result.material_names == ("grass", "road")
        assert result.material_index_map[64, 64] == 1
        assert result.material_index_map[10, 10] == 0
        assert result.counts["road_networks"] == 1
        assert result.counts["paths"] == 1
        assert result.counts["junctions"] == 0
        assert result.spawn_point.is_on_road
        assert result.min_elevation == pytest.approx(result.heightmap.min())

    def test_terrain_away_from_roads_untouched(self, mask_request, sloped_heightmap):
        from src.roadterrain.pipeline import TerrainCompositor

        result = TerrainCompositor(verbose=False).generate(mask_request)

        np.testing.assert_array_equal(result.heightmap[:30], sloped_heightmap[:30])
        np.testing.assert_array_equal(result.heightmap[100:], sloped_heightmap[100:])
        assert not np.allclose(result.heightmap[60:68], sloped_heightmap[60:68])

    def test_weight_layers_cover_every_pixel(self, mask_request):
        from src.roadterrain.pipeline import TerrainCompositor

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert len(result.material_layers) == 2
        total = sum(layer.astype(int) for layer in result.material_layers)
        assert (total == 255).all()

    def test_feature_run_finds_cross_material_crossing(self, feature_request):
        from src.roadterrain.pipeline import TerrainCompositor

        result = TerrainCompositor(verbose=False).generate(feature_request)

        assert result.success
        assert result.counts["road_networks"] == 2
        assert result.counts["junctions"] == 1
        junction = result.junctions[0]
        assert junction.kind == "mid_spline_crossing"
        assert junction.is_cross_material
        np.testing.assert_allclose(junction.position, [64.0, 64.0], atol=1e-6)
        assert result.material_index_map[64, 40] == 1
        assert result.material_index_map[40, 64] == 2
        assert result.material_index_map[64, 64] == 2
        assert result.material_index_map[5, 5] == 0

    def test_flat_terrain_stays_flat(self, feature_request):
        from src.roadterrain.pipeline import TerrainCompositor

        result = TerrainCompositor(verbose=False).generate(feature_request)

        np.testing.assert_allclose(result.heightmap, 100.0, atol=1e-6)

    def test_material_without_layer_moves_last(self, mask_request):
        from src.roadterrain.materials import MaterialDefinition
        from src.roadterrain.pipeline import TerrainCompositor

        mask_request.materials.insert(1, MaterialDefinition("snow"))

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.material_order_changed
        assert result.material_names == ("grass", "road", "snow")
        assert result.material_index_map[64, 64] == 1

    def test_validation_warnings_reported(self, mask_request):
        from src.roadterrain.parameters import RoadSmoothingParameters
        from src.roadterrain.pipeline import TerrainCompositor

        mask_request.materials[1].road_params = RoadSmoothingParameters(
            global_leveling_strength=0.8, terrain_affected_range_meters=5.0
        )

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.success
        names = [name for name, _ in result.validation_warnings]
        assert "road" in names

    def test_progress_callback(self, mask_request):
        from src.roadterrain.pipeline import GenerationStage, TerrainCompositor

        calls = []
        compositor = TerrainCompositor(
            progress_callback=lambda stage, fraction, message: calls.append((stage, fraction)),
            verbose=False,
        )
        compositor.generate(mask_request)

        stages = [stage for stage, _ in calls]
        assert stages[0] == GenerationStage.VALIDATING
        assert stages[-1] == GenerationStage.DONE
        assert all(0.0 <= fraction <= 1.0 for _, fraction in calls)

    def test_log_is_captured(self, mask_request):
        from src.roadterrain.pipeline import TerrainCompositor

        result = TerrainCompositor(verbose=True).generate(mask_request)

        assert len(result.log) > 0
        assert any("Validating" in line for line in result.log.info)

    def test_debug_images(self, mask_request, tmp_path):
        from src.roadterrain.pipeline import TerrainCompositor

        mask_request.debug = True
        mask_request.debug_dir = tmp_path / "debug"

        TerrainCompositor(verbose=False).generate(mask_request)

        assert (tmp_path / "debug" / "material_01_road.png").exists()
        assert (tmp_path / "debug" / "road_networks.png").exists()


    def test_exclusion_layer_keeps_material_but_not_smoothing(self, mask_request, sloped_heightmap):
        from src.roadterrain.pipeline import TerrainCompositor

        zone = np.zeros(sloped_heightmap.shape, dtype=np.uint8)
        zone[:, 50:70] = 255
        mask_request.materials[1].road_params.exclusion_layers = [zone]

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.success
        np.testing.assert_array_equal(result.heightmap[:, 50:70], sloped_heightmap[:, 50:70])
        assert not np.allclose(result.heightmap[60:68, 20:40], sloped_heightmap[60:68, 20:40])
        assert result.material_index_map[64, 60] == 1


class TestFailures:
    """Tests for failed and cancelled runs."""

    def test_missing_heightmap(self, mask_request, tmp_path):
        from src.roadterrain.data_loading import HeightmapSource
        from src.roadterrain.pipeline import GenerationStage, TerrainCompositor

        mask_request.heightmap = HeightmapSource(path=tmp_path / "missing.tif")

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert not result.success
        assert result.stage == GenerationStage.FAILED
        assert result.heightmap is None
        assert "does not exist" in result.error
        assert result.stage_history[-2:] == (GenerationStage.TRANSFORMING, GenerationStage.FAILED)
        assert result.log.errors

    def test_no_materials(self, mask_request):
        from src.roadterrain.pipeline import GenerationStage, TerrainCompositor

        mask_request.materials = []

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.stage == GenerationStage.FAILED
        assert result.stage_history == (GenerationStage.VALIDATING, GenerationStage.FAILED)

    def test_no_valid_materials(self, mask_request):
        from src.roadterrain.materials import MaterialDefinition
        from src.roadterrain.parameters import RoadSmoothingParameters
        from src.roadterrain.pipeline import GenerationStage, TerrainCompositor

        mask_request.materials = [
            MaterialDefinition("road", road_params=RoadSmoothingParameters(road_width_meters=-1.0))
        ]

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.stage == GenerationStage.FAILED
        assert "No valid materials" in result.error

    def test_invalid_material_is_dropped(self, mask_request):
        from src.roadterrain.materials import MaterialDefinition
        from src.roadterrain.parameters import RoadSmoothingParameters
        from src.roadterrain.pipeline import TerrainCompositor

        mask_request.materials.append(
            MaterialDefinition("bad", layer_source="x.png", road_params=RoadSmoothingParameters(road_width_meters=0.0))
        )

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.success
        assert result.material_names == ("grass", "road")

    def test_cancelled_before_start(self, mask_request):
        from src.roadterrain.pipeline import CancellationToken, GenerationStage, TerrainCompositor

        token = CancellationToken()
        token.cancel()

        result = TerrainCompositor(cancellation_token=token, verbose=False).generate(mask_request)

        assert not result.success
        assert result.stage == GenerationStage.CANCELLED
        assert result.stage_history == (GenerationStage.CANCELLED,)

    def test_cancelled_between_stages(self, mask_request):
        from src.roadterrain.pipeline import CancellationToken, GenerationStage, TerrainCompositor

        token = CancellationToken()

        def on_progress(stage, fraction, message):
            if stage == GenerationStage.TRANSFORMING:
                token.cancel()

        compositor = TerrainCompositor(progress_callback=on_progress, cancellation_token=token, verbose=False)
        result = compositor.generate(mask_request)

        assert result.stage == GenerationStage.CANCELLED
        assert result.stage_history == (
            GenerationStage.VALIDATING,
            GenerationStage.TRANSFORMING,
            GenerationStage.CANCELLED,
        )

    def test_layer_size_mismatch_is_a_warning(self, mask_request):
        from src.roadterrain.pipeline import TerrainCompositor

        mask_request.materials[1].layer_source = np.zeros((64, 64), dtype=np.uint8)

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.success
        assert result.counts["road_networks"] == 0
        assert any("does not match" in w for w in result.log.warnings)

    def test_unreadable_layer_skips_material(self, mask_request, tmp_path):
        from src.roadterrain.pipeline import TerrainCompositor

        mask_request.materials[1].layer_source = tmp_path / "missing_layer.png"

        result = TerrainCompositor(verbose=False).generate(mask_request)

        assert result.success
        assert result.counts["skipped_materials"] == 1
        assert result.log.errors


class TestTwoPhase:
    """Tests for analyze() followed by generate(plan=...)."""

    def test_analyze_returns_plan(self, feature_request):
        from src.roadterrain.pipeline import TerrainCompositor

        plan = TerrainCompositor(verbose=False).analyze(feature_request)

        assert len(plan.networks) == 2
        assert plan.path_count == 2
        assert plan.cross_section_count > 0
        assert len(plan.junctions) == 1
        assert plan.junctions[0].target_elevation is None

    def test_excluded_junction_is_honored(self, feature_request):
        from src.roadterrain.pipeline import GenerationStage, TerrainCompositor

        compositor = TerrainCompositor(verbose=False)
        plan = compositor.analyze(feature_request)
        junction_id = plan.junctions[0].id
        plan.exclude_junction(junction_id, "bridge")

        result = compositor.generate(feature_request, plan=plan)

        assert result.success
        assert result.counts["excluded_junctions"] == 1
        assert result.junctions[0].is_excluded
        assert result.junctions[0].exclusion_reason == "bridge"
        assert result.junctions[0].target_elevation is None
        assert result.stage_history == (
            GenerationStage.JUNCTION_HARMONIZATION,
            GenerationStage.POST_PROCESSING,
            GenerationStage.DONE,
        )

    def test_plan_carries_analysis_log(self, feature_request):
        from src.roadterrain.pipeline import TerrainCompositor

        compositor = TerrainCompositor(verbose=True)
        plan = compositor.analyze(feature_request)

        assert any("Validating" in line for line in plan.log.info)

        result = compositor.generate(feature_request, plan=plan)

        assert any("Validating" in line for line in result.log.info)
        assert any("Using analysis plan" in line for line in result.log.info)

    def test_regenerate_after_exclusion_matches_fresh_exclusion(self, feature_request, peaked_heightmap):
        from src.roadterrain.data_loading import HeightmapSource
        from src.roadterrain.pipeline import TerrainCompositor

        feature_request.heightmap = HeightmapSource(array=peaked_heightmap)
        compositor = TerrainCompositor(verbose=False)

        plan = compositor.analyze(feature_request)
        compositor.generate(feature_request, plan=plan)
        assert plan.junctions[0].target_elevation is not None
        plan.exclude_junction(plan.junctions[0].id, "bridge")
        regenerated = compositor.generate(feature_request, plan=plan)

        fresh_plan = compositor.analyze(feature_request)
        fresh_plan.exclude_junction(fresh_plan.junctions[0].id, "bridge")
        fresh = compositor.generate(feature_request, plan=fresh_plan)

        assert regenerated.success
        assert regenerated.junctions[0].target_elevation is None
        np.testing.assert_allclose(regenerated.heightmap, fresh.heightmap)

    def test_unknown_junction(self, feature_request):
        from src.roadterrain.pipeline import TerrainCompositor

        plan = TerrainCompositor(verbose=False).analyze(feature_request)

        with pytest.raises(KeyError):
            plan.junction(999)

    def test_analyze_raises_on_fatal_error(self, mask_request):
        from src.roadterrain.exceptions import TerrainGenerationError
        from src.roadterrain.pipeline import TerrainCompositor

        mask_request.materials = []

        with pytest.raises(TerrainGenerationError):
            TerrainCompositor(verbose=False).analyze(mask_request)
