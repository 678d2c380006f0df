"""
Tests for materials, layer masks and the material index map.
"""

import logging

import pytest
import numpy as np
from PIL import Image


class TestMaterialDefinition:
    """Tests for MaterialDefinition."""

    def test_road_and_layer_flags(self):
        from src.roadterrain.materials import MaterialDefinition
        from src.roadterrain.parameters import RoadSmoothingParameters

        grass = MaterialDefinition("grass")
        road = MaterialDefinition("road", layer_source="road.png", road_params=RoadSmoothingParameters())
        filtered = MaterialDefinition("track", feature_filter={"highway": "track"})

        assert not grass.is_road and not grass.has_layer
        assert road.is_road and road.has_layer
        assert filtered.has_layer

    def test_dict_round_trip(self):
        from src.roadterrain.materials import MaterialDefinition
        from src.roadterrain.parameters import RoadSmoothingParameters

        material = MaterialDefinition(
            "asphalt",
            layer_source="layers/asphalt.png",
            road_params=RoadSmoothingParameters(road_width_meters=10.0),
            feature_filter={"highway": ["primary", "secondary"]},
            index=2,
        )

        restored = MaterialDefinition.from_dict(material.to_dict())

        assert restored.name == "asphalt"
        assert restored.layer_source == "layers/asphalt.png"
        assert restored.road_params.road_width_meters == 10.0
        assert restored.feature_filter == {"highway": ["primary", "secondary"]}
        assert restored.index == 2

    def test_array_layer_not_serialized(self):
        from src.roadterrain.materials import MaterialDefinition

        data = MaterialDefinition("a", layer_source=np.zeros((4, 4), dtype=np.uint8)).to_dict()

        assert data["layer_source"] is None
        assert data["road_params"] is None


class TestReorderMaterials:
    """Tests for reorder_materials."""

    def test_material_without_layer_moves_to_end(self):
        from src.roadterrain.materials import MaterialDefinition, reorder_materials

        a = MaterialDefinition("A")
        b = MaterialDefinition("B")
        c = MaterialDefinition("C", layer_source="c.png")

        ordered, changed = reorder_materials([a, b, c])

        assert [m.name for m in ordered] == ["A", "C", "B"]
        assert [m.index for m in ordered] == [0, 1, 2]
        assert changed

    def test_base_material_stays_first(self):
        from src.roadterrain.materials import MaterialDefinition, reorder_materials

        ordered, changed = reorder_materials(
            [MaterialDefinition("base"), MaterialDefinition("x", layer_source="x.png")]
        )

        assert [m.name for m in ordered] == ["base", "x"]
        assert not changed

    def test_warning_logged(self, caplog):
        from src.roadterrain.materials import MaterialDefinition, reorder_materials

        with caplog.at_level(logging.WARNING, logger="src.roadterrain.materials"):
            reorder_materials(
                [MaterialDefinition("A"), MaterialDefinition("B"), MaterialDefinition("C", layer_source="c.png")]
            )

        assert "'B'" in caplog.text

    def test_empty(self):
        from src.roadterrain.materials import reorder_materials

        assert reorder_materials([]) == ([], False)


class TestLoadLayerMask:
    """Tests for load_layer_mask."""

    def test_png_layer(self, tmp_path):
        from src.roadterrain.materials import load_layer_mask

        data = np.zeros((32, 48), dtype=np.uint8)
        data[10:20, :] = 255
        path = tmp_path / "road.png"
        Image.fromarray(data).save(path)

        layer = load_layer_mask(path, (32, 48), "road")

        assert layer.dtype == np.uint8
        np.testing.assert_array_equal(layer, data)

    def test_rgb_image_is_converted_to_grey(self, tmp_path):
        from src.roadterrain.materials import load_layer_mask

        rgb = np.zeros((16, 16, 3), dtype=np.uint8)
        rgb[:8] = 255
        path = tmp_path / "rgb.png"
        Image.fromarray(rgb).save(path)

        layer = load_layer_mask(str(path), (16, 16))

        assert layer.shape == (16, 16)
        assert layer[0, 0] == 255 and layer[15, 0] == 0

    def test_size_mismatch_is_ignored(self, caplog):
        from src.roadterrain.materials import load_layer_mask

        with caplog.at_level(logging.WARNING, logger="src.roadterrain.materials"):
            layer = load_layer_mask(np.zeros((10, 10), dtype=np.uint8), (20, 20), "road")

        assert layer is None
        assert "does not match" in caplog.text

    def test_missing_file_raises(self, tmp_path):
        from src.roadterrain.exceptions import MaterialProcessingError
        from src.roadterrain.materials import load_layer_mask

        with pytest.raises(MaterialProcessingError, match="road"):
            load_layer_mask(tmp_path / "missing.png", (10, 10), "road")

    def test_non_image_raises(self, tmp_path):
        from src.roadterrain.exceptions import MaterialProcessingError
        from src.roadterrain.materials import load_layer_mask

        path = tmp_path / "layer.png"
        path.write_text("not an image")

        with pytest.raises(MaterialProcessingError):
            load_layer_mask(path, (10, 10), "road")

    def test_bool_array(self):
        from src.roadterrain.materials import load_layer_mask

        mask = np.zeros((5, 5), dtype=bool)
        mask[2] = True

        layer = load_layer_mask(mask, (5, 5))

        assert layer.dtype == np.uint8
        assert set(np.unique(layer)) == {0, 255}
        assert (layer[2] == 255).all()

    def test_3d_array_raises(self):
        from src.roadterrain.exceptions import MaterialProcessingError
        from src.roadterrain.materials import load_layer_mask

        with pytest.raises(MaterialProcessingError):
            load_layer_mask(np.zeros((5, 5, 3)), (5, 5))


class TestMaterialIndexMap:
    """Tests for the index map and weight layers."""

    def test_highest_index_wins(self):
        from src.roadterrain.materials import build_material_index_map

        a = np.zeros((4, 4), dtype=np.uint8)
        a[:, :3] = 255
        b = np.zeros((4, 4), dtype=np.uint8)
        b[:, 2:] = 200

        index_map = build_material_index_map([None, a, b], (4, 4))

        np.testing.assert_array_equal(index_map[0], [1, 1, 2, 2])

    def test_threshold_and_base(self):
        from src.roadterrain.materials import build_material_index_map

        base_layer = np.full((2, 2), 255, dtype=np.uint8)
        faint = np.full((2, 2), 127, dtype=np.uint8)

        index_map = build_material_index_map([base_layer, faint], (2, 2))

        assert (index_map == 0).all()

    def test_weight_layers(self):
        from src.roadterrain.materials import material_weight_layers

        index_map = np.array([[0, 1], [2, 1]], dtype=np.uint8)

        layers = material_weight_layers(index_map, 3)

        assert len(layers) == 3
        np.testing.assert_array_equal(layers[1], [[0, 255], [0, 255]])
        total = sum(layer.astype(int) for layer in layers)
        assert (total == 255).all()


class TestSelectFeatures:
    """Tests for select_features."""

    @pytest.fixture
    def features(self):
        from src.roadterrain.features import FeatureGeometry

        line = [(0.0, 0.0), (1.0, 1.0)]
        return [
            FeatureGeometry("LineString", line, properties={"highway": "primary", "name": "Main"}),
            FeatureGeometry("LineString", line, properties={"highway": "track"}),
            FeatureGeometry("LineString", line, properties={"waterway": "river"}),
        ]

    def test_single_value(self, features):
        from src.roadterrain.materials import select_features

        selected = select_features(features, {"highway": "track"})

        assert len(selected) == 1
        assert selected[0].properties["highway"] == "track"

    def test_list_of_values(self, features):
        from src.roadterrain.materials import select_features

        assert len(select_features(features, {"highway": ["primary", "track"]})) == 2

    def test_wildcard(self, features):
        from src.roadterrain.materials import select_features

        assert len(select_features(features, {"highway": "*"})) == 2
        assert len(select_features(features, {"highway": "*", "name": "Main"})) == 1

    def test_empty_filter_selects_nothing(self, features):
        from src.roadterrain.materials import select_features

        assert select_features(features, {}) == []
