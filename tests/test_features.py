"""
Tests for vector feature ingestion and rasterization.
"""

import pytest
import numpy as np


def _processor(road_bbox, size=128, **kwargs):
    from src.roadterrain.features import VectorFeatureProcessor
    from src.roadterrain.geo import CoordinateTransformer, GeoTransform

    geotransform = GeoTransform(
        road_bbox.min_longitude, road_bbox.width / size, 0.0, road_bbox.max_latitude, 0.0, -road_bbox.height / size
    )
    transformer = CoordinateTransformer(geotransform, (size, size), size, projection="EPSG:4326")
    return VectorFeatureProcessor(transformer, **kwargs)


class TestParseFeatureCollection:
    """Tests for parse_feature_collection."""

    def test_parses_lines_and_polygons(self, road_feature_collection):
        from src.roadterrain.features import parse_feature_collection

        features = parse_feature_collection(road_feature_collection)

        assert [f.kind for f in features] == ["LineString", "LineString", "Polygon"]
        assert features[0].properties["highway"] == "primary"
        assert features[0].coordinates[0] == (-83.09, 42.35)

    def test_explodes_multi_geometries(self):
        from src.roadterrain.features import parse_feature_collection

        collection = {
            "features": [
                {
                    "properties": {"highway": "residential"},
                    "geometry": {
                        "type": "MultiLineString",
                        "coordinates": [[[0, 0], [1, 1]], [[2, 2], [3, 3]]],
                    },
                }
            ]
        }
        features = parse_feature_collection(collection)

        assert len(features) == 2
        assert all(f.properties == {"highway": "residential"} for f in features)

    def test_polygon_holes(self):
        from src.roadterrain.features import parse_feature_collection

        outer = [[0, 0], [10, 0], [10, 10], [0, 10], [0, 0]]
        hole = [[4, 4], [6, 4], [6, 6], [4, 6], [4, 4]]
        features = parse_feature_collection(
            {"features": [{"geometry": {"type": "Polygon", "coordinates": [outer, hole]}}]}
        )

        assert len(features[0].holes) == 1

    def test_malformed_features_are_skipped(self):
        from src.roadterrain.features import parse_feature_collection

        collection = {
            "features": [
                {"geometry": {"type": "LineString", "coordinates": [[0, 0]]}},
                {"geometry": None},
                {"geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 0]]}},
            ]
        }
        assert len(parse_feature_collection(collection)) == 1

    def test_feature_geometry_validation(self):
        from src.roadterrain.features import FeatureGeometry

        with pytest.raises(ValueError):
            FeatureGeometry("Point", [(0.0, 0.0)])
        with pytest.raises(ValueError):
            FeatureGeometry("Polygon", [(0.0, 0.0), (1.0, 0.0)])


class TestPathHelpers:
    """Tests for path utilities."""

    def test_path_length(self):
        from src.roadterrain.features import path_length

        assert path_length(np.array([[0.0, 0.0], [3.0, 4.0], [3.0, 10.0]])) == pytest.approx(11.0)
        assert path_length(np.array([[1.0, 1.0]])) == 0.0

    def test_remove_duplicate_points(self):
        from src.roadterrain.features import remove_duplicate_points

        points = np.array([[0.0, 0.0], [0.001, 0.0], [1.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
        cleaned = remove_duplicate_points(points, tolerance=0.01)

        np.testing.assert_array_equal(cleaned, [[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])

    def test_join_adjacent_paths(self):
        from src.roadterrain.features import join_adjacent_paths, path_length

        a = np.array([[0.0, 0.0], [5.0, 0.0]])
        b = np.array([[10.0, 0.0], [5.2, 0.0]])
        c = np.array([[50.0, 50.0], [60.0, 50.0]])

        joined = join_adjacent_paths([a, b, c], tolerance=0.5)

        assert len(joined) == 2
        assert path_length(joined[0]) == pytest.approx(10.0)


class TestVectorFeatureProcessor:
    """Tests for projecting features into terrain pixels."""

    def test_lines_to_paths(self, road_bbox, road_feature_collection):
        from src.roadterrain.features import parse_feature_collection

        processor = _processor(road_bbox)
        paths = processor.lines_to_paths(parse_feature_collection(road_feature_collection))

        assert len(paths) == 2
        horizontal = paths[0]
        np.testing.assert_allclose(horizontal[:, 1], 64.0, atol=1e-6)
        assert sorted([horizontal[0, 0], horizontal[-1, 0]]) == pytest.approx([12.8, 115.2])

    def test_lines_are_clipped_to_terrain(self, road_bbox):
        from src.roadterrain.features import FeatureGeometry

        processor = _processor(road_bbox)
        feature = FeatureGeometry("LineString", [(-83.2, 42.35), (-83.05, 42.35)])

        (path,) = processor.lines_to_paths([feature])

        assert sorted([path[0, 0], path[-1, 0]]) == pytest.approx([0.0, 64.0], abs=1e-6)

    def test_lines_outside_terrain_are_dropped(self, road_bbox):
        from src.roadterrain.features import FeatureGeometry

        processor = _processor(road_bbox)
        feature = FeatureGeometry("LineString", [(-84.0, 40.0), (-83.9, 40.1)])

        assert processor.lines_to_paths([feature]) == []

    def test_short_paths_are_dropped(self, road_bbox):
        from src.roadterrain.features import FeatureGeometry

        processor = _processor(road_bbox, min_path_length=20.0)
        feature = FeatureGeometry("LineString", [(-83.05, 42.35), (-83.049, 42.35)])

        assert processor.lines_to_paths([feature]) == []

    def test_polygons_to_mask(self, road_bbox, road_feature_collection):
        from src.roadterrain.features import parse_feature_collection

        processor = _processor(road_bbox)
        mask = processor.polygons_to_mask(parse_feature_collection(road_feature_collection))

        assert mask.shape == (128, 128)
        assert mask.dtype == np.uint8
        # Park spans x 12.8-38.4 and y 12.8-38.4
        assert mask[25, 25] == 255
        assert mask[64, 64] == 0


class TestRasterization:
    """Tests for mask rasterization helpers."""

    def test_rasterize_paths_width(self):
        from src.roadterrain.features import rasterize_paths

        mask = rasterize_paths([np.array([[10.0, 50.5], [90.0, 50.5]])], 6.0, (100, 100))

        assert mask[50, 50] == 255
        assert mask[52, 50] == 255
        assert mask[58, 50] == 0
        assert mask[50, 5] == 0

    def test_rasterize_empty(self):
        from src.roadterrain.features import rasterize_polygons

        mask = rasterize_polygons([], (10, 20))
        assert mask.shape == (10, 20)
        assert not mask.any()

    def test_binarize_layer_threshold_is_exclusive(self):
        from src.roadterrain.features import binarize_layer

        layer = np.array([[0, 128], [129, 255]], dtype=np.uint8)

        np.testing.assert_array_equal(binarize_layer(layer, 128), [[False, False], [True, True]])

    def test_binarize_layer_rejects_3d(self):
        from src.roadterrain.features import binarize_layer

        with pytest.raises(ValueError):
            binarize_layer(np.zeros((2, 2, 3)))

    def test_features_to_layer_includes_line_corridors(self, road_bbox, road_feature_collection):
        from src.roadterrain.features import features_to_layer, parse_feature_collection

        processor = _processor(road_bbox)
        features = parse_feature_collection(road_feature_collection)

        without_lines = features_to_layer(processor, features)
        with_lines = features_to_layer(processor, features, line_width_pixels=4.0)

        assert without_lines[64, 90] == 0
        assert with_lines[64, 90] == 255
        assert with_lines[25, 25] == 255
