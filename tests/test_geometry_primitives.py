"""Tests for geometry_primitives module."""
import numpy as np
import pytest
from shapely.geometry import Polygon

from geometry_primitives import (
    Transform,
    bounds_center,
    bounds_min,
    bounding_box,
    convex_hull,
    distance,
    point_in_polygon_2d,
    polygons_overlap,
    sort_vertices,
    unique_points,
)

SQUARE = [(0, 0), (1, 0), (1, 1), (0, 1)]


class TestTransform:

    def test_translation_moves_points(self):
        t = Transform.translation(2.0, -1.0)
        assert t.apply_point((1.0, 1.0)) == (3.0, 0.0)
        assert t.origin == (2.0, -1.0)

    def test_composition_applies_right_first(self):
        scale = Transform.scaling((0.0, 0.0), 2.0, 2.0)
        move = Transform.translation(1.0, 0.0)
        assert (scale @ move).apply_point((0.0, 0.0)) == (2.0, 0.0)
        assert (move @ scale).apply_point((0.0, 0.0)) == (1.0, 0.0)

    def test_negative_scale_mirrors_about_center(self):
        mirror = Transform.scaling((1.0, 1.0), -1.0, 1.0)
        assert mirror.apply_point((2.0, 1.0)) == (0.0, 1.0)
        assert mirror.apply_point((1.0, 5.0)) == (1.0, 5.0)

    def test_inverse_round_trip(self):
        t = Transform.translation(0.5, 0.25) @ Transform.scaling((0.0, 0.0), 2.0, 4.0)
        assert (t @ t.inverse()).is_identity

    def test_list_round_trip_is_exact(self):
        t = Transform.translation(0.375, 8.125)
        assert Transform.from_list(t.to_list()) == t

    def test_equality_is_exact(self):
        assert Transform.translation(0.1, 0.0) != Transform.translation(0.1 + 1e-12, 0.0)

    def test_copy_is_independent(self):
        t = Transform.translation(1.0, 1.0)
        c = t.copy()
        c.matrix[0, 2] = 5.0
        assert t.origin == (1.0, 1.0)


class TestPointSets:

    def test_bounding_box_and_center(self):
        pts = [(1, 2), (3, -1), (0, 0)]
        assert bounding_box(pts) == (0, -1, 3, 2)
        assert bounds_center(pts) == (1.5, 0.5)
        assert bounds_min(pts) == (0, -1)

    def test_bounding_box_empty_raises(self):
        with pytest.raises(ValueError):
            bounding_box([])

    def test_unique_points_keeps_order_and_drops_z(self):
        assert unique_points([(1, 1, 5), (0, 0), (1, 1)]) == [(1.0, 1.0), (0.0, 0.0)]

    def test_convex_hull_drops_collinear_points(self):
        pts = [(0, 0), (1, 0), (2, 0), (2, 1), (1, 1), (0, 1)]
        assert convex_hull(pts) == [(0, 0), (2, 0), (2, 1), (0, 1)]

    def test_convex_hull_drops_interior_points(self):
        hull = convex_hull(SQUARE + [(0.5, 0.5)])
        assert sorted(hull) == sorted((float(x), float(y)) for x, y in SQUARE)

    def test_sort_vertices_keeps_every_point(self):
        pts = [(1, 1), (0, 0), (0, 1), (1, 0), (0.5, 0)]
        ordered = sort_vertices(pts)
        assert len(ordered) == 5
        assert ordered[0] == (0.0, 0.0)
        assert Polygon(ordered).is_valid

    def test_distance(self):
        assert distance((0, 0), (3, 4)) == pytest.approx(5.0)


class TestPredicates:

    def test_point_on_edge_inclusive(self):
        assert point_in_polygon_2d((1, 0.5), SQUARE, inclusive=True)
        assert not point_in_polygon_2d((1, 0.5), SQUARE, inclusive=False)

    def test_point_outside(self):
        assert not point_in_polygon_2d((1.5, 0.5), SQUARE)

    def test_z_is_ignored(self):
        assert point_in_polygon_2d((0.5, 0.5, 100.0), SQUARE)

    def test_accepts_shapely_polygon(self):
        assert point_in_polygon_2d((0.5, 0.5), Polygon(SQUARE))

    def test_touching_squares_do_not_overlap(self):
        right = [(x + 1, y) for x, y in SQUARE]
        assert not polygons_overlap(SQUARE, right)

    def test_intersecting_squares_overlap(self):
        shifted = [(x + 0.5, y) for x, y in SQUARE]
        assert polygons_overlap(SQUARE, shifted)

    def test_degenerate_outline_never_overlaps(self):
        assert not polygons_overlap(SQUARE, [(0.5, 0.5)])

    def test_direction_vectors_are_arrays(self):
        from geometry_primitives import direction_vector
        np.testing.assert_array_equal(direction_vector((1, 1), (3, 0)), [2.0, -1.0])
