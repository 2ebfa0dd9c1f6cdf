"""Tests for StretchRule."""
import pytest

from errors import SelectionError
from geometry_primitives import Transform
from grammar_rules import StretchRule


@pytest.fixture
def stretch_rule(merge_controller):
    return merge_controller.define_stretch_rule(
        "S", stretch_x=True, min_factor=0.5, max_factor=2.0, definition_names=["unit"],
    )


class TestScaleFactor:

    @pytest.mark.parametrize("value, expected", [
        (0, 0.5),
        (10, 2.0),
        (5, 1.25),
        (-3, 0.5),
        (25, 2.0),
    ])
    def test_maps_ui_range(self, stretch_rule, value, expected):
        assert stretch_rule.scale_factor(value) == pytest.approx(expected)

    @pytest.mark.parametrize("kwargs", [
        {"stretch_x": False, "stretch_y": False},
        {"min_factor": 0.0},
        {"min_factor": 3.0, "max_factor": 2.0},
        {"definition_names": []},
    ])
    def test_invalid_parameters(self, merge_controller, kwargs):
        params = {
            "stretch_x": True, "stretch_y": False, "min_factor": 0.5,
            "max_factor": 2.0, "definition_names": ["unit"],
        }
        params.update(kwargs)
        with pytest.raises(SelectionError):
            StretchRule("bad", merge_controller, **params)


class TestApplication:

    def test_stretch_about_center(self, merge_controller, stretch_rule, merge_scene):
        _, left, _ = merge_scene
        result = stretch_rule.apply_rule(left, 10, 0)
        assert result is left
        assert sorted(left.state.points) == [(0.5, 1), (0.5, 2), (2.5, 1), (2.5, 2)]
        assert left.state.position == (1.5, 1.5)
        assert "S" in left.state.rules_applied

    def test_y_factor_ignored_when_disabled(self, merge_controller, stretch_rule, merge_scene):
        _, left, _ = merge_scene
        stretch_rule.apply_rule(left, 5, 10)
        ys = sorted({p[1] for p in left.state.points})
        assert ys == [1.0, 2.0]

    def test_outside_boundary_restores_transform(self, merge_controller, merge_scene):
        scene, left, _ = merge_scene
        left.transform = Transform.translation(0.0, 1.0)
        merge_controller.registry.update_shape(left)
        rule = merge_controller.define_stretch_rule("S", min_factor=2.0, max_factor=2.0, definition_names=["unit"])
        assert rule.apply_rule(left, 5, 5) is False
        assert left.transform == Transform.translation(0.0, 1.0)
        assert left.state.position == (0.5, 1.5)
        assert "S" not in left.state.rules_applied

    def test_constrain_connecting_rejects_overlap(self, merge_controller, merge_scene):
        _, left, _ = merge_scene
        rule = merge_controller.define_stretch_rule(
            "S", min_factor=2.0, max_factor=2.0, definition_names=["unit"], constrain_connecting=True,
        )
        assert rule.apply_rule(left, 5, 5) is False
        assert left.transform == Transform.translation(1.0, 1.0)

    def test_overlap_allowed_without_constraint(self, merge_controller, merge_scene):
        _, left, _ = merge_scene
        rule = merge_controller.define_stretch_rule("S", min_factor=2.0, max_factor=2.0, definition_names=["unit"])
        assert rule.apply_rule(left, 5, 5) is left

    def test_apply_to_selection(self, merge_controller, stretch_rule, merge_scene):
        _, left, _ = merge_scene
        marker = merge_scene[0].place("marker")
        result = merge_controller.apply_rule_to_selection("S", [marker, left], factor_x=0)
        assert result is left
        assert sorted({p[0] for p in left.state.points}) == [1.25, 1.75]


class TestGeneration:

    def test_each_shape_stretched_at_most_once(self, merge_controller, stretch_rule, merge_scene):
        _, left, right = merge_scene
        report = merge_controller.generate_design(10, ["S"], 20)
        assert report.applied <= 2
        assert report.stop_reason == "rules_exhausted"
        assert "S" in left.state.rules_applied
        assert "S" in right.state.rules_applied

    def test_candidates_skip_marked_shapes(self, merge_controller, stretch_rule, merge_scene):
        _, left, right = merge_scene
        merge_controller.registry.mark_rule_applied(left, "S")
        assert stretch_rule.collect_candidate_shapes() is right
