"""Tests for grammar_controller module."""
import itertools

import pytest

from conftest import UNIT, build_replace_scene, define_replace, make_scene, tag
from errors import (
    AmbiguousBoundaryError,
    ConfigurationError,
    InvalidBoundaryError,
    NoBoundaryError,
    SelectionError,
    UnknownRuleError,
)
from geometry_primitives import Transform
from grammar_controller import RULES_DICT, Controller, GenerationConfig
from rule_records import ReplaceRecord, decode_record
from scene import Layer, Role, Scene


class TestInitialize:

    def test_no_boundary(self):
        scene = Scene()
        scene.add_definition("unit", [UNIT])
        scene.place("unit")
        with pytest.raises(NoBoundaryError):
            Controller(scene).initialize()

    def test_ambiguous_boundary(self):
        scene = make_scene()
        tag(scene.place("boundary"), Role.BOUNDARY)
        with pytest.raises(AmbiguousBoundaryError):
            Controller(scene).initialize()

    def test_explicit_boundary_wins(self):
        scene = make_scene()
        other = scene.place("boundary", Transform.translation(10.0, 0.0))
        controller = Controller(scene).initialize(other)
        assert controller.boundary is other
        assert other.layer == Layer.BOUNDARY
        assert controller.geometry.boundary_points[0] == (10.0, 0.0)

    def test_invalid_boundary(self):
        scene = Scene()
        scene.add_definition("two", [UNIT, [(x + 2, y) for x, y in UNIT]])
        tag(scene.place("two"), Role.BOUNDARY)
        with pytest.raises(InvalidBoundaryError):
            Controller(scene).initialize()

    def test_operations_need_initialize(self):
        controller = Controller(make_scene())
        assert not controller.initialized
        with pytest.raises(ConfigurationError):
            controller.generate_design(1)


class TestRulePersistence:

    def test_rules_reload_in_new_controller(self, controller, replace_rule, replace_scene):
        scene, _ = replace_scene
        reloaded = Controller(scene).initialize()
        assert list(reloaded.rules) == ["R1"]
        assert reloaded.rules["R1"].translation.origin == pytest.approx((-0.3, 0.0))

    def test_cleanup_purges_dangling_rule(self, controller, replace_rule, replace_scene):
        scene, entities = replace_scene
        scene.delete(entities["new"][1])
        purged = controller.cleanup_rules()
        assert purged == ["R1"]
        assert "R1" not in controller.rules
        assert "R1" not in scene.model_dictionary(RULES_DICT)

    def test_dangling_rule_purged_on_initialize(self, controller, replace_rule, replace_scene):
        scene, entities = replace_scene
        scene.delete(entities["origin"])
        reloaded = Controller(scene).initialize()
        assert reloaded.rules == {}
        assert scene.model_dictionary(RULES_DICT) == {}

    def test_legacy_record_is_rewritten(self, controller, replace_rule, replace_scene):
        scene, _ = replace_scene
        scene.model_dictionary(RULES_DICT)["R1"] = replace_rule.to_record().to_legacy()
        reloaded = Controller(scene).initialize()
        assert "R1" in reloaded.rules
        stored = scene.model_dictionary(RULES_DICT)["R1"]
        assert stored["kind"] == "replace"
        assert isinstance(decode_record(stored), ReplaceRecord)

    def test_unreadable_record_is_purged(self, controller, replace_rule, replace_scene):
        scene, _ = replace_scene
        scene.model_dictionary(RULES_DICT)["Broken"] = ["RuleExplode", 1]
        reloaded = Controller(scene).initialize()
        assert "Broken" not in reloaded.rules
        assert "Broken" not in scene.model_dictionary(RULES_DICT)
        assert "R1" in reloaded.rules

    def test_mistyped_record_fields(self, controller, replace_rule, replace_scene):
        scene, _ = replace_scene
        stored = scene.model_dictionary(RULES_DICT)
        stored["S"] = {
            "kind": "stretch", "version": "1", "stretch_x": True, "stretch_y": False,
            "min_factor": 1.0, "max_factor": 2.0, "definition_names": ["sq"],
        }
        stored["M"] = {
            "kind": "merge", "version": 1, "merge_x": True, "merge_y": False,
            "num_objects": "2", "definition_names": ["sq"],
        }
        stored["Bad"] = {
            "kind": "merge", "version": 1, "merge_x": True, "merge_y": False,
            "num_objects": "many", "definition_names": ["sq"],
        }
        reloaded = Controller(scene).initialize()
        assert set(reloaded.rules) == {"R1", "S", "M"}
        assert reloaded.rules["M"].num_objects == 2
        assert stored["S"]["version"] == 1
        assert "Bad" not in stored


class TestRuleManagement:

    def test_generated_names(self, merge_controller):
        first = merge_controller.define_merge_rule(definition_names=["unit"])
        second = merge_controller.define_stretch_rule(definition_names=["unit"])
        assert (first.rule_id, second.rule_id) == ("Rule 1", "Rule 2")

    def test_duplicate_name_without_replace(self, merge_controller):
        merge_controller.define_merge_rule("M", definition_names=["unit"])
        with pytest.raises(ConfigurationError):
            merge_controller.define_merge_rule("M", definition_names=["unit"], replace_existing=False)

    def test_remove_rule(self, merge_controller):
        merge_controller.define_merge_rule("M", definition_names=["unit"])
        merge_controller.remove_rule("M")
        assert merge_controller.rules == {}
        assert merge_controller.rules_dictionary == {}
        with pytest.raises(UnknownRuleError):
            merge_controller.remove_rule("M")

    def test_selection_mismatch(self, merge_controller, merge_scene):
        _, left, _ = merge_scene
        merge_controller.define_merge_rule("M", definition_names=["unit"])
        with pytest.raises(SelectionError):
            merge_controller.apply_rule_to_selection("M", [left])

    def test_only_merges_revert(self, controller, replace_rule, replace_scene):
        _, entities = replace_scene
        result = controller.apply_rule_to_selection("R1", [entities["seed"]])
        with pytest.raises(SelectionError):
            controller.revert_rule_application(result[0])


class TestGenerateDesign:

    def test_applications_bounded(self, controller, replace_rule):
        report = controller.generate_design(10, ["R1"], 20)
        assert report.requested == 10
        assert report.applied <= 10
        assert len(report.applied_rules) == report.applied
        assert report.solution_size == len(controller.solution_shapes)

    def test_zero_applications(self, controller, replace_rule):
        report = controller.generate_design(0, ["R1"], 20)
        assert report.completed
        assert report.applied == 0

    def test_negative_applications(self, controller, replace_rule):
        with pytest.raises(ConfigurationError):
            controller.generate_design(-1, ["R1"], 20)

    def test_unknown_rules_only(self, controller, replace_rule):
        with pytest.raises(UnknownRuleError):
            controller.generate_design(1, ["Nope"], 20)

    def test_unknown_names_are_skipped(self, controller, replace_rule):
        report = controller.generate_design(1, ["Nope", "R1"], 20)
        assert report.applied_rules == ["R1"]

    def test_timeout_with_fake_clock(self, replace_scene):
        scene, entities = replace_scene
        ticks = itertools.count(0, 10)
        controller = Controller(scene, GenerationConfig(seed=7), clock=lambda: next(ticks))
        controller.initialize()
        define_replace(controller, entities)
        report = controller.generate_design(100, ["R1"], 15)
        assert report.stop_reason == "timeout"
        assert report.applied == 1
        assert not report.completed

    def test_same_seed_same_design(self):
        def run():
            scene, entities = build_replace_scene()
            controller = Controller(scene, GenerationConfig(seed=11)).initialize()
            define_replace(controller, entities)
            controller.generate_design(6, ["R1"], 20)
            return sorted(shape.state.position for shape in controller.solution_shapes)

        assert run() == run()

    def test_mixed_rules(self, merge_controller):
        merge_controller.define_merge_rule("M", definition_names=["unit"])
        merge_controller.define_stretch_rule("S", definition_names=["unit"], min_factor=1.0, max_factor=1.0)
        report = merge_controller.generate_design(4, None, 20)
        assert report.applied <= 4
        assert set(report.applied_rules) <= {"M", "S"}


class TestWorkingModel:

    def test_reset_solution_places_initial_shape(self, controller, replace_rule, replace_scene):
        _, entities = replace_scene
        controller.set_initial_shape(entities["seed"])
        controller.generate_design(3, ["R1"], 20)
        seed = controller.reset_solution()
        assert controller.solution_shapes == [seed]
        assert seed.transform == Transform.translation(0.375, 0.375)
        assert seed.layer == Layer.SOLUTION

    def test_reset_keeps_rule_library(self, controller, replace_rule, replace_scene):
        _, entities = replace_scene
        controller.reset_solution()
        assert controller.solution_shapes == []
        assert not entities["new"][0].deleted
        assert replace_rule.describe()

    def test_marker_cannot_be_initial_shape(self, controller, replace_scene):
        _, entities = replace_scene
        with pytest.raises(SelectionError):
            controller.set_initial_shape(entities["origin"])
