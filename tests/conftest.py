"""
Shared test fixtures for shape grammar tests.

Coordinates are dyadic fractions wherever shape identity is compared so that
transform products stay exact.
"""
import sys
from pathlib import Path

import pytest

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from geometry_primitives import Transform
from grammar_controller import Controller, GenerationConfig
from scene import ISG_DICT, Layer, Role, Scene

SQUARE = [(0.0, 0.0), (0.25, 0.0), (0.25, 0.25), (0.0, 0.25)]
UNIT = [(0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0)]


def tag(entity, role):
    entity.set_attribute(ISG_DICT, "role", role.value)
    return entity


def make_scene(size=4.0):
    """Scene with a square boundary [0, size]^2 tagged as boundary."""
    scene = Scene()
    scene.add_definition("boundary", [[(0, 0), (size, 0), (size, size), (0, size)]])
    scene.add_definition("marker")
    tag(scene.place("boundary", layer=Layer.BOUNDARY), Role.BOUNDARY)
    return scene


def add_shape(scene, name, x, y, layer=Layer.SOLUTION):
    return tag(scene.place(name, Transform.translation(x, y), layer), Role.SHAPE)


def add_marker(scene, x, y):
    return scene.place("marker", Transform.translation(x, y), Layer.RULES)


def build_replace_scene(seed=(0.375, 0.375), new_offsets=(15.7, 16.3), sources=(0.0,), size=4.0):
    """Seed square in the solution plus an untagged rule library.

    Source squares sit at x = 8 + offset with their marker at (8.125, 8.125);
    replacement squares sit at x = offset with their marker at (16.125, 8.125).
    """
    scene = make_scene(size)
    scene.add_definition("sq", [SQUARE])
    entities = {"seed": add_shape(scene, "sq", *seed)}
    entities["origin"] = add_marker(scene, 8.125, 8.125)
    entities["sources"] = [
        scene.place("sq", Transform.translation(8.0 + dx, 8.0)) for dx in sources
    ]
    entities["origin_new"] = add_marker(scene, 16.125, 8.125)
    entities["new"] = [
        scene.place("sq", Transform.translation(x, 8.0)) for x in new_offsets
    ]
    return scene, entities


def define_replace(controller, entities, name="R1", **kwargs):
    controller.pick_original_shape([entities["origin"]] + entities["sources"])
    controller.pick_new_shape([entities["origin_new"]] + entities["new"])
    return controller.define_replace_rule(name, **kwargs)


@pytest.fixture
def config():
    return GenerationConfig(seed=7)


@pytest.fixture
def replace_scene():
    return build_replace_scene()


@pytest.fixture
def controller(replace_scene, config):
    scene, _ = replace_scene
    return Controller(scene, config).initialize()


@pytest.fixture
def replace_rule(controller, replace_scene):
    _, entities = replace_scene
    return define_replace(controller, entities)


@pytest.fixture
def merge_scene():
    """Two unit squares side by side along X inside [0, 4]^2."""
    scene = make_scene()
    scene.add_definition("unit", [UNIT])
    left = add_shape(scene, "unit", 1.0, 1.0)
    right = add_shape(scene, "unit", 2.0, 1.0)
    return scene, left, right


@pytest.fixture
def merge_controller(merge_scene, config):
    scene, _, _ = merge_scene
    return Controller(scene, config).initialize()
