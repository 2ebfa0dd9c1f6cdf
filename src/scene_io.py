"""
JSON persistence for scenes.

A scene file stores definitions, placed entities (transform, layer and
attribute dictionaries) and model attributes. Grammar state is carried by
the attribute dictionaries and rebuilt when a controller scans the scene.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

from geometry_primitives import Transform
from run_protocol import write_json
from scene import Layer, Scene

logger = logging.getLogger(__name__)

SCENE_FORMAT_VERSION = 1


def scene_to_dict(scene: Scene) -> Dict[str, Any]:
    return {
        "version": SCENE_FORMAT_VERSION,
        "definitions": [
            {
                "name": d.name,
                "faces": [[list(p) for p in face] for face in d.faces],
                "face_material": d.face_material,
                "edge_material": d.edge_material,
            }
            for d in scene.definitions.values()
        ],
        "entities": [
            {
                "eid": e.eid,
                "definition": e.definition_name,
                "transform": e.transform.to_list(),
                "layer": e.layer.value,
                "attributes": e.attributes,
            }
            for e in scene
        ],
        "model_attributes": scene.model_attributes,
    }


def scene_from_dict(data: Dict[str, Any]) -> Scene:
    version = data.get("version", SCENE_FORMAT_VERSION)
    if version > SCENE_FORMAT_VERSION:
        raise ValueError(f"Scene format version {version} is not supported")

    scene = Scene()
    for d in data.get("definitions", []):
        scene.add_definition(
            d["name"],
            [[tuple(p) for p in face] for face in d.get("faces", [])],
            face_material=d.get("face_material"),
            edge_material=d.get("edge_material"),
        )
    for e in data.get("entities", []):
        transform = e.get("transform")
        entity = scene.place(
            e["definition"],
            Transform.from_list(transform) if transform else None,
            Layer(e.get("layer", Layer.RULES.value)),
            eid=e.get("eid"),
        )
        entity.attributes = e.get("attributes", {})
    scene.model_attributes = data.get("model_attributes", {})
    return scene


def save_scene(scene: Scene, path: Union[str, Path]) -> Path:
    path = Path(path)
    write_json(path, scene_to_dict(scene))
    logger.info("Saved scene with %d entities to %s", len(scene), path)
    return path


def load_scene(path: Union[str, Path]) -> Scene:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Scene file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        scene = scene_from_dict(json.load(f))
    logger.info("Loaded scene with %d entities from %s", len(scene), path)
    return scene
