"""
In-memory scene store for shape grammar generation.

Stands in for the host modeling application: named polygon definitions,
placed instances with planar transforms, layers, and attribute dictionaries
attached to each instance and to the model itself.
"""
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set

from geometry_primitives import (
    Point,
    Transform,
    bounds_center,
    unique_points,
)

# Attribute dictionary holding all per-entity grammar data
ISG_DICT = "IterativeSG"


class Role(Enum):
    """Role an entity plays for the grammar engine."""
    SHAPE = "shape"
    MARKER = "marker"
    BOUNDARY = "boundary"


class Layer(Enum):
    """Partition of entities by purpose."""
    SOLUTION = "solution"
    RULES = "rules"
    BOUNDARY = "boundary"
    HIDDEN = "hidden"


@dataclass
class Definition:
    """
    A polygon template shared by every instance placed from it.

    Attributes:
        name: Unique template name
        faces: Faces as vertex loops in definition-local coordinates
        face_material: Optional material name for faces
        edge_material: Optional material name for edges
    """
    name: str
    faces: List[List[Point]] = field(default_factory=list)
    face_material: Optional[str] = None
    edge_material: Optional[str] = None

    @property
    def points(self) -> List[Point]:
        """All distinct vertices. A face-less definition is a single point."""
        pts = unique_points(p for face in self.faces for p in face)
        if not pts:
            return [(0.0, 0.0)]
        return pts


@dataclass
class ShapeState:
    """Cached grammar state of an initialized shape or marker."""
    uid: str
    definition_name: str
    position: Point
    points: List[Point]
    transform: Transform
    rules_applied: Set[str] = field(default_factory=set)
    mirrored_x: bool = False
    mirrored_y: bool = False
    applied_by_rule: Optional[str] = None
    erased_entities: List[str] = field(default_factory=list)


@dataclass(eq=False)
class Entity:
    """A placed instance of a definition."""
    eid: int
    definition: Definition
    transform: Transform = field(default_factory=Transform.identity)
    layer: Layer = Layer.RULES
    attributes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    role: Optional[Role] = None
    state: Optional[ShapeState] = None
    deleted: bool = False

    @property
    def uid(self) -> Optional[str]:
        return self.state.uid if self.state is not None else None

    @property
    def definition_name(self) -> str:
        return self.definition.name

    def world_points(self) -> List[Point]:
        return self.transform.apply(self.definition.points)

    def world_faces(self) -> List[List[Point]]:
        return [self.transform.apply(face) for face in self.definition.faces]

    def bounds_center(self) -> Point:
        return bounds_center(self.world_points())

    def get_attribute(self, dict_name: str, key: str, default: Any = None) -> Any:
        return self.attributes.get(dict_name, {}).get(key, default)

    def set_attribute(self, dict_name: str, key: str, value: Any) -> None:
        self.attributes.setdefault(dict_name, {})[key] = value

    def transform_by(self, transform: Transform) -> None:
        """Apply ``transform`` on top of the current placement."""
        self.transform = transform @ self.transform


@dataclass(eq=False)
class Group:
    """Temporary container used to move several entities as one."""
    children: List[Entity]
    transform: Transform = field(default_factory=Transform.identity)


class Scene:
    """Definitions, entities and model attributes of one working model."""

    def __init__(self):
        self.definitions: Dict[str, Definition] = {}
        self.entities: Dict[int, Entity] = {}
        self.model_attributes: Dict[str, Dict[str, Any]] = {}
        self._next_eid = 1

    # ─── Definitions ─────────────────────────────────────────────────────

    def add_definition(
        self,
        name: str,
        faces: Optional[List[List[Point]]] = None,
        face_material: Optional[str] = None,
        edge_material: Optional[str] = None,
    ) -> Definition:
        if name in self.definitions:
            raise ValueError(f"Definition already exists: {name}")
        definition = Definition(
            name=name,
            faces=[[(float(x), float(y)) for x, y in face] for face in (faces or [])],
            face_material=face_material,
            edge_material=edge_material,
        )
        self.definitions[name] = definition
        return definition

    def unique_definition_name(self, base: str) -> str:
        if base not in self.definitions:
            return base
        i = 1
        while f"{base}#{i}" in self.definitions:
            i += 1
        return f"{base}#{i}"

    # ─── Entities ────────────────────────────────────────────────────────

    def place(
        self,
        definition,
        transform: Optional[Transform] = None,
        layer: Layer = Layer.RULES,
        eid: Optional[int] = None,
    ) -> Entity:
        """Place a new instance of ``definition`` (a Definition or its name)."""
        if isinstance(definition, str):
            definition = self.definitions[definition]
        if eid is None:
            eid = self._next_eid
        elif eid in self.entities:
            raise ValueError(f"Entity id already used: {eid}")
        self._next_eid = max(self._next_eid, eid + 1)
        entity = Entity(
            eid=eid,
            definition=definition,
            transform=transform.copy() if transform is not None else Transform.identity(),
            layer=layer,
        )
        self.entities[eid] = entity
        return entity

    def copy(self, entity: Entity) -> Entity:
        """Copy an instance together with its attribute dictionaries.

        The grammar payload is not copied; the copy is uninitialized.
        """
        new_entity = self.place(entity.definition, entity.transform, entity.layer)
        new_entity.attributes = copy.deepcopy(entity.attributes)
        return new_entity

    def delete(self, entity: Entity) -> None:
        self.entities.pop(entity.eid, None)
        entity.deleted = True

    def get(self, eid: int) -> Optional[Entity]:
        return self.entities.get(eid)

    def __iter__(self) -> Iterator[Entity]:
        return iter(list(self.entities.values()))

    def __len__(self) -> int:
        return len(self.entities)

    def tagged(self, role: Role) -> List[Entity]:
        """Entities whose persistent role tag equals ``role``."""
        return [e for e in self if e.get_attribute(ISG_DICT, "role") == role.value]

    # ─── Groups ──────────────────────────────────────────────────────────

    def group(self, entities: List[Entity]) -> Group:
        return Group(children=list(entities))

    def explode(self, group: Group) -> List[Entity]:
        """Bake the group transform into its children and dissolve it."""
        for child in group.children:
            child.transform = group.transform @ child.transform
        children = group.children
        group.children = []
        group.transform = Transform.identity()
        return children

    # ─── Model attributes ────────────────────────────────────────────────

    def model_dictionary(self, name: str) -> Dict[str, Any]:
        return self.model_attributes.setdefault(name, {})
