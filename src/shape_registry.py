"""
UID management and shape state caching.

The registry owns the UID -> entity map and the shape, marker and solution
lists of one working model. Persistent grammar data (role tag, UID, applied
rules, mirror state, merge ancestry) lives in each entity's "IterativeSG"
attribute dictionary so that it survives saving and reloading the scene.
"""
import logging
import secrets
from typing import Callable, Dict, List, Optional

from errors import IdentityCollisionError
from scene import ISG_DICT, Entity, Layer, Role, Scene, ShapeState
from shape_geometry import Geometry

logger = logging.getLogger(__name__)


def _default_uid() -> str:
    return secrets.token_hex(16)


class EntityRegistry:
    """Registered shapes and markers of a working model."""

    def __init__(
        self,
        scene: Scene,
        geometry: Geometry,
        uid_factory: Optional[Callable[[], str]] = None,
        max_attempts: int = 8,
    ):
        self.scene = scene
        self.geometry = geometry
        self.uid_factory = uid_factory or _default_uid
        self.max_attempts = max_attempts
        self.uids: Dict[str, Entity] = {}
        self.shapes: List[Entity] = []
        self.markers: List[Entity] = []
        self.solution_shapes: List[Entity] = []

    # ─── UIDs ────────────────────────────────────────────────────────────

    def generate_uid(self) -> str:
        """Return a UID not held by any registered entity."""
        for attempt in range(1, self.max_attempts + 1):
            uid = self.uid_factory()
            if uid not in self.uids:
                return uid
            logger.debug("UID collision on attempt %d", attempt)
        raise IdentityCollisionError(
            f"Could not generate a free UID in {self.max_attempts} attempts"
        )

    def _assign_uid(self, entity: Entity) -> str:
        # A stored UID that is still registered belongs to the entity this one
        # was copied from, so the copy needs a fresh one.
        current = entity.get_attribute(ISG_DICT, "UID")
        if current is None or current in self.uids:
            current = self.generate_uid()
            entity.set_attribute(ISG_DICT, "UID", current)
        return current

    def lookup(self, uid: str) -> Optional[Entity]:
        entity = self.uids.get(uid)
        if entity is None or entity.deleted:
            return None
        return entity

    # ─── Initialization ──────────────────────────────────────────────────

    def initialize_shape(self, entity: Entity) -> str:
        """Register ``entity`` as a shape and return its UID.

        Already initialized entities keep their UID. A shape found inside the
        boundary joins the solution partition unless it is hidden.
        """
        if entity.state is not None:
            return entity.state.uid

        uid = self._init_state(entity, Role.SHAPE)
        self.shapes.append(entity)
        if entity.layer != Layer.HIDDEN and self.geometry.entity_inside(entity):
            self.add_to_solution(entity)
        return uid

    def initialize_marker(self, entity: Entity) -> str:
        """Register ``entity`` as an origin marker and return its UID."""
        if entity.state is not None:
            return entity.state.uid

        uid = self._init_state(entity, Role.MARKER)
        self.markers.append(entity)
        return uid

    def _init_state(self, entity: Entity, role: Role) -> str:
        uid = self._assign_uid(entity)
        entity.role = role
        entity.set_attribute(ISG_DICT, "role", role.value)
        attrs = entity.attributes.get(ISG_DICT, {})
        entity.state = ShapeState(
            uid=uid,
            definition_name=entity.definition_name,
            position=(0.0, 0.0),
            points=[],
            transform=entity.transform.copy(),
            rules_applied=set(attrs.get("rules_applied", [])),
            mirrored_x=bool(attrs.get("mirrored_x", False)),
            mirrored_y=bool(attrs.get("mirrored_y", False)),
            applied_by_rule=attrs.get("applied_by_rule"),
            erased_entities=list(attrs.get("erased_entities", [])),
        )
        self.update_shape(entity)
        self.uids[uid] = entity
        return uid

    def update_shape(self, entity: Entity) -> None:
        """Refresh cached position, world points and transform."""
        state = entity.state
        state.position = entity.bounds_center()
        state.points = entity.world_points()
        state.transform = entity.transform.copy()

    def scan(self) -> None:
        """Register every tagged shape, then every tagged marker, in the scene."""
        for entity in self.scene.tagged(Role.SHAPE):
            self.initialize_shape(entity)
        for entity in self.scene.tagged(Role.MARKER):
            self.initialize_marker(entity)
        logger.info(
            "Registered %d shapes (%d in solution) and %d markers",
            len(self.shapes), len(self.solution_shapes), len(self.markers),
        )

    def reset(self) -> None:
        """Forget every registration and clear the payload of every scene entity."""
        for entity in self.scene:
            entity.state = None
            entity.role = None
        self.uids.clear()
        self.shapes.clear()
        self.markers.clear()
        self.solution_shapes.clear()

    # ─── Persistent state ────────────────────────────────────────────────

    def mark_rule_applied(self, entity: Entity, rule_id: str) -> None:
        entity.state.rules_applied.add(rule_id)
        entity.set_attribute(ISG_DICT, "rules_applied", sorted(entity.state.rules_applied))

    def set_mirrored(self, entity: Entity, mirrored_x: bool, mirrored_y: bool) -> None:
        entity.state.mirrored_x = mirrored_x
        entity.state.mirrored_y = mirrored_y
        entity.set_attribute(ISG_DICT, "mirrored_x", mirrored_x)
        entity.set_attribute(ISG_DICT, "mirrored_y", mirrored_y)

    def set_ancestry(self, entity: Entity, rule_id: str, erased_uids: List[str]) -> None:
        entity.state.applied_by_rule = rule_id
        entity.state.erased_entities = list(erased_uids)
        entity.set_attribute(ISG_DICT, "applied_by_rule", rule_id)
        entity.set_attribute(ISG_DICT, "erased_entities", list(erased_uids))

    # ─── Partitions ──────────────────────────────────────────────────────

    def add_to_solution(self, entity: Entity) -> None:
        entity.layer = Layer.SOLUTION
        if entity not in self.solution_shapes:
            self.solution_shapes.append(entity)

    def hide_shape(self, entity: Entity) -> None:
        """Take a shape out of the solution while keeping it registered."""
        if entity in self.solution_shapes:
            self.solution_shapes.remove(entity)
        entity.layer = Layer.HIDDEN

    def remove_shape(self, entity: Entity) -> None:
        """Deregister ``entity`` and delete it from the scene."""
        uid = entity.uid
        if uid is not None and self.uids.get(uid) is entity:
            del self.uids[uid]
        for collection in (self.shapes, self.markers, self.solution_shapes):
            if entity in collection:
                collection.remove(entity)
        self.scene.delete(entity)
