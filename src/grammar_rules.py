"""
Shape grammar rules: Replace, Merge and Stretch.

Rules keep the UIDs of the shapes and markers that define them and resolve
them through the controller's registry on every use, so a rule rebuilt from
its persisted record behaves exactly like the one originally defined. All
scene mutation goes through the controller's scene and registry.
"""
import logging
from abc import ABC, abstractmethod
from typing import ClassVar, List, Optional, Sequence, Union

import numpy as np

from errors import GeometryRejection, PersistedStateInconsistency, SelectionError
from geometry_primitives import (
    Point,
    Transform,
    bounds_min,
    direction_vector,
    distance,
    polygons_overlap,
)
from rule_records import MergeRecord, ReplaceRecord, RuleRecord, StretchRecord
from scene import ISG_DICT, Entity

logger = logging.getLogger(__name__)

# Attributes that describe a shape's history and must not follow it into a copy
_HISTORY_KEYS = ("rules_applied", "mirrored_x", "mirrored_y", "applied_by_rule", "erased_entities")


def pick_random(rng: np.random.Generator, items: Sequence):
    """Uniformly pick one element of a non-empty sequence."""
    return items[int(rng.integers(len(items)))]


def shuffled(rng: np.random.Generator, items: Sequence) -> list:
    order = rng.permutation(len(items))
    return [items[i] for i in order]


class Rule(ABC):
    """Common behaviour of all rule variants."""

    kind: ClassVar[str] = ""

    def __init__(self, rule_id: str, controller):
        self.rule_id = rule_id
        self.controller = controller

    @property
    def registry(self):
        return self.controller.registry

    @property
    def geometry(self):
        return self.controller.geometry

    @property
    def scene(self):
        return self.controller.scene

    @property
    def rng(self) -> np.random.Generator:
        return self.controller.rng

    @abstractmethod
    def to_record(self) -> RuleRecord:
        """Persistable description of the rule."""

    @abstractmethod
    def collect_candidate_shapes(self, *args, **kwargs):
        """Find shapes in the solution this rule can be applied to."""

    @abstractmethod
    def check_rule(self, selection: Sequence[Entity]):
        """Resolve a user selection into ordered candidates, or return False."""

    @abstractmethod
    def describe(self) -> str:
        """One-line human readable summary."""

    def referenced_uids(self) -> List[str]:
        return self.to_record().referenced_uids()

    def _resolve(self, uid: str) -> Entity:
        entity = self.registry.lookup(uid)
        if entity is None:
            raise PersistedStateInconsistency(f"Rule {self.rule_id} references missing entity {uid}")
        return entity

    def _eligible(self, definition_names: Sequence[str], skip_marked: bool) -> List[Entity]:
        return [
            shape for shape in self.registry.solution_shapes
            if shape.definition_name in definition_names
            and not (skip_marked and self.rule_id in shape.state.rules_applied)
        ]

    @staticmethod
    def from_record(rule_id: str, record: RuleRecord, controller) -> "Rule":
        """Rebuild the rule variant matching ``record``."""
        if isinstance(record, ReplaceRecord):
            return ReplaceRule(
                rule_id, controller,
                origin_uid=record.origin_uid,
                shape_uids=record.shape_uids,
                origin_new_uid=record.origin_new_uid,
                shape_new_uids=record.shape_new_uids,
                mirror_x=record.mirror_x,
                mirror_y=record.mirror_y,
                disable_overlap=record.disable_overlap,
            )
        if isinstance(record, MergeRecord):
            return MergeRule(
                rule_id, controller,
                merge_x=record.merge_x,
                merge_y=record.merge_y,
                num_objects=record.num_objects,
                definition_names=record.definition_names,
                max_distance=record.max_distance,
            )
        if isinstance(record, StretchRecord):
            return StretchRule(
                rule_id, controller,
                stretch_x=record.stretch_x,
                stretch_y=record.stretch_y,
                min_factor=record.min_factor,
                max_factor=record.max_factor,
                definition_names=record.definition_names,
                constrain_connecting=record.constrain_connecting,
            )
        raise TypeError(f"Unsupported rule record: {record!r}")


class ReplaceRule(Rule):
    """Substitute matched source shapes with a transformed copy of new shapes.

    The source shapes sit relative to an origin marker in the rule library,
    the replacement shapes relative to a second marker. On application the
    replacement shapes keep that marker-relative placement in the frame of
    the matched original.
    """

    kind = "replace"

    def __init__(
        self,
        rule_id: str,
        controller,
        origin_uid: str,
        shape_uids: Sequence[str],
        origin_new_uid: str,
        shape_new_uids: Sequence[str],
        mirror_x: bool = False,
        mirror_y: bool = False,
        disable_overlap: bool = False,
    ):
        super().__init__(rule_id, controller)
        if not shape_uids:
            raise SelectionError(f"Rule {rule_id} needs at least one source shape")
        if not shape_new_uids:
            raise SelectionError(f"Rule {rule_id} needs at least one replacement shape")
        self.origin_uid = origin_uid
        self.shape_uids = list(shape_uids)
        self.origin_new_uid = origin_new_uid
        self.shape_new_uids = list(shape_new_uids)
        self.mirror_x = bool(mirror_x)
        self.mirror_y = bool(mirror_y)
        self.disable_overlap = bool(disable_overlap)
        self._compute_template()

    # ─── Template ────────────────────────────────────────────────────────

    @property
    def origin(self) -> Entity:
        return self._resolve(self.origin_uid)

    @property
    def shapes(self) -> List[Entity]:
        return [self._resolve(uid) for uid in self.shape_uids]

    @property
    def origin_new(self) -> Entity:
        return self._resolve(self.origin_new_uid)

    @property
    def shapes_new(self) -> List[Entity]:
        return [self._resolve(uid) for uid in self.shape_new_uids]

    @property
    def source_definitions(self) -> List[str]:
        return [shape.definition_name for shape in self.shapes]

    @property
    def supports_mirroring(self) -> bool:
        return (self.mirror_x or self.mirror_y) and len(self.shape_uids) == 1

    def _compute_template(self) -> None:
        shapes = self.shapes
        shapes_new = self.shapes_new
        marker_pos = self.origin.state.position
        marker_new_pos = self.origin_new.state.position
        shape_min = bounds_min([p for s in shapes for p in s.state.points])
        new_min = bounds_min([p for s in shapes_new for p in s.state.points])

        # Offsets of both bounding minimums from their markers
        d1 = direction_vector(marker_pos, shape_min)
        d2 = direction_vector(marker_new_pos, new_min)
        offset = -(d1 - d2)
        self.translation = Transform.translation(float(offset[0]), float(offset[1]))
        # Copies are grouped with their bounding minimum at the group origin
        self.anchor = Transform.translation(-new_min[0], -new_min[1])
        # Frame of the first source shape with its bounding minimum at the origin
        self.template_frame = (
            shapes[0].transform.inverse() @ Transform.translation(shape_min[0], shape_min[1])
        )

        # Offsets of further source shapes from the first one
        first = shapes[0].state.position
        self.pattern = [
            (distance(first, s.state.position), direction_vector(first, s.state.position))
            for s in shapes[1:]
        ]

    def to_record(self) -> ReplaceRecord:
        return ReplaceRecord(
            origin_uid=self.origin_uid,
            shape_uids=list(self.shape_uids),
            origin_new_uid=self.origin_new_uid,
            shape_new_uids=list(self.shape_new_uids),
            mirror_x=self.mirror_x,
            mirror_y=self.mirror_y,
            disable_overlap=self.disable_overlap,
        )

    def describe(self) -> str:
        new_defs = [s.definition_name for s in self.shapes_new]
        flags = []
        if self.mirror_x:
            flags.append("mirror-x")
        if self.mirror_y:
            flags.append("mirror-y")
        if self.disable_overlap:
            flags.append("no-overlap")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        return f"{self.rule_id}: replace {self.source_definitions} -> {new_defs}{suffix}"

    # ─── Candidates ──────────────────────────────────────────────────────

    def collect_candidate_shapes(self) -> Optional[List[Entity]]:
        """Pick unmarked solution shapes matching the source pattern, or None."""
        definitions = self.source_definitions
        firsts = self._eligible(definitions[:1], skip_marked=True)
        if not firsts:
            return None
        if not self.pattern:
            return [pick_random(self.rng, firsts)]

        for first in shuffled(self.rng, firsts):
            match = self._match_pattern(first, self._eligible(definitions[1:], skip_marked=True))
            if match is not None:
                return match
        return None

    def _match_pattern(self, first: Entity, pool: Sequence[Entity]) -> Optional[List[Entity]]:
        definitions = self.source_definitions
        matched = [first]
        for definition, (dist, vector) in zip(definitions[1:], self.pattern):
            options = [
                shape for shape in self.geometry.get_by_distance(first, pool, dist, vector)
                if shape.definition_name == definition and shape not in matched
            ]
            if not options:
                return None
            matched.append(pick_random(self.rng, options))
        return matched

    def check_rule(self, selection: Sequence[Entity]):
        """Order ``selection`` to match the source pattern, or return False."""
        shapes = [e for e in selection if e.state is not None and e.role is not None]
        definitions = self.source_definitions
        if len(shapes) < len(definitions):
            return False
        for first in shapes:
            if first.definition_name != definitions[0]:
                continue
            if not self.pattern:
                return [first]
            match = self._match_pattern(first, [s for s in shapes if s is not first])
            if match is not None:
                return match
        return False

    # ─── Application ─────────────────────────────────────────────────────

    def apply_rule(
        self,
        mark_rule: bool,
        original_shapes: Sequence[Entity],
        mirror_x: int = 1,
        mirror_y: int = 1,
    ) -> Union[List[Entity], bool]:
        """Replace ``original_shapes`` and return the resulting shapes.

        Returns False when the application is rejected (outside the boundary
        or overlapping) or when it adds no distinct shape to the solution.
        """
        registry = self.registry
        originals = list(original_shapes)
        primary = originals[0]
        saved_transform = primary.transform.copy()
        saved_mirror = (primary.state.mirrored_x, primary.state.mirrored_y)
        self.controller.last_failed_original = None

        if self.supports_mirroring:
            self._mirror(primary, mirror_x, mirror_y)

        new_shapes = self._place_copies(primary)

        try:
            self._check_legality(new_shapes, originals)
        except GeometryRejection as exc:
            logger.debug("Rule %s rejected: %s", self.rule_id, exc)
            for shape in new_shapes:
                registry.remove_shape(shape)
            primary.transform = saved_transform
            registry.set_mirrored(primary, *saved_mirror)
            registry.update_shape(primary)
            if mark_rule:
                for original in originals:
                    registry.mark_rule_applied(original, self.rule_id)
            self.controller.last_failed_original = primary
            return False

        if mark_rule:
            for original in originals:
                registry.mark_rule_applied(original, self.rule_id)

        total = len(new_shapes)
        removed = 0

        # A new shape identical to an original stands in for it
        remaining = list(new_shapes)
        kept_originals = []
        for original in originals:
            match = next((s for s in remaining if self.geometry.identical(s, original)), None)
            if match is None:
                continue
            remaining.remove(match)
            registry.remove_shape(match)
            removed += 1
            kept_originals.append(original)
            self.controller.last_failed_original = original
        for original in originals:
            if original not in kept_originals:
                registry.remove_shape(original)

        redundant = []
        for shape in remaining:
            for other in registry.solution_shapes:
                if other is shape or other in redundant:
                    continue
                if self.geometry.identical(shape, other):
                    redundant.append(shape)
                    break
        for shape in redundant:
            registry.remove_shape(shape)
        removed += len(redundant)

        if removed == total:
            logger.debug("Rule %s produced no new shape", self.rule_id)
            return False

        survivors = [s for s in remaining if s not in redundant]
        logger.debug("Rule %s added %d shapes", self.rule_id, len(survivors))
        return survivors + kept_originals

    def _mirror(self, primary: Entity, mirror_x: int, mirror_y: int) -> None:
        # Requested signs describe the wanted orientation; flip relative to
        # the orientation the shape already has.
        state = primary.state
        sx, sy = 1, 1
        mirrored_x, mirrored_y = state.mirrored_x, state.mirrored_y
        if self.mirror_x:
            sx = -mirror_x if state.mirrored_x else mirror_x
            mirrored_x = mirror_x == -1
        if self.mirror_y:
            sy = -mirror_y if state.mirrored_y else mirror_y
            mirrored_y = mirror_y == -1
        if sx == 1 and sy == 1:
            return
        primary.transform_by(Transform.scaling(state.position, sx, sy))
        self.registry.set_mirrored(primary, mirrored_x, mirrored_y)
        self.registry.update_shape(primary)

    def _place_copies(self, primary: Entity) -> List[Entity]:
        registry = self.registry
        copies = []
        for template in self.shapes_new:
            duplicate = self.scene.copy(template)
            for key in _HISTORY_KEYS:
                duplicate.attributes.get(ISG_DICT, {}).pop(key, None)
            registry.initialize_shape(duplicate)
            copies.append(duplicate)

        group = self.scene.group(copies)
        offset = self.translation @ self.anchor
        for child in group.children:
            child.transform_by(offset)
        group.transform = primary.transform @ self.template_frame
        new_shapes = self.scene.explode(group)

        for shape in new_shapes:
            registry.update_shape(shape)
            registry.set_mirrored(shape, primary.state.mirrored_x, primary.state.mirrored_y)
            registry.add_to_solution(shape)
        return new_shapes

    def _check_legality(self, new_shapes: Sequence[Entity], originals: Sequence[Entity]) -> None:
        if self.disable_overlap:
            others = [
                s for s in self.registry.solution_shapes
                if s not in new_shapes and s not in originals
            ]
            for shape in new_shapes:
                for other in others:
                    if polygons_overlap(shape.state.points, other.state.points):
                        raise GeometryRejection(f"{shape.uid} overlaps {other.uid}")
        for shape in new_shapes:
            if not self.geometry.inside_boundary(shape.state.position, shape.state.points):
                raise GeometryRejection(f"{shape.uid} is outside the boundary")


class MergeRule(Rule):
    """Fuse ``num_objects`` adjacent shapes along one axis into one convex shape."""

    kind = "merge"

    def __init__(
        self,
        rule_id: str,
        controller,
        merge_x: bool,
        merge_y: bool,
        num_objects: int,
        definition_names: Sequence[str],
        max_distance: float = 1.0,
    ):
        super().__init__(rule_id, controller)
        if not (merge_x or merge_y):
            raise SelectionError(f"Merge rule {rule_id} needs a merge direction")
        if num_objects < 2:
            raise SelectionError(f"Merge rule {rule_id} needs at least two objects")
        if not definition_names:
            raise SelectionError(f"Merge rule {rule_id} needs candidate definitions")
        if max_distance <= 0:
            raise SelectionError(f"Merge rule {rule_id} needs a positive max distance")
        self.merge_x = bool(merge_x)
        self.merge_y = bool(merge_y)
        self.num_objects = int(num_objects)
        self.definition_names = list(definition_names)
        self.max_distance = float(max_distance)

    @property
    def directions(self) -> List[Point]:
        vectors = []
        if self.merge_x:
            vectors.append((1.0, 0.0))
        if self.merge_y:
            vectors.append((0.0, 1.0))
        return vectors

    def to_record(self) -> MergeRecord:
        return MergeRecord(
            merge_x=self.merge_x,
            merge_y=self.merge_y,
            num_objects=self.num_objects,
            definition_names=list(self.definition_names),
            max_distance=self.max_distance,
        )

    def describe(self) -> str:
        axes = "".join(a for a, on in (("x", self.merge_x), ("y", self.merge_y)) if on)
        return (
            f"{self.rule_id}: merge {self.num_objects} of {self.definition_names} "
            f"along {axes} within {self.max_distance:g}"
        )

    def collect_candidate_shapes(
        self,
        seed: Optional[Entity] = None,
        direction: Optional[Point] = None,
    ) -> Optional[List[Entity]]:
        """Find a seed and its unobstructed neighbours along a merge axis."""
        eligible = self._eligible(self.definition_names, skip_marked=False)
        if seed is not None:
            seeds = [seed]
        else:
            seeds = shuffled(self.rng, eligible)

        for candidate in seeds:
            vectors = [direction] if direction is not None else shuffled(self.rng, self.directions)
            for vector in vectors:
                found = self.geometry.collect_in_direction(
                    candidate,
                    eligible,
                    self.num_objects - 1,
                    vector,
                    self.max_distance,
                    obstacles=self.registry.solution_shapes,
                    step=self.controller.config.ray_step,
                )
                if len(found) < self.num_objects - 1:
                    continue
                cluster = [candidate] + found
                if all(self._usable(shape) for shape in cluster):
                    return cluster
        return None

    def _usable(self, shape: Entity) -> bool:
        return (
            shape.definition_name in self.definition_names
            and self.geometry.inside_boundary(shape.state.position, shape.state.points)
        )

    def check_rule(self, selection: Sequence[Entity]):
        shapes = [e for e in selection if e.state is not None]
        if len(shapes) != self.num_objects:
            return False
        if not all(self._usable(s) for s in shapes):
            return False
        for vector in self.directions:
            axis = "x" if vector[0] else "y"
            ordered = self.geometry.sort_components_in_direction(shapes, axis)
            found = self.collect_candidate_shapes(seed=ordered[0], direction=vector)
            if found is not None and set(found) == set(shapes):
                return found
        return False

    def apply_rule(self, shapes: Sequence[Entity]) -> Entity:
        """Replace ``shapes`` by the convex hull of their points."""
        registry = self.registry
        points = [p for shape in shapes for p in shape.state.points]
        template = shapes[0].definition
        merged = self.geometry.add_face_in_component(
            self.scene,
            f"{self.rule_id}-merged",
            points,
            face_material=template.face_material,
            edge_material=template.edge_material,
        )
        registry.initialize_shape(merged)
        registry.add_to_solution(merged)
        registry.set_ancestry(merged, self.rule_id, [shape.uid for shape in shapes])
        for shape in shapes:
            registry.hide_shape(shape)
        logger.debug("Rule %s merged %d shapes into %s", self.rule_id, len(shapes), merged.uid)
        return merged

    def remove_rule(self, shape: Entity) -> List[Entity]:
        """Undo a merge: restore the erased shapes and delete ``shape``."""
        restored = []
        for uid in shape.state.erased_entities:
            original = self.registry.lookup(uid)
            if original is None:
                logger.warning("Merged shape %s lost ancestor %s", shape.uid, uid)
                continue
            self.registry.add_to_solution(original)
            restored.append(original)
        self.registry.remove_shape(shape)
        return restored


class StretchRule(Rule):
    """Scale a shape along enabled axes by a factor inside [min_factor, max_factor]."""

    kind = "stretch"

    def __init__(
        self,
        rule_id: str,
        controller,
        stretch_x: bool,
        stretch_y: bool,
        min_factor: float,
        max_factor: float,
        definition_names: Sequence[str],
        constrain_connecting: bool = False,
    ):
        super().__init__(rule_id, controller)
        if not (stretch_x or stretch_y):
            raise SelectionError(f"Stretch rule {rule_id} needs a stretch direction")
        if min_factor <= 0 or max_factor < min_factor:
            raise SelectionError(
                f"Stretch rule {rule_id} needs 0 < min_factor <= max_factor"
            )
        if not definition_names:
            raise SelectionError(f"Stretch rule {rule_id} needs candidate definitions")
        self.stretch_x = bool(stretch_x)
        self.stretch_y = bool(stretch_y)
        self.min_factor = float(min_factor)
        self.max_factor = float(max_factor)
        self.definition_names = list(definition_names)
        self.constrain_connecting = bool(constrain_connecting)

    def to_record(self) -> StretchRecord:
        return StretchRecord(
            stretch_x=self.stretch_x,
            stretch_y=self.stretch_y,
            min_factor=self.min_factor,
            max_factor=self.max_factor,
            definition_names=list(self.definition_names),
            constrain_connecting=self.constrain_connecting,
        )

    def describe(self) -> str:
        axes = "".join(a for a, on in (("x", self.stretch_x), ("y", self.stretch_y)) if on)
        return (
            f"{self.rule_id}: stretch {self.definition_names} along {axes} "
            f"by {self.min_factor:g}..{self.max_factor:g}"
        )

    def scale_factor(self, value: float) -> float:
        """Map a UI value in [0, stretch_range] onto [min_factor, max_factor]."""
        span = self.controller.config.stretch_range
        value = min(max(float(value), 0.0), span)
        return self.min_factor + (self.max_factor - self.min_factor) * value / span

    def collect_candidate_shapes(self) -> Optional[Entity]:
        eligible = self._eligible(self.definition_names, skip_marked=True)
        if not eligible:
            return None
        return pick_random(self.rng, eligible)

    def check_rule(self, selection: Sequence[Entity]):
        for entity in selection:
            if entity.state is not None and entity.definition_name in self.definition_names:
                return [entity]
        return False

    def apply_rule(
        self,
        shape: Entity,
        factor_x: float,
        factor_y: float,
        mark_rule: bool = True,
    ) -> Union[Entity, bool]:
        """Stretch ``shape`` about its position; False if the result is illegal."""
        registry = self.registry
        saved = shape.transform.copy()
        sx = self.scale_factor(factor_x) if self.stretch_x else 1.0
        sy = self.scale_factor(factor_y) if self.stretch_y else 1.0
        shape.transform_by(Transform.scaling(shape.state.position, sx, sy))
        registry.update_shape(shape)

        legal = self.geometry.inside_boundary(shape.state.position, shape.state.points)
        if legal and self.constrain_connecting:
            legal = not any(
                polygons_overlap(shape.state.points, other.state.points)
                for other in registry.solution_shapes
                if other is not shape
            )
        if not legal:
            shape.transform = saved
            registry.update_shape(shape)
            logger.debug("Rule %s stretch of %s rejected", self.rule_id, shape.uid)
            return False

        if mark_rule:
            registry.mark_rule_applied(shape, self.rule_id)
        return shape
