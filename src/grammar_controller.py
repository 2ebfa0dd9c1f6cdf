"""
Controller for iterative shape grammar generation.

A Controller binds one scene to its boundary, owns the entity registry and
the rule set, and runs the randomized generation loop. Several controllers
can work on separate scenes in the same process.
"""
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from errors import (
    AmbiguousBoundaryError,
    ConfigurationError,
    NoBoundaryError,
    NoCandidateError,
    PersistedStateInconsistency,
    SelectionError,
    UnknownRuleError,
)
from geometry_primitives import Transform
from grammar_rules import MergeRule, ReplaceRule, Rule, StretchRule, pick_random
from rule_records import decode_record, record_to_dict
from scene import ISG_DICT, Entity, Layer, Role, Scene
from shape_geometry import Geometry
from shape_registry import EntityRegistry

logger = logging.getLogger(__name__)

# Model attribute dictionaries
RULES_DICT = "IterativeSG-rules"
MODEL_DICT = ISG_DICT


@dataclass
class GenerationConfig:
    """Defaults for generation runs and rule construction."""
    iterations: int = 120
    timeout_seconds: float = 20.0
    seed: Optional[int] = None
    uid_max_attempts: int = 8
    ray_step: float = 0.05            # ray marching step for merge neighbour search
    merge_max_distance: float = 1.0
    stretch_range: float = 10.0       # stretch factors are given in [0, stretch_range]


@dataclass
class GenerationReport:
    """Outcome of one generate_design call."""
    applied: int
    requested: int
    elapsed_seconds: float
    completed: bool
    stop_reason: str
    applied_rules: List[str] = field(default_factory=list)
    solution_size: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


class Controller:
    """Owns the registry, rules and boundary of one working model."""

    def __init__(
        self,
        scene: Scene,
        config: Optional[GenerationConfig] = None,
        rng: Optional[np.random.Generator] = None,
        uid_factory: Optional[Callable[[], str]] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.scene = scene
        self.config = config or GenerationConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self.uid_factory = uid_factory
        self.clock = clock

        self.boundary: Optional[Entity] = None
        self.geometry: Optional[Geometry] = None
        self.registry: Optional[EntityRegistry] = None
        self.rules: Dict[str, Rule] = {}
        self.last_failed_original: Optional[Entity] = None
        self._picked_original: Optional[Tuple[Entity, List[Entity]]] = None
        self._picked_new: Optional[Tuple[Entity, List[Entity]]] = None

    # ─── Initialization ──────────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        return self.registry is not None

    @property
    def solution_shapes(self) -> List[Entity]:
        self._require_initialized()
        return self.registry.solution_shapes

    @property
    def rules_dictionary(self) -> Dict:
        return self.scene.model_dictionary(RULES_DICT)

    def initialize(self, boundary_entity: Optional[Entity] = None) -> "Controller":
        """Bind the boundary, register shapes and markers, and load rules."""
        boundary = self._resolve_boundary(boundary_entity)
        geometry = Geometry.initialize(boundary)

        registry = EntityRegistry(
            self.scene,
            geometry,
            uid_factory=self.uid_factory,
            max_attempts=self.config.uid_max_attempts,
        )
        # Payloads left by an earlier controller on this scene are stale
        registry.reset()
        boundary.set_attribute(ISG_DICT, "role", Role.BOUNDARY.value)
        boundary.role = Role.BOUNDARY
        boundary.layer = Layer.BOUNDARY

        self.boundary = boundary
        self.geometry = geometry
        self.registry = registry
        self.rules = {}
        self.last_failed_original = None
        self._picked_original = None
        self._picked_new = None

        self.registry.scan()
        self.cleanup_rules()
        self._load_rules()
        logger.info(
            "Controller initialized: %d solution shapes, %d rules",
            len(self.registry.solution_shapes), len(self.rules),
        )
        return self

    def _resolve_boundary(self, boundary_entity: Optional[Entity]) -> Entity:
        if boundary_entity is not None:
            if self.scene.get(boundary_entity.eid) is not boundary_entity:
                raise NoBoundaryError("Boundary entity is not part of the scene")
            return boundary_entity
        tagged = self.scene.tagged(Role.BOUNDARY)
        if not tagged:
            raise NoBoundaryError("Please select a boundary component")
        if len(tagged) > 1:
            raise AmbiguousBoundaryError(
                f"Scene has {len(tagged)} boundary entities, select one explicitly"
            )
        return tagged[0]

    def _require_initialized(self) -> None:
        if self.registry is None:
            raise ConfigurationError("Controller is not initialized")

    def cleanup_rules(self) -> List[str]:
        """Purge persisted rules whose records are unreadable or dangling."""
        self._require_initialized()
        purged = []
        for rule_id, data in list(self.rules_dictionary.items()):
            try:
                record = decode_record(data)
            except PersistedStateInconsistency as exc:
                logger.warning("Purging rule %s: %s", rule_id, exc)
                purged.append(rule_id)
                continue
            missing = [uid for uid in record.referenced_uids() if self.registry.lookup(uid) is None]
            if missing:
                logger.warning("Purging rule %s: missing entities %s", rule_id, missing)
                purged.append(rule_id)
        for rule_id in purged:
            del self.rules_dictionary[rule_id]
            self.rules.pop(rule_id, None)
        return purged

    def _load_rules(self) -> None:
        for rule_id, data in list(self.rules_dictionary.items()):
            try:
                record = decode_record(data)
                rule = Rule.from_record(rule_id, record, self)
            except (PersistedStateInconsistency, ConfigurationError) as exc:
                logger.warning("Purging rule %s: %s", rule_id, exc)
                del self.rules_dictionary[rule_id]
                continue
            # Legacy list records are rewritten in the typed layout
            self.rules_dictionary[rule_id] = record_to_dict(record)
            self.rules[rule_id] = rule
            logger.debug("Loaded %s", rule.describe())

    # ─── Rule definition ─────────────────────────────────────────────────

    def _split_selection(self, selection: Sequence[Entity]) -> Tuple[Entity, List[Entity]]:
        markers, shapes = [], []
        for entity in selection:
            if entity.role == Role.MARKER or (entity.role is None and not entity.definition.faces):
                markers.append(entity)
            elif entity.role in (None, Role.SHAPE):
                shapes.append(entity)
            else:
                raise SelectionError("Selection may only contain shapes and one marker")
        if len(markers) != 1:
            raise SelectionError(f"Selection needs exactly one origin marker, found {len(markers)}")
        if not shapes:
            raise SelectionError("Selection needs at least one shape")
        self.registry.initialize_marker(markers[0])
        for shape in shapes:
            self.registry.initialize_shape(shape)
        return markers[0], shapes

    def pick_original_shape(self, selection: Sequence[Entity]) -> Tuple[Entity, List[Entity]]:
        """Remember the origin marker and source shapes of the next rule."""
        self._require_initialized()
        self._picked_original = self._split_selection(selection)
        return self._picked_original

    def pick_new_shape(self, selection: Sequence[Entity]) -> Tuple[Entity, List[Entity]]:
        """Remember the origin marker and replacement shapes of the next rule."""
        self._require_initialized()
        self._picked_new = self._split_selection(selection)
        return self._picked_new

    def generate_rule_name(self) -> str:
        i = 1
        while f"Rule {i}" in self.rules:
            i += 1
        return f"Rule {i}"

    def _store_rule(self, rule: Rule, replace_existing: bool) -> Rule:
        if rule.rule_id in self.rules and not replace_existing:
            raise ConfigurationError(f"Rule already exists: {rule.rule_id}")
        self.rules[rule.rule_id] = rule
        self.rules_dictionary[rule.rule_id] = record_to_dict(rule.to_record())
        logger.info("Defined %s", rule.describe())
        return rule

    def define_replace_rule(
        self,
        rule_id: Optional[str] = None,
        mirror_x: bool = False,
        mirror_y: bool = False,
        disable_overlap: bool = False,
        replace_existing: bool = True,
    ) -> ReplaceRule:
        """Define a Replace rule from the picked original and new selections."""
        self._require_initialized()
        if self._picked_original is None or self._picked_new is None:
            raise SelectionError("Pick the original and the new shapes before defining a rule")
        origin, shapes = self._picked_original
        origin_new, shapes_new = self._picked_new
        rule = ReplaceRule(
            rule_id or self.generate_rule_name(),
            self,
            origin_uid=origin.uid,
            shape_uids=[s.uid for s in shapes],
            origin_new_uid=origin_new.uid,
            shape_new_uids=[s.uid for s in shapes_new],
            mirror_x=mirror_x,
            mirror_y=mirror_y,
            disable_overlap=disable_overlap,
        )
        return self._store_rule(rule, replace_existing)

    def define_merge_rule(
        self,
        rule_id: Optional[str] = None,
        merge_x: bool = True,
        merge_y: bool = False,
        num_objects: int = 2,
        definition_names: Optional[Sequence[str]] = None,
        max_distance: Optional[float] = None,
        selection: Optional[Sequence[Entity]] = None,
        replace_existing: bool = True,
    ) -> MergeRule:
        """Define a Merge rule; candidate definitions may come from a selection."""
        self._require_initialized()
        names = list(definition_names or [])
        for entity in selection or []:
            if entity.definition.faces and entity.definition_name not in names:
                names.append(entity.definition_name)
        rule = MergeRule(
            rule_id or self.generate_rule_name(),
            self,
            merge_x=merge_x,
            merge_y=merge_y,
            num_objects=num_objects,
            definition_names=names,
            max_distance=max_distance if max_distance is not None else self.config.merge_max_distance,
        )
        return self._store_rule(rule, replace_existing)

    def define_stretch_rule(
        self,
        rule_id: Optional[str] = None,
        stretch_x: bool = True,
        stretch_y: bool = False,
        min_factor: float = 0.5,
        max_factor: float = 2.0,
        definition_names: Optional[Sequence[str]] = None,
        constrain_connecting: bool = False,
        selection: Optional[Sequence[Entity]] = None,
        replace_existing: bool = True,
    ) -> StretchRule:
        """Define a Stretch rule; candidate definitions may come from a selection."""
        self._require_initialized()
        names = list(definition_names or [])
        for entity in selection or []:
            if entity.definition.faces and entity.definition_name not in names:
                names.append(entity.definition_name)
        rule = StretchRule(
            rule_id or self.generate_rule_name(),
            self,
            stretch_x=stretch_x,
            stretch_y=stretch_y,
            min_factor=min_factor,
            max_factor=max_factor,
            definition_names=names,
            constrain_connecting=constrain_connecting,
        )
        return self._store_rule(rule, replace_existing)

    def get_rule(self, rule_id: str) -> Rule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise UnknownRuleError(f"Unknown rule: {rule_id}")
        return rule

    def remove_rule(self, rule_id: str) -> None:
        self.get_rule(rule_id)
        del self.rules[rule_id]
        self.rules_dictionary.pop(rule_id, None)
        logger.info("Removed rule %s", rule_id)

    # ─── Single applications ─────────────────────────────────────────────

    def apply_rule_to_selection(
        self,
        rule_id: str,
        selection: Sequence[Entity],
        mirror_x: int = 1,
        mirror_y: int = 1,
        factor_x: float = 5.0,
        factor_y: float = 5.0,
    ) -> Union[List[Entity], Entity, bool]:
        """Apply one rule to the selected shapes."""
        self._require_initialized()
        rule = self.get_rule(rule_id)
        candidates = rule.check_rule(selection)
        if candidates is False:
            raise SelectionError(f"Selection does not match rule {rule_id}")
        if isinstance(rule, ReplaceRule):
            return rule.apply_rule(False, candidates, mirror_x, mirror_y)
        if isinstance(rule, MergeRule):
            return rule.apply_rule(candidates)
        return rule.apply_rule(candidates[0], factor_x, factor_y)

    def revert_rule_application(self, entity: Entity) -> List[Entity]:
        """Undo the rule application that produced ``entity``."""
        self._require_initialized()
        if entity.state is None or entity.state.applied_by_rule is None:
            raise SelectionError("Selected shape was not produced by a reversible rule")
        rule = self.rules.get(entity.state.applied_by_rule)
        if not isinstance(rule, MergeRule):
            raise SelectionError(
                f"Rule {entity.state.applied_by_rule} cannot be reverted"
            )
        restored = rule.remove_rule(entity)
        logger.info("Reverted %s, restored %d shapes", rule.rule_id, len(restored))
        return restored

    # ─── Working model ───────────────────────────────────────────────────

    def set_initial_shape(self, entity: Entity) -> None:
        """Record the seed shape that reset_solution places again."""
        self._require_initialized()
        if not entity.definition.faces:
            raise SelectionError("Initial shape must be a shape, not a marker")
        model = self.scene.model_dictionary(MODEL_DICT)
        model["initial_definition"] = entity.definition_name
        model["initial_transform"] = entity.transform.to_list()

    def reset_solution(self) -> Optional[Entity]:
        """Clear the solution and hidden shapes, then re-place the initial shape."""
        self._require_initialized()
        for shape in list(self.registry.shapes):
            if shape.layer in (Layer.SOLUTION, Layer.HIDDEN):
                self.registry.remove_shape(shape)
        model = self.scene.model_dictionary(MODEL_DICT)
        name = model.get("initial_definition")
        if name is None or name not in self.scene.definitions:
            logger.info("Solution cleared, no initial shape recorded")
            return None
        seed = self.scene.place(name, Transform.from_list(model["initial_transform"]), Layer.SOLUTION)
        self.registry.initialize_shape(seed)
        self.registry.add_to_solution(seed)
        logger.info("Solution reset to initial shape %s", seed.uid)
        return seed

    # ─── Generation ──────────────────────────────────────────────────────

    def generate_design(
        self,
        num_applications: Optional[int] = None,
        rule_ids: Optional[Sequence[str]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> GenerationReport:
        """Apply randomly chosen rules until the count, the timeout or the rules run out."""
        self._require_initialized()
        if num_applications is None:
            num_applications = self.config.iterations
        if timeout_seconds is None:
            timeout_seconds = self.config.timeout_seconds
        if num_applications < 0:
            raise ConfigurationError("Number of rule applications must not be negative")

        pool = self._rule_pool(rule_ids)
        started = self.clock()
        remaining = num_applications
        applied = 0
        applied_rules: List[str] = []
        stop_reason = "completed"

        while remaining > 0:
            if self.clock() - started > timeout_seconds:
                remaining = 0
                stop_reason = "timeout"
                break
            if not pool:
                stop_reason = "rules_exhausted"
                break

            rule_id = pick_random(self.rng, pool)
            rule = self.rules[rule_id]
            try:
                progressed = self._step(rule)
            except NoCandidateError:
                if isinstance(rule, MergeRule):
                    logger.info("Merge rule %s found no candidates, stopping", rule_id)
                    stop_reason = "merge_exhausted"
                    break
                logger.debug("Rule %s has no candidates, dropped from pool", rule_id)
                pool.remove(rule_id)
                continue

            if progressed:
                remaining -= 1
                applied += 1
                applied_rules.append(rule_id)

        elapsed = self.clock() - started
        report = GenerationReport(
            applied=applied,
            requested=num_applications,
            elapsed_seconds=elapsed,
            completed=applied == num_applications,
            stop_reason=stop_reason,
            applied_rules=applied_rules,
            solution_size=len(self.registry.solution_shapes),
        )
        if report.completed:
            logger.info("Generated design: %d rule applications in %.2fs", applied, elapsed)
        else:
            logger.warning(
                "Generation stopped early (%s): %d of %d rule applications in %.2fs",
                stop_reason, applied, num_applications, elapsed,
            )
        return report

    def _rule_pool(self, rule_ids: Optional[Sequence[str]]) -> List[str]:
        if not rule_ids:
            return list(self.rules)
        pool = []
        for rule_id in rule_ids:
            if rule_id in self.rules:
                if rule_id not in pool:
                    pool.append(rule_id)
            else:
                logger.warning("Ignoring unknown rule %s", rule_id)
        if not pool:
            raise UnknownRuleError("Please specify correct rule names")
        return pool

    def _step(self, rule: Rule) -> bool:
        if isinstance(rule, ReplaceRule):
            return self._step_replace(rule)
        if isinstance(rule, MergeRule):
            return self._step_merge(rule)
        return self._step_stretch(rule)

    def _random_sign(self) -> int:
        return -1 if self.rng.random() < 0.5 else 1

    def _step_replace(self, rule: ReplaceRule) -> bool:
        candidates = rule.collect_candidate_shapes()
        if candidates is None:
            raise NoCandidateError(rule.rule_id)
        mirror_x = self._random_sign() if rule.mirror_x else 1
        mirror_y = self._random_sign() if rule.mirror_y else 1
        result = rule.apply_rule(False, candidates, mirror_x, mirror_y)
        if result is not False:
            return True

        failed = self.last_failed_original
        if failed is None or any(c.deleted for c in candidates):
            return False
        # Retry the same original mirrored the other way, marking it so the
        # rule will not pick it again
        logger.debug("Retrying rule %s on %s with inverted mirroring", rule.rule_id, failed.uid)
        result = rule.apply_rule(True, candidates, -mirror_x, -mirror_y)
        return result is not False

    def _step_merge(self, rule: MergeRule) -> bool:
        cluster = rule.collect_candidate_shapes()
        if cluster is None:
            raise NoCandidateError(rule.rule_id)
        rule.apply_rule(cluster)
        return True

    def _step_stretch(self, rule: StretchRule) -> bool:
        shape = rule.collect_candidate_shapes()
        if shape is None:
            raise NoCandidateError(rule.rule_id)
        span = self.config.stretch_range
        factor_x = float(self.rng.uniform(0.0, span))
        factor_y = float(self.rng.uniform(0.0, span))
        result = rule.apply_rule(shape, factor_x, factor_y)
        if result is False:
            self.registry.mark_rule_applied(shape, rule.rule_id)
            return False
        return True
