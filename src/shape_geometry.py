"""
Geometric predicates and constructions over a fixed boundary.

A Geometry instance is bound to the convex boundary loop of one working
model. Shape comparisons operate on the cached state of initialized shapes
(position, world points, transform) and use exact equality.
"""
import logging
from typing import List, Optional, Sequence

import numpy as np
import shapely
from shapely.geometry import LineString, Polygon

from errors import InvalidBoundaryError
from geometry_primitives import (
    Point,
    convex_hull,
    distance,
    point_in_polygon_2d,
    points_to_polygon,
)
from scene import Entity, Layer, Scene

logger = logging.getLogger(__name__)

DISTANCE_TOLERANCE = 1e-9


class Geometry:
    """Boundary-bound geometry helpers."""

    def __init__(self, boundary_points: Sequence[Point]):
        self.boundary_points: List[Point] = [(float(p[0]), float(p[1])) for p in boundary_points]
        self.boundary_polygon = Polygon(self.boundary_points)

    @classmethod
    def initialize(cls, boundary_entity: Entity) -> "Geometry":
        """Extract the world-space outer loop of the boundary's single face."""
        faces = boundary_entity.definition.faces
        if len(faces) != 1:
            raise InvalidBoundaryError(
                f"Boundary component should contain exactly one face, found {len(faces)}"
            )
        loop = boundary_entity.transform.apply(faces[0])
        if len(loop) < 3:
            raise InvalidBoundaryError("Boundary face needs at least three vertices")
        logger.debug("Boundary loop: %s", loop)
        return cls(loop)

    # ─── Containment ─────────────────────────────────────────────────────

    def inside_boundary(self, center: Point, points: Sequence[Point]) -> bool:
        """True when ``center`` and every point lie inside or on the boundary."""
        if not point_in_polygon_2d(center, self.boundary_polygon, True):
            return False
        for pt in points:
            if not point_in_polygon_2d(pt, self.boundary_polygon, True):
                return False
        return True

    def entity_inside(self, entity: Entity) -> bool:
        state = entity.state
        if state is None:
            return self.inside_boundary(entity.bounds_center(), entity.world_points())
        return self.inside_boundary(state.position, state.points)

    # ─── Identity ────────────────────────────────────────────────────────

    @staticmethod
    def identical(a: Entity, b: Entity) -> bool:
        """Exact comparison of two initialized shapes.

        Shapes with different centers never match. Same definition and same
        transform always match. Otherwise every point of ``a`` must consume
        one equal point of ``b`` with nothing left over.
        """
        sa, sb = a.state, b.state
        if sa.position != sb.position:
            return False
        if sa.definition_name == sb.definition_name and sa.transform == sb.transform:
            return True

        remaining = list(sb.points)
        for point in sa.points:
            try:
                remaining.remove(point)
            except ValueError:
                return False
        return not remaining

    # ─── Distance search ─────────────────────────────────────────────────

    @staticmethod
    def sort_by_distance(entity: Entity, shapes: Sequence[Entity]) -> List[Entity]:
        """Other shapes ordered by center distance from ``entity``, nearest first."""
        origin = entity.state.position
        others = [s for s in shapes if s is not entity]
        return sorted(others, key=lambda s: distance(origin, s.state.position))

    @classmethod
    def get_closest(cls, entity: Entity, shapes: Sequence[Entity], n: int = 1) -> List[Entity]:
        return cls.sort_by_distance(entity, shapes)[:n]

    @staticmethod
    def get_by_distance(
        entity: Entity,
        candidates: Sequence[Entity],
        dist: float,
        vector: Sequence[float],
    ) -> List[Entity]:
        """Candidates ``dist`` away from ``entity`` in the direction of ``vector``."""
        origin = np.array(entity.state.position)
        ref = np.array(vector[:2], dtype=float)
        ref_norm = float(np.linalg.norm(ref))
        found = []
        for cand in candidates:
            if cand is entity:
                continue
            offset = np.array(cand.state.position) - origin
            length = float(np.linalg.norm(offset))
            if abs(length - dist) > DISTANCE_TOLERANCE:
                continue
            if ref_norm == 0.0 or length == 0.0:
                if ref_norm == length:
                    found.append(cand)
                continue
            cross = ref[0] * offset[1] - ref[1] * offset[0]
            if abs(cross) <= DISTANCE_TOLERANCE * ref_norm * length and float(ref @ offset) > 0:
                found.append(cand)
        return found

    @staticmethod
    def collect_in_direction(
        entity: Entity,
        candidates: Sequence[Entity],
        count: int,
        vector: Sequence[float],
        max_distance: float,
        obstacles: Optional[Sequence[Entity]] = None,
        step: float = 0.05,
    ) -> List[Entity]:
        """March a ray from ``entity`` along ``vector`` collecting up to ``count`` hits.

        Every shape struck must be one of ``candidates``; striking any other
        obstacle aborts the search and returns an empty list.
        """
        if count <= 0:
            return []
        unit = np.array(vector[:2], dtype=float)
        norm = float(np.linalg.norm(unit))
        if norm == 0.0:
            raise ValueError("collect_in_direction() needs a non-zero vector")
        unit /= norm
        if step <= 0:
            raise ValueError("ray step must be positive")

        if obstacles is None:
            obstacles = candidates
        allowed = set(candidates)
        outlines = [
            (shape, points_to_polygon(shape.state.points))
            for shape in obstacles
            if shape is not entity
        ]
        origin = np.array(entity.state.position, dtype=float)

        hits: List[Entity] = []
        seen = {entity}
        travelled = 0.0
        while travelled < max_distance and len(hits) < count:
            reach = min(travelled + step, max_distance)
            start = origin + unit * travelled
            segment = LineString([tuple(start), tuple(origin + unit * reach)])
            struck = []
            for shape, outline in outlines:
                if shape in seen or outline.is_empty or not outline.intersects(segment):
                    continue
                coords = shapely.get_coordinates(outline.intersection(segment))
                first = min(float((c - start) @ unit) for c in coords) if len(coords) else 0.0
                struck.append((first, shape))
            struck.sort(key=lambda item: item[0])
            for _, shape in struck:
                if shape not in allowed:
                    logger.debug("Ray from %s obstructed by %s", entity.uid, shape.uid)
                    return []
                hits.append(shape)
                seen.add(shape)
                if len(hits) == count:
                    break
            travelled = reach
        return hits

    # ─── Constructions ───────────────────────────────────────────────────

    @staticmethod
    def add_face_in_component(
        scene: Scene,
        name: str,
        points: Sequence[Point],
        face_material: Optional[str] = None,
        edge_material: Optional[str] = None,
    ) -> Entity:
        """Create a new definition holding the convex hull of ``points`` and place it.

        The hull is stored in world coordinates and placed with an identity
        transform, so the instance's points equal the hull vertices exactly.
        """
        hull = convex_hull(points)
        if len(hull) < 3:
            raise ValueError("Cannot build a face from fewer than three non-collinear points")
        definition = scene.add_definition(
            scene.unique_definition_name(name),
            [hull],
            face_material=face_material,
            edge_material=edge_material,
        )
        return scene.place(definition, layer=Layer.SOLUTION)

    @staticmethod
    def sort_components_in_direction(entities: Sequence[Entity], axis: str = "x") -> List[Entity]:
        """Order entities by position along ``axis`` by repeated minimum extraction."""
        if axis not in ("x", "y"):
            raise ValueError(f"axis must be 'x' or 'y', got {axis!r}")
        index = 0 if axis == "x" else 1
        remaining = list(entities)
        ordered = []
        while remaining:
            best = remaining[0]
            for ent in remaining[1:]:
                if ent.state.position[index] < best.state.position[index]:
                    best = ent
            remaining.remove(best)
            ordered.append(best)
        return ordered
