"""
Core geometry types for shape grammar generation.

Built on NumPy for planar affine transforms and on Shapely for exact 2D
predicates. Provides Transform (placement of an instance in world space),
point-in-polygon and overlap tests, and the deterministic point orderings
(convex hull, vertex loop) used when shapes are fabricated or compared.
"""
from typing import Iterable, List, Sequence, Tuple

import numpy as np
from shapely.geometry import Point as ShapelyPoint, Polygon

Point = Tuple[float, float]


class Transform:
    """Planar affine placement stored as a 3x3 homogeneous matrix."""

    __slots__ = ("matrix",)

    def __init__(self, matrix=None):
        if matrix is None:
            matrix = np.identity(3)
        self.matrix = np.array(matrix, dtype=float).reshape(3, 3)

    @classmethod
    def identity(cls) -> "Transform":
        return cls()

    @classmethod
    def translation(cls, dx: float, dy: float) -> "Transform":
        m = np.identity(3)
        m[0, 2] = dx
        m[1, 2] = dy
        return cls(m)

    @classmethod
    def scaling(cls, center: Point, sx: float, sy: float) -> "Transform":
        """Scale about ``center``. Negative factors mirror along that axis."""
        cx, cy = center[0], center[1]
        m = np.identity(3)
        m[0, 0] = sx
        m[1, 1] = sy
        m[0, 2] = cx - sx * cx
        m[1, 2] = cy - sy * cy
        return cls(m)

    @classmethod
    def from_list(cls, values: Sequence[float]) -> "Transform":
        """Rebuild from the row-major 9 element list produced by to_list."""
        return cls(np.array(values, dtype=float).reshape(3, 3))

    def to_list(self) -> List[float]:
        return [float(v) for v in self.matrix.reshape(-1)]

    def __matmul__(self, other: "Transform") -> "Transform":
        return Transform(self.matrix @ other.matrix)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Transform):
            return NotImplemented
        return bool(np.array_equal(self.matrix, other.matrix))

    def __repr__(self) -> str:
        return f"Transform({self.to_list()})"

    def inverse(self) -> "Transform":
        return Transform(np.linalg.inv(self.matrix))

    def copy(self) -> "Transform":
        return Transform(self.matrix.copy())

    @property
    def origin(self) -> Point:
        return (float(self.matrix[0, 2]), float(self.matrix[1, 2]))

    @property
    def is_identity(self) -> bool:
        return bool(np.array_equal(self.matrix, np.identity(3)))

    def apply_point(self, point: Sequence[float]) -> Point:
        x = self.matrix[0, 0] * point[0] + self.matrix[0, 1] * point[1] + self.matrix[0, 2]
        y = self.matrix[1, 0] * point[0] + self.matrix[1, 1] * point[1] + self.matrix[1, 2]
        return (float(x), float(y))

    def apply(self, points: Iterable[Sequence[float]]) -> List[Point]:
        return [self.apply_point(p) for p in points]


# ─── Point sets ──────────────────────────────────────────────────────────────

def as_point(value: Sequence[float]) -> Point:
    """Drop any Z coordinate; containment is 2D only."""
    return (float(value[0]), float(value[1]))


def bounding_box(points: Sequence[Point]) -> Tuple[float, float, float, float]:
    """Return (min_x, min_y, max_x, max_y)."""
    if not points:
        raise ValueError("bounding_box() of an empty point set")
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    return (min(xs), min(ys), max(xs), max(ys))


def bounds_center(points: Sequence[Point]) -> Point:
    min_x, min_y, max_x, max_y = bounding_box(points)
    return ((min_x + max_x) / 2.0, (min_y + max_y) / 2.0)


def bounds_min(points: Sequence[Point]) -> Point:
    min_x, min_y, _, _ = bounding_box(points)
    return (min_x, min_y)


def unique_points(points: Iterable[Sequence[float]]) -> List[Point]:
    """Remove exact duplicates while keeping first-seen order."""
    seen = set()
    result = []
    for p in points:
        pt = as_point(p)
        if pt not in seen:
            seen.add(pt)
            result.append(pt)
    return result


def _cross(o: Point, a: Point, b: Point) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def convex_hull(points: Iterable[Sequence[float]]) -> List[Point]:
    """Monotone chain convex hull, counter-clockwise, collinear points dropped."""
    pts = sorted(unique_points(points))
    if len(pts) <= 2:
        return pts

    lower: List[Point] = []
    for p in pts:
        while len(lower) >= 2 and _cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: List[Point] = []
    for p in reversed(pts):
        while len(upper) >= 2 and _cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    # Last point of each chain is the first point of the other
    return lower[:-1] + upper[:-1]


def sort_vertices(points: Iterable[Sequence[float]]) -> List[Point]:
    """Order points counter-clockwise around their centroid.

    Unlike convex_hull, every distinct point is kept. Ties in angle are
    broken by distance from the centroid.
    """
    pts = unique_points(points)
    if len(pts) < 3:
        return pts
    arr = np.array(pts)
    cx, cy = arr.mean(axis=0)
    angles = np.arctan2(arr[:, 1] - cy, arr[:, 0] - cx)
    dists = np.hypot(arr[:, 0] - cx, arr[:, 1] - cy)
    order = np.lexsort((dists, angles))
    return [pts[i] for i in order]


# ─── Shapely predicates ──────────────────────────────────────────────────────

def points_to_polygon(points: Iterable[Sequence[float]]) -> Polygon:
    """Build a convex Shapely polygon from an unordered point set."""
    hull = convex_hull(points)
    if len(hull) < 3:
        return Polygon()
    return Polygon(hull)


def point_in_polygon_2d(
    point: Sequence[float],
    polygon_loop: Sequence[Sequence[float]],
    inclusive: bool = True,
) -> bool:
    """Test a point against a polygon loop, ignoring Z.

    With ``inclusive`` a point on an edge or vertex counts as inside.
    """
    if isinstance(polygon_loop, Polygon):
        polygon = polygon_loop
    else:
        polygon = Polygon([as_point(p) for p in polygon_loop])
    pt = ShapelyPoint(as_point(point))
    if inclusive:
        return bool(polygon.covers(pt))
    return bool(polygon.contains(pt))


def polygons_overlap(
    points_a: Iterable[Sequence[float]],
    points_b: Iterable[Sequence[float]],
) -> bool:
    """True when the interiors of the two convex outlines intersect.

    Touching along an edge or at a vertex is not an overlap.
    """
    a = points_to_polygon(points_a)
    b = points_to_polygon(points_b)
    if a.is_empty or b.is_empty:
        return False
    return bool(a.intersects(b) and not a.touches(b))


def direction_vector(a: Point, b: Point) -> np.ndarray:
    return np.array([b[0] - a[0], b[1] - a[1]], dtype=float)


def distance(a: Point, b: Point) -> float:
    return float(np.hypot(b[0] - a[0], b[1] - a[1]))
