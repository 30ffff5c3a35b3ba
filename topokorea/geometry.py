"""
Shared geometry helpers

Triangle meshes, polyline sampling, polygon caps and prisms used by the terrain,
building, contour and water builders.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import mapbox_earcut as earcut
from shapely.geometry import LineString, MultiPolygon, Polygon
from shapely.geometry.polygon import orient
from shapely.ops import unary_union

logger = logging.getLogger(__name__)


@dataclass
class Mesh:
    """Indexed triangle mesh. Faces are counter-clockwise seen from outside."""
    vertices: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    faces: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.int64))

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=float).reshape(-1, 3)
        self.faces = np.asarray(self.faces, dtype=np.int64).reshape(-1, 3)

    @property
    def is_empty(self) -> bool:
        return len(self.faces) == 0

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.vertices.min(axis=0), self.vertices.max(axis=0)

    def triangles(self) -> List[Tuple[Tuple[float, float, float], ...]]:
        return [tuple(tuple(float(c) for c in self.vertices[i]) for i in face) for face in self.faces]

    def translate(self, dz: float) -> "Mesh":
        moved = self.vertices.copy()
        moved[:, 2] += dz
        return Mesh(moved, self.faces.copy())

    @staticmethod
    def merge(meshes: Iterable["Mesh"]) -> "Mesh":
        vertices, faces = [], []
        offset = 0
        for mesh in meshes:
            if mesh is None or mesh.is_empty:
                continue
            vertices.append(mesh.vertices)
            faces.append(mesh.faces + offset)
            offset += len(mesh.vertices)
        if not vertices:
            return Mesh()
        return Mesh(np.vstack(vertices), np.vstack(faces))


def ring_coords(ring, closed: bool = False) -> np.ndarray:
    """2D coordinates of a shapely ring, without the closing duplicate unless asked."""
    coords = np.array([(c[0], c[1]) for c in ring.coords], dtype=float)
    if not closed and len(coords) > 1 and np.allclose(coords[0], coords[-1]):
        coords = coords[:-1]
    return coords


def divide_by_length(coords: Sequence[Sequence[float]], length: float,
                     include_start: bool = False) -> np.ndarray:
    """
    Points every `length` along a polyline (2D).

    The start point is only included when include_start is set; the end point is
    never repeated.
    """
    if length <= 0:
        raise ValueError("Division length must be positive")
    pts = np.asarray(coords, dtype=float)[:, :2]
    if len(pts) < 2:
        return np.zeros((0, 2))
    line = LineString(pts)
    total = line.length
    start = 0.0 if include_start else length
    distances = np.arange(start, total, length)
    distances = distances[distances < total - 1e-9]
    return np.array([(p.x, p.y) for p in (line.interpolate(d) for d in distances)]).reshape(-1, 2)


def densify_ring(coords: Sequence[Sequence[float]], max_segment_length: float = 10.0) -> np.ndarray:
    """Add vertices to a polyline so no segment is longer than max_segment_length."""
    pts = np.asarray(coords, dtype=float)[:, :2]
    if len(pts) < 2:
        return pts
    new_coords = []
    for p1, p2 in zip(pts[:-1], pts[1:]):
        new_coords.append(p1)
        dist = float(np.hypot(*(p2 - p1)))
        if dist > max_segment_length:
            num_segments = int(np.ceil(dist / max_segment_length))
            for j in range(1, num_segments):
                new_coords.append(p1 + (p2 - p1) * (j / num_segments))
    new_coords.append(pts[-1])
    return np.array(new_coords)


def orient_ccw(polygon: Polygon) -> Polygon:
    """Exterior counter-clockwise, holes clockwise (upward normal)."""
    return orient(polygon, sign=1.0)


def union_regions(polygons: Iterable[Polygon]) -> List[Polygon]:
    """Boolean union of closed outlines into separate region polygons."""
    cleaned = []
    for poly in polygons:
        if poly is None or poly.is_empty:
            continue
        if not poly.is_valid:
            poly = poly.buffer(0)
            if poly.is_empty:
                logger.debug("Dropping outline that collapsed during repair")
                continue
        cleaned.append(poly)
    if not cleaned:
        return []

    merged = unary_union(cleaned)
    if merged.geom_type == 'Polygon':
        return [merged]
    if merged.geom_type in ('MultiPolygon', 'GeometryCollection'):
        return [g for g in merged.geoms if g.geom_type == 'Polygon' and not g.is_empty]
    return []


def largest_polygon(geom) -> Optional[Polygon]:
    if geom is None or geom.is_empty:
        return None
    if geom.geom_type == 'Polygon':
        return geom
    if geom.geom_type in ('MultiPolygon', 'GeometryCollection'):
        polys = [g for g in geom.geoms if g.geom_type == 'Polygon']
        if polys:
            return max(polys, key=lambda p: p.area)
    return None


def triangulate_polygon(polygon: Polygon) -> Tuple[np.ndarray, np.ndarray]:
    """
    Earcut triangulation of a polygon with holes.

    Returns:
        vertices: (N, 2) ring vertices (exterior first, then holes)
        triangles: (M, 3) vertex indices, each counter-clockwise
    """
    rings = [ring_coords(polygon.exterior)]
    rings.extend(ring_coords(interior) for interior in polygon.interiors)
    rings = [r for r in rings if len(r) >= 3]
    if not rings:
        return np.zeros((0, 2)), np.zeros((0, 3), dtype=np.int64)

    vertices = np.vstack(rings)
    ring_ends = np.cumsum([len(r) for r in rings]).astype(np.uint32)
    indices = np.asarray(earcut.triangulate_float64(vertices, ring_ends), dtype=np.int64).reshape(-1, 3)

    # earcut does not promise a winding, normalise to counter-clockwise
    a, b, c = vertices[indices[:, 0]], vertices[indices[:, 1]], vertices[indices[:, 2]]
    signed = (b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])
    flip = signed < 0
    indices[flip] = indices[flip][:, [0, 2, 1]]
    return vertices, indices


def planar_cap(polygon: Polygon, z: float, facing_up: bool = True) -> Mesh:
    vertices2d, triangles = triangulate_polygon(polygon)
    if len(triangles) == 0:
        return Mesh()
    vertices = np.column_stack([vertices2d, np.full(len(vertices2d), z)])
    if not facing_up:
        triangles = triangles[:, [0, 2, 1]]
    return Mesh(vertices, triangles)


def wall_band(ring_xy: np.ndarray, z_bottom: float, z_top: float) -> Mesh:
    """
    Vertical quad strip along a closed ring.

    Normals face outward for a counter-clockwise ring and inward for a clockwise one.
    """
    ring_xy = np.asarray(ring_xy, dtype=float)[:, :2]
    bottom = np.column_stack([ring_xy, np.full(len(ring_xy), z_bottom)])
    top = np.column_stack([ring_xy, np.full(len(ring_xy), z_top)])
    return ruled_band(bottom, top)


def ruled_band(ring_a: np.ndarray, ring_b: np.ndarray) -> Mesh:
    """Ruled surface between two closed 3D rings of equal vertex count."""
    ring_a = np.asarray(ring_a, dtype=float)
    ring_b = np.asarray(ring_b, dtype=float)
    if ring_a.shape != ring_b.shape:
        raise ValueError("Ruled band needs rings with the same number of vertices")
    n = len(ring_a)
    faces = []
    for i in range(n):
        j = (i + 1) % n
        faces.append((i, j, n + j))
        faces.append((i, n + j, n + i))
    return Mesh(np.vstack([ring_a, ring_b]), faces)


def extrude_polygon(polygon: Polygon, z0: float, height: float) -> Mesh:
    """Closed prism: bottom cap, walls for every ring, top cap."""
    polygon = orient_ccw(polygon)
    parts = [planar_cap(polygon, z0, facing_up=False)]
    for ring in [polygon.exterior, *polygon.interiors]:
        parts.append(wall_band(ring_coords(ring), z0, z0 + height))
    parts.append(planar_cap(polygon, z0 + height, facing_up=True))
    return Mesh.merge(parts)


def polygon_from_coords(coords: Sequence[Sequence[float]]) -> Optional[Polygon]:
    """Closed 2D polygon from ring coordinates, repaired when self-intersecting."""
    pts = [(c[0], c[1]) for c in coords]
    if len(pts) < 3:
        return None
    poly = Polygon(pts)
    if not poly.is_valid:
        poly = largest_polygon(poly.buffer(0))
    if poly is None or poly.is_empty or poly.area <= 0:
        return None
    return poly


def flatten_polygons(geom) -> List[Polygon]:
    if geom is None or geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom]
    if isinstance(geom, MultiPolygon) or geom.geom_type == 'GeometryCollection':
        return [g for g in geom.geoms if g.geom_type == 'Polygon' and not g.is_empty]
    return []
