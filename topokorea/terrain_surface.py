"""
Terrain surface fitting

Builds a smooth terrain surface from NGII contour lines: the contours are lifted
to their elevation and sampled, the samples are Delaunay triangulated, a regular
grid is ray cast against the triangulation and a bicubic spline is fitted
through the grid.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.interpolate import LinearNDInterpolator, NearestNDInterpolator, RectBivariateSpline
from scipy.spatial import Delaunay, QhullError
from shapely.geometry import box

from topokorea.geometry import Mesh, divide_by_length
from topokorea.loaders.ngii import ContourLine

logger = logging.getLogger(__name__)

SAMPLE_LENGTH = 10.0  # contour sampling interval (m)
DOMAIN_MARGIN = 30.0  # outward growth of the sampling domain (m)
RAY_START_DROP = 1000.0
MIN_DIVISOR = 10
MAX_WORKERS = 8


@dataclass
class TerrainSurface:
    """
    Bicubic terrain surface over a rectangular domain.

    xs and ys are the grid coordinates, zs[i, j] the fitted height at (xs[i], ys[j]).
    """
    xs: np.ndarray
    ys: np.ndarray
    zs: np.ndarray
    spline: RectBivariateSpline = field(init=False, repr=False)

    def __post_init__(self):
        self.xs = np.asarray(self.xs, dtype=float)
        self.ys = np.asarray(self.ys, dtype=float)
        self.zs = np.asarray(self.zs, dtype=float)
        if self.zs.shape != (len(self.xs), len(self.ys)):
            raise ValueError("Terrain grid heights do not match the grid coordinates")
        if len(self.xs) < 2 or len(self.ys) < 2:
            raise ValueError("Terrain grid needs at least 2 points in each direction")
        # degree drops when the grid is too coarse for a cubic
        kx = min(3, len(self.xs) - 1)
        ky = min(3, len(self.ys) - 1)
        self.spline = RectBivariateSpline(self.xs, self.ys, self.zs, kx=kx, ky=ky, s=0)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return float(self.xs[0]), float(self.ys[0]), float(self.xs[-1]), float(self.ys[-1])

    @property
    def z_range(self) -> Tuple[float, float]:
        return float(self.zs.min()), float(self.zs.max())

    @property
    def footprint(self):
        return box(*self.bounds)

    def contains(self, x: float, y: float, tol: float = 1e-9) -> bool:
        minx, miny, maxx, maxy = self.bounds
        return minx - tol <= x <= maxx + tol and miny - tol <= y <= maxy + tol

    def elevation_at(self, x: float, y: float) -> Optional[float]:
        """Height where a vertical ray at (x, y) meets the surface, None if it misses."""
        if not self.contains(x, y):
            return None
        return float(self.spline.ev(x, y))

    def elevations(self, points) -> np.ndarray:
        """Vectorised elevation_at; NaN for points outside the domain."""
        pts = np.asarray(points, dtype=float).reshape(-1, 2)
        z = np.full(len(pts), np.nan)
        if len(pts) == 0:
            return z
        minx, miny, maxx, maxy = self.bounds
        eps = 1e-9
        inside = ((pts[:, 0] >= minx - eps) & (pts[:, 0] <= maxx + eps) &
                  (pts[:, 1] >= miny - eps) & (pts[:, 1] <= maxy + eps))
        if np.any(inside):
            z[inside] = self.spline.ev(pts[inside, 0], pts[inside, 1])
        return z

    def grid(self, step: Optional[float] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Sample the surface on a regular grid, the fitted grid when step is None."""
        if step is None:
            return self.xs, self.ys, self.zs
        if step <= 0:
            raise ValueError("Grid step must be positive")
        minx, miny, maxx, maxy = self.bounds
        nx = max(2, int(math.ceil((maxx - minx) / step)) + 1)
        ny = max(2, int(math.ceil((maxy - miny) / step)) + 1)
        gx = np.linspace(minx, maxx, nx)
        gy = np.linspace(miny, maxy, ny)
        return gx, gy, self.spline(gx, gy)

    def to_mesh(self, step: Optional[float] = None) -> Mesh:
        gx, gy, gz = self.grid(step)
        return grid_mesh(gx, gy, gz)


def grid_mesh(gx: np.ndarray, gy: np.ndarray, gz: np.ndarray) -> Mesh:
    """Two counter-clockwise triangles per grid cell; vertex (i, j) has index i * ny + j."""
    nx, ny = len(gx), len(gy)
    X, Y = np.meshgrid(gx, gy, indexing='ij')
    vertices = np.column_stack([X.ravel(), Y.ravel(), np.asarray(gz).ravel()])

    i, j = np.meshgrid(np.arange(nx - 1), np.arange(ny - 1), indexing='ij')
    v00 = (i * ny + j).ravel()
    v10 = ((i + 1) * ny + j).ravel()
    v11 = ((i + 1) * ny + j + 1).ravel()
    v01 = (i * ny + j + 1).ravel()
    faces = np.vstack([
        np.column_stack([v00, v10, v11]),
        np.column_stack([v00, v11, v01]),
    ])
    return Mesh(vertices, faces)


def divisors_at_least(n: int, minimum: int = MIN_DIVISOR) -> List[int]:
    """Divisors of n that are >= minimum, largest first."""
    divisors = set()
    for i in range(1, int(math.isqrt(n)) + 1):
        if n % i == 0:
            divisors.add(i)
            divisors.add(n // i)
    return sorted((d for d in divisors if d >= minimum), reverse=True)


def grid_divisions(length_u: float, length_v: float, resolution: int = 0) -> Tuple[int, int]:
    """
    Number of grid cells along u and v.

    Both lengths are floored to whole hundreds of metres; the cell size is a shared
    divisor of the two, picked from the largest downward by `resolution`.
    """
    if resolution < 0:
        raise ValueError("Resolution must be zero or positive")
    ul = int(length_u) // 100 * 100
    vl = int(length_v) // 100 * 100
    if ul < 100 or vl < 100:
        raise ValueError(f"Terrain domain {length_u:.1f} x {length_v:.1f} m is smaller than 100 m")
    candidates = divisors_at_least(math.gcd(ul, vl))
    if not candidates:
        raise ValueError(f"No grid spacing of {MIN_DIVISOR} m or more divides {ul} x {vl} m")
    cell = candidates[min(len(candidates) - 1, resolution)]
    return ul // cell, vl // cell


def _sample_contour(contour: ContourLine, sample_length: float) -> Optional[np.ndarray]:
    coords = np.asarray(contour.coords, dtype=float).reshape(-1, 2)
    if len(coords) < 2:
        return None
    pts = divide_by_length(coords, sample_length)
    lifted = np.column_stack([pts, np.full(len(pts), contour.elevation)])
    return lifted


def _contour_extent(contours: Sequence[ContourLine]) -> Tuple[float, float, float, float, float, float]:
    xy = np.vstack([np.asarray(c.coords, dtype=float).reshape(-1, 2) for c in contours])
    z = np.array([c.elevation for c in contours], dtype=float)
    return xy[:, 0].min(), xy[:, 1].min(), z.min(), xy[:, 0].max(), xy[:, 1].max(), z.max()


def corner_anchors(samples: np.ndarray, extent) -> np.ndarray:
    """
    Points on the four vertical edges of the contour bounding box, each taking the
    height of the sample closest to its edge.
    """
    minx, miny, _minz, maxx, maxy, _maxz = extent
    corners = np.array([(minx, miny), (maxx, miny), (maxx, maxy), (minx, maxy)])
    anchors = []
    for cx, cy in corners:
        d2 = (samples[:, 0] - cx) ** 2 + (samples[:, 1] - cy) ** 2
        anchors.append((cx, cy, samples[int(np.argmin(d2)), 2]))
    return np.array(anchors)


def build_terrain_surface(
    contours: Iterable[ContourLine],
    resolution: int = 0,
    sample_length: float = SAMPLE_LENGTH,
    margin: float = DOMAIN_MARGIN,
    max_workers: int = MAX_WORKERS,
) -> TerrainSurface:
    """
    Fit a terrain surface through contour lines.

    Args:
        contours: Contour lines with elevations
        resolution: Grid coarseness index, 0 picks the coarsest spacing
        sample_length: Spacing of the sample points along each contour (m)
        margin: Outward growth of the contour bounding rectangle (m)
        max_workers: Thread pool size for sampling and ray casting

    Returns:
        TerrainSurface covering the grown bounding rectangle
    """
    contours = [c for c in contours if c is not None and len(c.coords) >= 2]
    if not contours:
        raise ValueError("No contour lines to build a terrain from")

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        sampled = list(executor.map(lambda c: _sample_contour(c, sample_length), contours))
    sampled = [s for s in sampled if s is not None and len(s) > 0]
    if not sampled or sum(len(s) for s in sampled) < 3:
        raise ValueError("Contours are too short to sample a terrain from")
    samples = np.vstack(sampled)

    extent = _contour_extent(contours)
    samples = np.vstack([samples, corner_anchors(samples, extent)])
    print(f"Sampled {len(samples)} terrain points from {len(contours)} contours")

    try:
        tri = Delaunay(samples[:, :2])
    except QhullError as e:
        raise ValueError(f"Contour samples are degenerate, cannot triangulate: {e}") from e

    minx, miny, _, maxx, maxy, _ = extent
    x0, y0, x1, y1 = minx - margin, miny - margin, maxx + margin, maxy + margin
    u, v = grid_divisions(x1 - x0, y1 - y0, resolution)
    xs = np.linspace(x0, x1, u + 1)
    ys = np.linspace(y0, y1, v + 1)
    print(f"Terrain grid: {u + 1} x {v + 1} points over {x1 - x0:.0f} x {y1 - y0:.0f} m")

    # vertical rays from below hit the Delaunay mesh at its barycentric height
    ray_cast = LinearNDInterpolator(tri, samples[:, 2])

    def _cast_row(x):
        return ray_cast(np.column_stack([np.full(len(ys), x), ys]))

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        zs = np.vstack(list(executor.map(_cast_row, xs)))

    missed = np.isnan(zs)
    if np.any(missed):
        logger.debug(f"{int(missed.sum())} grid rays missed the contour mesh, using nearest height")
        nearest = NearestNDInterpolator(samples[:, :2], samples[:, 2])
        X, Y = np.meshgrid(xs, ys, indexing='ij')
        zs[missed] = nearest(np.column_stack([X[missed], Y[missed]]))

    return TerrainSurface(xs, ys, zs)
