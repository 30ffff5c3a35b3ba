"""
River and lake surfaces

Unions NGII water polygons and cuts the matching patch out of the terrain
surface for each water region.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
from shapely.geometry import MultiPoint, Point, Polygon
from shapely.geometry.polygon import orient
from shapely.ops import triangulate
from shapely.prepared import prep

from topokorea.geometry import Mesh, densify_ring, flatten_polygons, orient_ccw, ring_coords, union_regions
from topokorea.terrain_surface import TerrainSurface

logger = logging.getLogger(__name__)

EDGE_SAMPLE_INTERVAL = 2.0
INTERIOR_SPACING = 5.0


@dataclass
class WaterResult:
    regions: List[Polygon] = field(default_factory=list)
    oriented_regions: List[Polygon] = field(default_factory=list)
    surfaces: List[Mesh] = field(default_factory=list)


def _patch_points(poly: Polygon, spacing: float) -> np.ndarray:
    rings = [poly.exterior, *poly.interiors]
    edge = [densify_ring(ring_coords(r, closed=True), min(spacing, EDGE_SAMPLE_INTERVAL))[:-1] for r in rings]

    minx, miny, maxx, maxy = poly.bounds
    gx = np.arange(minx + spacing / 2, maxx, spacing)
    gy = np.arange(miny + spacing / 2, maxy, spacing)
    prepared = prep(poly)
    interior = [(x, y) for x in gx for y in gy if prepared.contains(Point(x, y))]

    points = np.vstack(edge + [np.array(interior).reshape(-1, 2)])
    return np.unique(np.round(points, 6), axis=0)


def terrain_patch(surface: TerrainSurface, region: Polygon, spacing: float = INTERIOR_SPACING) -> Optional[Mesh]:
    """Triangulated piece of the terrain surface lying inside a region."""
    clipped = region.intersection(surface.footprint)
    pieces = flatten_polygons(clipped)
    if not pieces:
        return None

    vertices, faces = [], []
    offset = 0
    for poly in pieces:
        points = _patch_points(poly, spacing)
        if len(points) < 3:
            continue
        lookup = {(float(p[0]), float(p[1])): i for i, p in enumerate(points)}
        prepared = prep(poly)
        for tri in triangulate(MultiPoint([tuple(p) for p in points])):
            if not prepared.contains(tri.centroid):
                continue
            coords = list(orient(tri, sign=1.0).exterior.coords)[:-1]
            try:
                faces.append([lookup[(x, y)] + offset for x, y in coords])
            except KeyError:
                continue
        z = surface.elevations(points)
        vertices.append(np.column_stack([points, z]))
        offset += len(points)

    if not faces:
        return None
    return Mesh(np.vstack(vertices), faces)


def build_water(
    surface: TerrainSurface,
    water_polygons: Sequence[Polygon],
    sample_spacing: float = INTERIOR_SPACING,
    max_workers: int = 8,
) -> WaterResult:
    """
    Union water polygons and split the terrain surface along them.

    Args:
        surface: Terrain surface
        water_polygons: River and lake outlines
        sample_spacing: Interior grid spacing of the water patches (m)
        max_workers: Thread pool size

    Returns:
        WaterResult with union regions, their oriented copies and terrain patches
    """
    regions = union_regions(water_polygons)
    oriented = [orient_ccw(r) for r in regions]

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        patches = list(executor.map(lambda r: terrain_patch(surface, r, sample_spacing), oriented))

    result = WaterResult(
        regions=regions,
        oriented_regions=oriented,
        surfaces=[p for p in patches if p is not None],
    )
    print(f"Water: {len(water_polygons)} polygons -> {len(regions)} regions, "
          f"{len(result.surfaces)} terrain patches")
    return result
