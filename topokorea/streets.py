"""
Street draping

Unions NGII street polygons into road regions and projects their outlines onto
the terrain surface.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Sequence

import numpy as np
from shapely.geometry import LineString, Polygon
from shapely.ops import linemerge

from topokorea.geometry import densify_ring, union_regions
from topokorea.terrain_surface import TerrainSurface

logger = logging.getLogger(__name__)

MIN_STREET_AREA = 50.0
EDGE_SAMPLE_INTERVAL = 2.0


@dataclass
class StreetResult:
    flat_regions: List[Polygon] = field(default_factory=list)
    draped_curves: List[np.ndarray] = field(default_factory=list)


def _line_pieces(geom) -> List[LineString]:
    if geom.is_empty:
        return []
    if geom.geom_type == 'LineString':
        return [geom]
    if geom.geom_type == 'MultiLineString':
        merged = linemerge(geom)
        return list(merged.geoms) if merged.geom_type == 'MultiLineString' else [merged]
    if geom.geom_type == 'GeometryCollection':
        return [g for g in geom.geoms if g.geom_type == 'LineString']
    return []


def drape_line(surface: TerrainSurface, line: LineString,
               sample_interval: float = EDGE_SAMPLE_INTERVAL) -> List[np.ndarray]:
    """
    Project a 2D line vertically onto the terrain.

    Parts outside the surface are cut away; every remaining piece is densified and
    lifted to the surface height.
    """
    draped = []
    for piece in _line_pieces(line.intersection(surface.footprint)):
        xy = densify_ring(np.asarray(piece.coords)[:, :2], sample_interval)
        if len(xy) < 2:
            continue
        z = surface.elevations(xy)
        keep = ~np.isnan(z)
        if keep.sum() < 2:
            continue
        draped.append(np.column_stack([xy[keep], z[keep]]))
    return draped


def drape_region(surface: TerrainSurface, region: Polygon,
                 sample_interval: float = EDGE_SAMPLE_INTERVAL) -> List[np.ndarray]:
    curves = []
    for ring in [region.exterior, *region.interiors]:
        curves.extend(drape_line(surface, LineString(ring.coords), sample_interval))
    return curves


def drape_streets(
    surface: TerrainSurface,
    street_polygons: Sequence[Polygon],
    min_area: float = MIN_STREET_AREA,
    sample_interval: float = EDGE_SAMPLE_INTERVAL,
    max_workers: int = 8,
) -> StreetResult:
    """
    Union street polygons and drape the large regions onto the terrain.

    Args:
        surface: Terrain surface
        street_polygons: Street area polygons
        min_area: Regions up to this area are not draped (m²)
        sample_interval: Spacing of draped outline points (m)
        max_workers: Thread pool size

    Returns:
        StreetResult with flat union regions and draped 3D outlines
    """
    regions = union_regions(street_polygons)
    draped_regions = [r for r in regions if r.area > min_area]

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        draped = list(executor.map(lambda r: drape_region(surface, r, sample_interval), draped_regions))

    result = StreetResult(
        flat_regions=regions,
        draped_curves=[curve for curves in draped for curve in curves],
    )
    print(f"Streets: {len(street_polygons)} polygons -> {len(regions)} regions, "
          f"{len(result.draped_curves)} draped outlines")
    return result
