"""
Building massing

Places NGII building footprints on the terrain and extrudes them by their floor
count. The lowest footprint corner (the one closest to the terrain) anchors the
building; the terrain relief under the footprint is added to the height so the
roof stays level on sloped ground.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from shapely.geometry import Polygon

from topokorea.geometry import (
    Mesh,
    extrude_polygon,
    orient_ccw,
    planar_cap,
    polygon_from_coords,
    ring_coords,
    wall_band,
)
from topokorea.loaders.ngii import BuildingFootprint
from topokorea.terrain_surface import TerrainSurface

logger = logging.getLogger(__name__)

FLOOR_HEIGHT = 3.5
PARAPET_OFFSET = 0.3
PARAPET_DEPTH = 1.3
RAY_START_DROP = 100.0
ROOF_TYPES = ("flat", "parapet")


@dataclass
class PlacedFootprint:
    """Footprint that landed on the terrain, before massing"""
    footprint: BuildingFootprint
    polygon: Polygon
    anchor_vertex: np.ndarray
    anchor_hit: np.ndarray
    relief: float


@dataclass
class BuildingMass:
    footprint: Polygon
    floors: float
    base_z: float
    height: float
    relief: float
    roof_type: str
    mesh: Mesh


def discontinuity_points(coords: Sequence[Sequence[float]]) -> np.ndarray:
    """Corner points of a polyline; the closing duplicate of a closed ring is dropped."""
    pts = np.array([(c[0], c[1], c[2] if len(c) > 2 else 0.0) for c in coords], dtype=float)
    if len(pts) > 1 and np.allclose(pts[0], pts[-1]):
        pts = pts[:-1]
    return pts


def shoot_up(surface: TerrainSurface, point: np.ndarray, drop: float = RAY_START_DROP) -> Optional[np.ndarray]:
    """Intersection of an upward ray starting `drop` below point with the terrain."""
    z_start = point[2] - drop
    z = surface.elevation_at(point[0], point[1])
    if z is None or z < z_start:
        return None
    return np.array([point[0], point[1], z])


def place_footprint(
    surface: TerrainSurface,
    footprint: BuildingFootprint,
    remove_under_area: float = 0.0,
) -> Optional[PlacedFootprint]:
    """Ray-shoot the footprint corners onto the terrain and pick the anchor corner."""
    polygon = polygon_from_coords(footprint.coords)
    if polygon is None:
        logger.debug("Skipping degenerate building footprint")
        return None
    if polygon.area < remove_under_area:
        return None

    corners = discontinuity_points(footprint.coords)
    hits = [shoot_up(surface, corner) for corner in corners]
    if any(hit is None for hit in hits):
        logger.debug("Skipping building footprint that leaves the terrain")
        return None

    hits = np.array(hits)
    dists = np.linalg.norm(hits - corners, axis=1)
    anchor = int(np.argmin(dists))
    return PlacedFootprint(
        footprint=footprint,
        polygon=polygon,
        anchor_vertex=corners[anchor],
        anchor_hit=hits[anchor],
        relief=float(dists.max() - dists.min()),
    )


def parapet_mass(polygon: Polygon, base_z: float, height: float,
                 offset: float = PARAPET_OFFSET, depth: float = PARAPET_DEPTH) -> Optional[Mesh]:
    """
    Closed mass with a recessed roof behind a parapet.

    The outline is walled up to the top, the roof edge is a band between the
    outline and its inward offset, and the roof itself sits `depth` below the top.
    """
    polygon = orient_ccw(polygon)
    inner = polygon.buffer(-offset, join_style=2)
    if inner.is_empty or inner.geom_type != 'Polygon':
        return None
    inner = orient_ccw(inner)
    top_z = base_z + height
    roof_z = top_z - depth

    parts = [planar_cap(polygon, base_z, facing_up=False)]
    for ring in [polygon.exterior, *polygon.interiors]:
        parts.append(wall_band(ring_coords(ring), base_z, top_z))

    coping = Polygon(polygon.exterior.coords, [inner.exterior.coords])
    parts.append(planar_cap(orient_ccw(coping), top_z, facing_up=True))

    # parapet faces look into the roof recess
    inner_ring = ring_coords(inner.exterior)[::-1]
    parts.append(wall_band(inner_ring, roof_z, top_z))
    parts.append(planar_cap(inner, roof_z, facing_up=True))
    return Mesh.merge(parts)


def mass_building(placed: PlacedFootprint, roof_type: str = "flat") -> Optional[BuildingMass]:
    """Move the footprint onto its anchor and extrude it to its full height."""
    dz = float(placed.anchor_hit[2] - placed.anchor_vertex[2])
    base_z = float(placed.anchor_vertex[2]) + dz
    height = placed.relief + FLOOR_HEIGHT * placed.footprint.floors
    if height <= 0:
        logger.debug("Skipping building with non-positive height")
        return None

    polygon = orient_ccw(placed.polygon)
    if roof_type == "flat":
        mesh = extrude_polygon(polygon, base_z, height)
    elif roof_type == "parapet":
        mesh = parapet_mass(polygon, base_z, height)
        if mesh is None:
            logger.debug("Skipping building too small for a parapet")
            return None
    else:
        raise ValueError(f"Unknown roof type: {roof_type}")

    return BuildingMass(
        footprint=polygon,
        floors=placed.footprint.floors,
        base_z=base_z,
        height=height,
        relief=placed.relief,
        roof_type=roof_type,
        mesh=mesh,
    )


def build_buildings(
    surface: TerrainSurface,
    footprints: Sequence[BuildingFootprint],
    roof_type: str = "flat",
    remove_under_area: float = 0.0,
    max_workers: int = 8,
) -> List[BuildingMass]:
    """
    Mass every footprint that lies on the terrain.

    Args:
        surface: Terrain surface
        footprints: Building footprints with floor counts
        roof_type: "flat" or "parapet"
        remove_under_area: Footprints smaller than this are skipped (m²)
        max_workers: Thread pool size

    Returns:
        BuildingMass list in footprint order
    """
    if roof_type not in ROOF_TYPES:
        raise ValueError(f"Unknown roof type: {roof_type} (expected one of {', '.join(ROOF_TYPES)})")

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        placed = list(executor.map(lambda f: place_footprint(surface, f, remove_under_area), footprints))
        placed = [p for p in placed if p is not None]
        masses = list(executor.map(lambda p: mass_building(p, roof_type), placed))

    buildings = [m for m in masses if m is not None]
    print(f"Massed {len(buildings)} of {len(footprints)} buildings ({roof_type} roofs)")
    return buildings
