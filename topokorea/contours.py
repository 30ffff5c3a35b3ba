"""
Contour extraction

Slices a terrain surface at a fixed height interval and turns every large closed
contour into a stepped block, the way a layered cardboard site model is built.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

import contourpy
import numpy as np

from topokorea.geometry import Mesh, extrude_polygon, polygon_from_coords
from topokorea.terrain_surface import TerrainSurface

logger = logging.getLogger(__name__)

TARGET_EDGE_LENGTH = 10.0
BASE_CLEARANCE = 3.0
MIN_BLOCK_AREA = 300.0
PAD_OFFSET = 1e-3


@dataclass
class ContourCurve:
    level: float
    coords: np.ndarray  # (N, 3)
    closed: bool


@dataclass
class ContourBlock:
    level: float
    height: float
    area: float
    mesh: Mesh


@dataclass
class ContourResult:
    levels: List[float] = field(default_factory=list)
    curves: List[ContourCurve] = field(default_factory=list)
    blocks: List[ContourBlock] = field(default_factory=list)


def contour_levels(min_z: float, max_z: float, z_interval: float) -> np.ndarray:
    start = min_z - BASE_CLEARANCE
    return np.arange(start, max_z + 1e-9, z_interval)


def _padded_grid(surface: TerrainSurface, step: float, floor_z: float):
    """
    Surface grid wrapped in a one-cell border below every contour level, so the
    height field behaves like a closed box and every contour closes.
    """
    gx, gy, gz = surface.grid(step)
    px = np.concatenate([[gx[0] - PAD_OFFSET], gx, [gx[-1] + PAD_OFFSET]])
    py = np.concatenate([[gy[0] - PAD_OFFSET], gy, [gy[-1] + PAD_OFFSET]])
    pz = np.full((len(px), len(py)), floor_z)
    pz[1:-1, 1:-1] = gz
    return px, py, pz


def _block(curve: ContourCurve, z_interval: float, min_block_area: float) -> Optional[ContourBlock]:
    if not curve.closed:
        return None
    poly = polygon_from_coords(curve.coords)
    if poly is None or poly.area < min_block_area:
        return None
    try:
        mesh = extrude_polygon(poly, curve.level, z_interval)
    except ValueError as e:
        logger.warning(f"Could not extrude contour at {curve.level:.1f}: {e}")
        return None
    return ContourBlock(level=curve.level, height=z_interval, area=poly.area, mesh=mesh)


def extract_contours(
    surface: TerrainSurface,
    z_interval: int = 10,
    target_edge_length: float = TARGET_EDGE_LENGTH,
    min_block_area: float = MIN_BLOCK_AREA,
    max_workers: int = 8,
) -> ContourResult:
    """
    Contour curves and stepped contour blocks of a terrain surface.

    Args:
        surface: Terrain surface to contour
        z_interval: Height between contour levels (m), positive integer
        target_edge_length: Resampling grid spacing (m)
        min_block_area: Closed contours smaller than this are not extruded (m²)
        max_workers: Thread pool size for block extrusion

    Returns:
        ContourResult with levels, curves and blocks
    """
    if isinstance(z_interval, bool) or int(z_interval) != z_interval or z_interval <= 0:
        raise ValueError(f"Contour interval must be a positive integer, got {z_interval}")
    z_interval = int(z_interval)

    min_z, max_z = surface.z_range
    levels = contour_levels(min_z, max_z, z_interval)
    floor_z = levels[0] - z_interval
    px, py, pz = _padded_grid(surface, target_edge_length, floor_z)
    minx, miny, maxx, maxy = surface.bounds

    generator = contourpy.contour_generator(px, py, pz.T, line_type=contourpy.LineType.Separate)

    curves = []
    for level in levels:
        for line in generator.lines(float(level)):
            if len(line) < 2:
                continue
            xy = np.column_stack([
                np.clip(line[:, 0], minx, maxx),
                np.clip(line[:, 1], miny, maxy),
            ])
            closed = len(xy) >= 4 and np.allclose(xy[0], xy[-1])
            coords = np.column_stack([xy, np.full(len(xy), float(level))])
            curves.append(ContourCurve(level=float(level), coords=coords, closed=closed))

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        blocks = list(executor.map(lambda c: _block(c, z_interval, min_block_area), curves))

    result = ContourResult(
        levels=[float(lv) for lv in levels],
        curves=curves,
        blocks=[b for b in blocks if b is not None],
    )
    print(f"Extracted {len(result.curves)} contours on {len(result.levels)} levels, "
          f"{len(result.blocks)} contour blocks")
    return result
