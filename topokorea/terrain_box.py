"""
Closed terrain solid

Turns a terrain surface into a watertight block: the surface on top, vertical
skirts from the surface boundary down to a flat base, and a bottom cap.
"""

import logging
from typing import List, Optional

import numpy as np

from topokorea.geometry import Mesh
from topokorea.terrain_surface import TerrainSurface, grid_mesh

logger = logging.getLogger(__name__)

BASE_CLEARANCE = 3.0
BASE_DROP = 100.0


def boundary_indices(nx: int, ny: int) -> List[int]:
    """Grid vertex indices around the boundary, counter-clockwise, no repeats."""
    ring = [i * ny for i in range(nx)]                              # y = min
    ring += [(nx - 1) * ny + j for j in range(1, ny)]               # x = max
    ring += [i * ny + (ny - 1) for i in range(nx - 2, -1, -1)]      # y = max
    ring += [j for j in range(ny - 2, 0, -1)]                       # x = min
    return ring


def build_terrain_box(
    surface: TerrainSurface,
    base_drop: float = BASE_DROP,
    clearance: float = BASE_CLEARANCE,
    step: Optional[float] = None,
) -> Mesh:
    """
    Closed mesh of the terrain surface standing on a flat base.

    The base plane lies `clearance + base_drop` below the lowest terrain height.
    """
    gx, gy, gz = surface.grid(step)
    top = grid_mesh(gx, gy, gz)
    nx, ny = len(gx), len(gy)
    base_z = float(np.min(gz)) - clearance - base_drop

    ring = boundary_indices(nx, ny)
    n_top = len(top.vertices)
    base_vertices = top.vertices[ring].copy()
    base_vertices[:, 2] = base_z
    center = np.array([[gx.mean(), gy.mean(), base_z]])
    center_index = n_top + len(ring)

    faces = [top.faces]
    n = len(ring)
    skirt = []
    bottom = []
    for k in range(n):
        t1, t2 = ring[k], ring[(k + 1) % n]
        b1, b2 = n_top + k, n_top + (k + 1) % n
        skirt.append((b1, b2, t2))
        skirt.append((b1, t2, t1))
        # fan from the base center, facing down
        bottom.append((center_index, b2, b1))
    faces.append(np.array(skirt))
    faces.append(np.array(bottom))

    mesh = Mesh(np.vstack([top.vertices, base_vertices, center]), np.vstack(faces))
    print(f"Terrain box: {len(mesh.faces)} faces, base at {base_z:.1f} m")
    return mesh
