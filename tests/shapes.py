"""
Test shapes and mesh assertions shared by the geometry tests
"""
from collections import Counter

import numpy as np


def square(cx, cy, half):
    """Clockwise closed square ring (shapefile outer ring order)"""
    return [
        (cx - half, cy - half),
        (cx - half, cy + half),
        (cx + half, cy + half),
        (cx + half, cy - half),
        (cx - half, cy - half),
    ]


def boundary_edges(mesh):
    """Directed edges (by rounded position) without a reversed partner."""
    edges = Counter()
    for tri in mesh.triangles():
        pts = [tuple(round(c, 6) for c in p) for p in tri]
        for a, b in zip(pts, pts[1:] + pts[:1]):
            edges[(a, b)] += 1
    return [e for e, n in edges.items() if edges.get((e[1], e[0]), 0) != n]


def signed_volume(mesh) -> float:
    v = mesh.vertices[mesh.faces]
    return float(np.einsum('ij,ij->i', v[:, 0], np.cross(v[:, 1], v[:, 2])).sum() / 6.0)
