"""
Unit tests for the shared geometry helpers
"""
import numpy as np
import pytest
from shapely.geometry import Polygon, box

from topokorea.geometry import (
    Mesh,
    densify_ring,
    divide_by_length,
    extrude_polygon,
    orient_ccw,
    polygon_from_coords,
    ruled_band,
    triangulate_polygon,
    union_regions,
)

from shapes import boundary_edges, signed_volume


class TestMesh:
    """Test the mesh container"""

    def test_merge_offsets_faces(self):
        a = Mesh([[0, 0, 0], [1, 0, 0], [0, 1, 0]], [[0, 1, 2]])
        b = Mesh([[0, 0, 1], [1, 0, 1], [0, 1, 1]], [[0, 1, 2]])
        merged = Mesh.merge([a, None, Mesh(), b])
        assert merged.vertices.shape == (6, 3)
        assert merged.faces.tolist() == [[0, 1, 2], [3, 4, 5]]

    def test_translate(self):
        moved = Mesh([[0, 0, 0], [1, 0, 0], [0, 1, 0]], [[0, 1, 2]]).translate(5.0)
        assert moved.vertices[:, 2].tolist() == [5.0, 5.0, 5.0]

    def test_empty(self):
        assert Mesh().is_empty


class TestPolylineSampling:
    """Test polyline division and densification"""

    def test_divide_excludes_start(self):
        pts = divide_by_length([(0, 0), (35, 0)], 10)
        assert pts[:, 0].tolist() == pytest.approx([10, 20, 30])

    def test_divide_include_start(self):
        pts = divide_by_length([(0, 0), (35, 0)], 10, include_start=True)
        assert pts[:, 0].tolist() == pytest.approx([0, 10, 20, 30])

    def test_divide_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            divide_by_length([(0, 0), (1, 0)], 0)

    def test_densify(self):
        pts = densify_ring([(0, 0), (10, 0)], 3)
        assert len(pts) == 5
        assert np.max(np.diff(pts[:, 0])) <= 3 + 1e-9


class TestPolygons:
    """Test polygon helpers"""

    def test_orient_ccw(self):
        cw = Polygon([(0, 0), (0, 1), (1, 1), (1, 0)])
        assert orient_ccw(cw).exterior.is_ccw

    def test_union_merges_overlaps(self):
        regions = union_regions([box(0, 0, 2, 2), box(1, 0, 3, 2), box(10, 10, 11, 11)])
        assert sorted(r.area for r in regions) == pytest.approx([1.0, 6.0])

    def test_union_repairs_bowtie(self):
        bowtie = Polygon([(0, 0), (2, 2), (2, 0), (0, 2)])
        regions = union_regions([bowtie])
        assert regions
        assert all(r.is_valid for r in regions)

    def test_polygon_from_coords_degenerate(self):
        assert polygon_from_coords([(0, 0), (1, 1)]) is None
        assert polygon_from_coords([(0, 0), (1, 1), (2, 2)]) is None

    def test_triangulate_with_hole(self):
        ring = box(0, 0, 10, 10)
        poly = orient_ccw(Polygon(ring.exterior.coords, [box(4, 4, 6, 6).exterior.coords]))
        vertices, triangles = triangulate_polygon(poly)
        a, b, c = (vertices[triangles[:, k]] for k in range(3))
        areas = ((b[:, 0] - a[:, 0]) * (c[:, 1] - a[:, 1]) - (b[:, 1] - a[:, 1]) * (c[:, 0] - a[:, 0])) / 2
        assert np.all(areas > 0)
        assert areas.sum() == pytest.approx(96.0)


class TestSolids:
    """Test closed solids"""

    def test_extrude_is_closed_prism(self):
        mesh = extrude_polygon(box(0, 0, 4, 5), 10.0, 3.0)
        assert boundary_edges(mesh) == []
        assert signed_volume(mesh) == pytest.approx(60.0)
        lo, hi = mesh.bounds
        assert lo[2] == pytest.approx(10.0)
        assert hi[2] == pytest.approx(13.0)

    def test_extrude_clockwise_input(self):
        cw = Polygon([(0, 0), (0, 2), (2, 2), (2, 0)])
        assert signed_volume(extrude_polygon(cw, 0.0, 1.0)) == pytest.approx(4.0)

    def test_ruled_band_needs_matching_rings(self):
        with pytest.raises(ValueError):
            ruled_band(np.zeros((3, 3)), np.zeros((4, 3)))
