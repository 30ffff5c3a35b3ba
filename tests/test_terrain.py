"""
Tests for terrain surface fitting, the terrain box and contour extraction
"""
import numpy as np
import pytest

from topokorea.contours import contour_levels, extract_contours
from topokorea.loaders.ngii import ContourLine
from topokorea.terrain_box import boundary_indices, build_terrain_box
from topokorea.terrain_surface import (
    TerrainSurface,
    build_terrain_surface,
    divisors_at_least,
    grid_divisions,
)

from shapes import boundary_edges, signed_volume


@pytest.fixture
def hill_contours(hill_rings):
    return [ContourLine(coords=ring, elevation=float(z)) for ring, z in hill_rings]


@pytest.fixture
def hill_surface(hill_contours):
    return build_terrain_surface(hill_contours, resolution=8)


class TestGridDivisions:
    """Test the gcd/divisor grid rule"""

    def test_divisors(self):
        assert divisors_at_least(300) == [300, 150, 100, 75, 60, 50, 30, 25, 20, 15, 12, 10]

    def test_coarsest(self):
        assert grid_divisions(300, 300, 0) == (1, 1)

    def test_resolution_index(self):
        assert grid_divisions(300, 300, 8) == (15, 15)

    def test_lengths_are_floored_to_hundreds(self):
        assert grid_divisions(350.7, 420.2, 0) == (3, 4)

    def test_resolution_clamped_to_finest(self):
        assert grid_divisions(300, 400, 99) == (30, 40)

    def test_domain_too_small(self):
        with pytest.raises(ValueError):
            grid_divisions(50, 300, 0)

    def test_negative_resolution(self):
        with pytest.raises(ValueError):
            grid_divisions(300, 300, -1)


class TestTerrainSurface:
    """Test the fitted surface"""

    def test_plane_is_reproduced(self, plane_surface):
        assert plane_surface.elevation_at(55.0, 20.0) == pytest.approx(5.5, abs=1e-6)

    def test_ray_outside_misses(self, plane_surface):
        assert plane_surface.elevation_at(150.0, 20.0) is None
        z = plane_surface.elevations([[10.0, 10.0], [-5.0, 10.0]])
        assert z[0] == pytest.approx(1.0, abs=1e-6)
        assert np.isnan(z[1])

    def test_grid_shape_mismatch(self):
        with pytest.raises(ValueError):
            TerrainSurface(np.arange(3), np.arange(4), np.zeros((4, 3)))

    def test_too_few_points(self):
        with pytest.raises(ValueError):
            TerrainSurface(np.arange(1), np.arange(4), np.zeros((1, 4)))

    def test_resample_grid(self, plane_surface):
        gx, gy, gz = plane_surface.grid(25.0)
        assert len(gx) == 5 and len(gy) == 5
        assert gz[4, 0] == pytest.approx(10.0, abs=1e-6)

    def test_to_mesh_faces_up(self, plane_surface):
        mesh = plane_surface.to_mesh()
        assert len(mesh.vertices) == 121
        assert len(mesh.faces) == 200
        v = mesh.vertices[mesh.faces]
        normals = np.cross(v[:, 1] - v[:, 0], v[:, 2] - v[:, 0])
        assert np.all(normals[:, 2] > 0)


class TestBuildTerrainSurface:
    """Test fitting from contour lines"""

    def test_domain_grows_by_margin(self, hill_surface):
        assert hill_surface.bounds == pytest.approx((-30.0, -30.0, 270.0, 270.0))
        assert hill_surface.zs.shape == (16, 16)

    def test_heights_follow_contours(self, hill_surface):
        assert hill_surface.elevation_at(120.0, 120.0) == pytest.approx(30.0, abs=5.0)
        assert hill_surface.elevation_at(0.0, 120.0) == pytest.approx(10.0, abs=3.0)

    def test_margin_uses_nearest_height(self, hill_surface):
        assert hill_surface.elevation_at(-30.0, -30.0) == pytest.approx(10.0, abs=3.0)

    def test_no_contours(self):
        with pytest.raises(ValueError):
            build_terrain_surface([])

    def test_too_few_samples(self):
        with pytest.raises(ValueError):
            build_terrain_surface([ContourLine(coords=[(0, 0), (5, 0)], elevation=10.0)])

    def test_small_domain(self):
        contour = ContourLine(coords=[(0, 0), (20, 0), (20, 20), (0, 20), (0, 0)], elevation=5.0)
        with pytest.raises(ValueError):
            build_terrain_surface([contour], sample_length=2.0)


class TestTerrainBox:
    """Test the closed terrain solid"""

    def test_boundary_ring(self):
        assert boundary_indices(3, 3) == [0, 3, 6, 7, 8, 5, 2, 1]

    def test_box_is_closed(self, plane_surface):
        mesh = build_terrain_box(plane_surface, base_drop=10.0, clearance=0.0)
        assert boundary_edges(mesh) == []
        # prism under a plane sloping 0..10 m, base at -10 m
        assert signed_volume(mesh) == pytest.approx(100 * 100 * 15.0, rel=1e-6)

    def test_base_height(self, plane_surface):
        mesh = build_terrain_box(plane_surface)
        lo, _hi = mesh.bounds
        assert lo[2] == pytest.approx(-103.0)


class TestContours:
    """Test contour extraction"""

    def test_levels(self):
        assert contour_levels(10, 30, 5).tolist() == [7, 12, 17, 22, 27]

    @pytest.mark.parametrize("z_interval", [0, -5, 2.5])
    def test_invalid_interval(self, plane_surface, z_interval):
        with pytest.raises(ValueError):
            extract_contours(plane_surface, z_interval=z_interval)

    def test_all_contours_close(self, hill_surface):
        result = extract_contours(hill_surface, z_interval=5)
        assert result.curves
        assert all(curve.closed for curve in result.curves)
        assert {curve.level for curve in result.curves} <= set(result.levels)

    def test_curves_stay_on_surface_footprint(self, hill_surface):
        result = extract_contours(hill_surface, z_interval=5)
        minx, miny, maxx, maxy = hill_surface.bounds
        for curve in result.curves:
            assert curve.coords[:, 0].min() >= minx and curve.coords[:, 0].max() <= maxx
            assert curve.coords[:, 1].min() >= miny and curve.coords[:, 1].max() <= maxy
            assert np.all(curve.coords[:, 2] == curve.level)

    def test_blocks(self, hill_surface):
        result = extract_contours(hill_surface, z_interval=5)
        assert result.blocks
        assert all(block.area >= 300.0 for block in result.blocks)
        assert all(block.height == 5 for block in result.blocks)
        # lowest level encloses the whole domain
        assert result.blocks[0].level == result.levels[0]
        assert result.blocks[0].area == pytest.approx(300.0 * 300.0, rel=0.01)

    def test_min_block_area(self, hill_surface):
        result = extract_contours(hill_surface, z_interval=5, min_block_area=1e9)
        assert result.blocks == []
