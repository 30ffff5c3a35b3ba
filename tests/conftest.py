"""
Pytest configuration and shared fixtures
"""
import os
import tempfile
from pathlib import Path

import numpy as np
import pytest
import shapefile
from fastapi.testclient import TestClient
from pyproj import CRS

# Set test environment variables before importing app
os.environ["ENABLE_DOCS"] = "true"
os.environ["ALLOWED_ORIGINS"] = "*"
os.environ["ALLOWED_HOSTS"] = "*"
os.environ["TMPDIR"] = str(Path(tempfile.gettempdir()) / "test_ifc_files")

os.makedirs(os.environ["TMPDIR"], exist_ok=True)

from topokorea.rest_api import app, jobs, limiter
from topokorea.terrain_surface import TerrainSurface

from shapes import square


def write_contours(path, rings_with_heights):
    w = shapefile.Writer(str(path), shapeType=shapefile.POLYLINE, encoding="cp949")
    w.field("UFID", "C", size=34)
    w.field("HEIGHT", "N", size=10, decimal=2)
    for i, (ring, height) in enumerate(rings_with_heights):
        w.line([ring])
        w.record(f"F{i:04d}", height)
    w.close()


def write_buildings(path, footprints):
    w = shapefile.Writer(str(path), shapeType=shapefile.POLYGON, encoding="cp949")
    w.field("UFID", "C", size=34)
    w.field("NAME", "C", size=50)
    w.field("KIND", "C", size=10)
    w.field("USE", "C", size=10)
    w.field("MAIN", "C", size=10)
    w.field("FLOORS", "N", size=5)
    for i, (ring, floors) in enumerate(footprints):
        w.poly([ring])
        w.record(f"B{i:04d}", "", "", "", "", floors)
    w.close()


def write_polygons(path, rings):
    w = shapefile.Writer(str(path), shapeType=shapefile.POLYGON, encoding="cp949")
    w.field("UFID", "C", size=34)
    for i, ring in enumerate(rings):
        w.poly([ring])
        w.record(f"P{i:04d}")
    w.close()


def write_points(path, points):
    w = shapefile.Writer(str(path), shapeType=shapefile.POINT, encoding="cp949")
    w.field("UFID", "C", size=34)
    w.field("NAME", "C", size=50)
    for i, (x, y, name) in enumerate(points):
        w.point(x, y)
        w.record(f"C{i:04d}", name)
    w.close()


@pytest.fixture
def client():
    """FastAPI test client"""
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_api_state():
    """Clear the rate limiter and job store between tests"""
    limiter.reset()
    jobs.clear()
    yield
    jobs.clear()


@pytest.fixture
def hill_rings():
    """Three nested contour squares around (120, 120) at 10, 20 and 30 m"""
    return [(square(120, 120, 120), 10), (square(120, 120, 80), 20), (square(120, 120, 40), 30)]


@pytest.fixture
def ngii_folder(tmp_path, hill_rings):
    """NGII map sheet folder with one file per supported layer"""
    folder = tmp_path / "37612001"
    folder.mkdir()
    write_contours(folder / "N3L_F0010000", hill_rings + [(square(120, 120, 10), -1)])
    write_buildings(folder / "N3A_B0010000", [
        (square(120, 120, 5), 3),
        (square(60, 60, 4), None),
    ])
    write_polygons(folder / "N3A_A0010000", [square(30, 120, 6), square(40, 120, 6)])
    write_polygons(folder / "N3A_E0010001", [square(200, 40, 15)])
    write_points(folder / "N3P_C0380000", [(120, 60, "중앙공원"), (100, 100, "주차장")])
    (folder / "N3L_F0010000.prj").write_text(CRS.from_epsg(5186).to_wkt())
    return folder


@pytest.fixture
def plane_surface():
    """Surface z = 0.1 x over 0..100 x 0..100"""
    xs = np.linspace(0, 100, 11)
    ys = np.linspace(0, 100, 11)
    zs = np.array([[0.1 * x for _ in ys] for x in xs])
    return TerrainSurface(xs, ys, zs)


@pytest.fixture
def georef_surface():
    """Sloped surface at projected coordinates, z from 50 m"""
    xs = np.linspace(1000, 1200, 11)
    ys = np.linspace(2000, 2200, 11)
    zs = np.array([[50 + 0.05 * (x - 1000) for _ in ys] for x in xs])
    return TerrainSurface(xs, ys, zs)


@pytest.fixture
def valid_request_payload():
    return {
        "datasets": ["37612001"],
        "resolution": 0,
        "z_interval": 10,
        "roof_type": "flat",
        "output_name": "test.ifc"
    }


@pytest.fixture
def mock_workflow_success():
    """Stand-in for run_topo_workflow that writes a dummy IFC file"""
    def _mock_run(*args, **kwargs):
        output_path = kwargs["output_path"]
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_bytes(b"Dummy IFC content")
        return output_path
    return _mock_run
