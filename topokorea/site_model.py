#!/usr/bin/env python3
"""
Topography Model Workflow

Main workflow orchestrator for generating IFC topography models with terrain,
contours, buildings, streets, water and parks from NGII shapefiles.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from topokorea.buildings import build_buildings
from topokorea.contours import extract_contours
from topokorea.ifc_builder import create_topo_ifc
from topokorea.loaders.ngii import DEFAULT_ENCODING, load_ngii_folders
from topokorea.streets import drape_streets
from topokorea.terrain_box import build_terrain_box
from topokorea.terrain_surface import DOMAIN_MARGIN, SAMPLE_LENGTH, build_terrain_surface
from topokorea.water import build_water

logger = logging.getLogger(__name__)


@dataclass
class TopoModel:
    """Summary of a generated topography model"""
    output_path: Optional[str]
    crs_epsg: int
    grid_shape: Tuple[int, int]
    contour_lines: int = 0
    contour_curves: int = 0
    contour_blocks: int = 0
    buildings: int = 0
    street_regions: int = 0
    draped_streets: int = 0
    water_regions: int = 0
    water_surfaces: int = 0
    parks: int = 0
    offsets: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    model: object = None


def run_topo_workflow(
    shp_folders: List[str],
    resolution: int = 0,
    z_interval: int = 10,
    roof_type: str = "flat",
    remove_under_area: float = 0.0,
    sample_length: float = SAMPLE_LENGTH,
    margin: float = DOMAIN_MARGIN,
    include_terrain_box: bool = True,
    include_contours: bool = True,
    include_buildings: bool = True,
    include_streets: bool = True,
    include_water: bool = True,
    include_parks: bool = True,
    encoding: str = DEFAULT_ENCODING,
    output_path: str = "topography.ifc",
    return_model: bool = False,
) -> TopoModel:
    """
    Run the topography generation workflow.

    Args:
        shp_folders: Folders holding NGII shapefiles
        resolution: Terrain grid coarseness index, 0 is coarsest
        z_interval: Contour interval (m)
        roof_type: "flat" or "parapet"
        remove_under_area: Skip building footprints smaller than this (m²)
        sample_length: Contour sampling interval (m)
        margin: Terrain margin around the contours (m)
        include_terrain_box: Include the closed terrain solid
        include_contours: Include contour curves and blocks
        include_buildings: Include building masses
        include_streets: Include draped streets
        include_water: Include water surfaces
        include_parks: Include park markers
        encoding: DBF text encoding
        output_path: Output IFC file path
        return_model: If True, keep the IFC model on the result instead of writing it

    Returns:
        TopoModel summary
    """
    print(f"\nLoading NGII shapefiles from {len(shp_folders)} folder(s)...")
    dataset = load_ngii_folders(shp_folders, encoding=encoding)
    if not dataset.contours:
        raise ValueError("No contour lines (F0010000) found in the given folders")

    print("\nFitting terrain surface...")
    surface = build_terrain_surface(dataset.contours, resolution=resolution,
                                    sample_length=sample_length, margin=margin)
    summary = TopoModel(
        output_path=None if return_model else output_path,
        crs_epsg=dataset.crs_epsg,
        grid_shape=surface.zs.shape,
        contour_lines=len(dataset.contours),
    )

    terrain_box = None
    if include_terrain_box:
        print("\nBuilding terrain box...")
        try:
            terrain_box = build_terrain_box(surface)
        except Exception:
            logger.exception("Error building terrain box")

    contours = None
    if include_contours:
        print(f"\nExtracting contours every {z_interval} m...")
        try:
            contours = extract_contours(surface, z_interval=z_interval)
            summary.contour_curves = len(contours.curves)
            summary.contour_blocks = len(contours.blocks)
        except ValueError:
            raise
        except Exception:
            logger.exception("Error extracting contours")

    buildings = []
    if include_buildings and dataset.buildings:
        print(f"\nMassing {len(dataset.buildings)} buildings...")
        try:
            buildings = build_buildings(surface, dataset.buildings, roof_type=roof_type,
                                        remove_under_area=remove_under_area)
            summary.buildings = len(buildings)
        except ValueError:
            raise
        except Exception:
            logger.exception("Error massing buildings")

    streets = None
    if include_streets and dataset.streets:
        print(f"\nDraping {len(dataset.streets)} street polygons...")
        try:
            streets = drape_streets(surface, dataset.streets)
            summary.street_regions = len(streets.flat_regions)
            summary.draped_streets = len(streets.draped_curves)
        except Exception:
            logger.exception("Error draping streets")

    water = None
    if include_water and dataset.water:
        print(f"\nCutting {len(dataset.water)} water polygons...")
        try:
            water = build_water(surface, dataset.water)
            summary.water_regions = len(water.regions)
            summary.water_surfaces = len(water.surfaces)
        except Exception:
            logger.exception("Error building water surfaces")

    parks = []
    if include_parks:
        parks = [p for p in dataset.parks if surface.contains(p.x, p.y)]
        summary.parks = len(parks)
        print(f"\nParks on terrain: {len(parks)} of {len(dataset.parks)}")

    print("\nWriting IFC model...")
    result = create_topo_ifc(
        output_path,
        surface=surface,
        terrain_box=terrain_box,
        contours=contours,
        buildings=buildings,
        streets=streets,
        water=water,
        parks=parks,
        crs_epsg=dataset.crs_epsg,
        return_model=return_model,
    )
    if return_model:
        summary.model, *offsets = result
        summary.offsets = tuple(offsets)
    else:
        summary.offsets = tuple(result)
    return summary
