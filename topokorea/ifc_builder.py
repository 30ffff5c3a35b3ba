"""
IFC model builder

Creates IFC files with the terrain surface, terrain box, contour blocks,
buildings, draped streets, water surfaces and parks.
"""

import time
import logging
from typing import List, Optional, Sequence, Tuple

import ifcopenshell
import ifcopenshell.api
import numpy as np

from topokorea.geometry import Mesh

logger = logging.getLogger(__name__)


def _mesh_faces(model, mesh: Mesh, offsets: Tuple[float, float, float]):
    """One IfcFace per triangle, coordinates relative to the project origin."""
    ox, oy, oz = offsets
    points = [
        model.createIfcCartesianPoint([float(x - ox), float(y - oy), float(z - oz)])
        for x, y, z in mesh.vertices
    ]
    faces = []
    for a, b, c in mesh.faces:
        loop = model.createIfcPolyLoop([points[a], points[b], points[c]])
        faces.append(model.createIfcFace([model.createIfcFaceOuterBound(loop, True)]))
    return faces


def _local_placement(model, parent_placement):
    origin = model.createIfcCartesianPoint([0., 0., 0.])
    axis = model.createIfcDirection([0., 0., 1.])
    ref_direction = model.createIfcDirection([1., 0., 0.])
    axis2_placement = model.createIfcAxis2Placement3D(origin, axis, ref_direction)
    return model.createIfcLocalPlacement(parent_placement, axis2_placement)


def _surface_representation(model, body_context, mesh: Mesh, offsets):
    shell = model.createIfcOpenShell(_mesh_faces(model, mesh, offsets))
    surface_model = model.createIfcShellBasedSurfaceModel([shell])
    return model.createIfcShapeRepresentation(body_context, "Body", "SurfaceModel", [surface_model])


def _brep_representation(model, body_context, mesh: Mesh, offsets):
    shell = model.createIfcClosedShell(_mesh_faces(model, mesh, offsets))
    brep = model.createIfcFacetedBrep(shell)
    return model.createIfcShapeRepresentation(body_context, "Body", "Brep", [brep])


def _polyline_representation(model, context, curves: Sequence[np.ndarray], offsets):
    ox, oy, oz = offsets
    items = []
    for coords in curves:
        if len(coords) < 2:
            continue
        pts = [model.createIfcCartesianPoint([float(x - ox), float(y - oy), float(z - oz)])
               for x, y, z in coords]
        items.append(model.createIfcPolyline(pts))
    if not items:
        return None
    return model.createIfcShapeRepresentation(context, "Annotation", "Curve3D", items)


def _footprint_representation(model, footprint_context, polygons, offsets):
    """Closed 2D outlines of flat regions on the plan view."""
    ox, oy, _ = offsets
    items = []
    for poly in polygons:
        for ring in [poly.exterior, *poly.interiors]:
            coords = list(ring.coords)
            if len(coords) < 4:
                continue
            pts = [model.createIfcCartesianPoint([float(c[0] - ox), float(c[1] - oy)]) for c in coords]
            items.append(model.createIfcPolyline(pts))
    if not items:
        return None
    return model.createIfcShapeRepresentation(footprint_context, "FootPrint", "Curve2D", items)


def _geographic_element(model, site, name: str, predefined_type: str, representation,
                        object_type: Optional[str] = None):
    element = ifcopenshell.api.run("root.create_entity", model,
                                   ifc_class="IfcGeographicElement",
                                   name=name)
    element.PredefinedType = predefined_type
    if object_type:
        element.ObjectType = object_type
    element.ObjectPlacement = _local_placement(model, site.ObjectPlacement)
    ifcopenshell.api.run("spatial.assign_container", model,
                         products=[element], relating_structure=site)
    element.Representation = model.createIfcProductDefinitionShape(None, None, [representation])
    return element


def _annotation(model, site, name: str, representation):
    annotation = ifcopenshell.api.run("root.create_entity", model,
                                      ifc_class="IfcAnnotation",
                                      name=name)
    annotation.ObjectPlacement = _local_placement(model, site.ObjectPlacement)
    ifcopenshell.api.run("spatial.assign_container", model,
                         products=[annotation], relating_structure=site)
    annotation.Representation = model.createIfcProductDefinitionShape(None, None, [representation])
    return annotation


def _project_origin(surface, buildings) -> Tuple[float, float, float]:
    if surface is not None:
        minx, miny, maxx, maxy = surface.bounds
        min_z = surface.z_range[0]
    elif buildings:
        lo = np.min([b.mesh.bounds[0] for b in buildings], axis=0)
        hi = np.max([b.mesh.bounds[1] for b in buildings], axis=0)
        minx, miny, min_z = lo
        maxx, maxy = hi[0], hi[1]
    else:
        return 0.0, 0.0, 0.0
    # Round to nearest 100m
    return (float(round((minx + maxx) / 2, -2)), float(round((miny + maxy) / 2, -2)),
            float(round(min_z)))


def buildings_to_ifc(model, buildings, site, body_context, offsets) -> List:
    ifc_buildings = []
    for i, building in enumerate(buildings):
        try:
            ifc_building = ifcopenshell.api.run("root.create_entity", model,
                                                ifc_class="IfcBuilding",
                                                name=f"Building_{i + 1}")
            ifc_building.Description = f"{building.roof_type} roof, {building.floors:g} floors"
            ifc_building.ObjectPlacement = _local_placement(model, site.ObjectPlacement)
            ifcopenshell.api.run("aggregate.assign_object", model,
                                 products=[ifc_building], relating_object=site)
            rep = _brep_representation(model, body_context, building.mesh, offsets)
            ifc_building.Representation = model.createIfcProductDefinitionShape(None, None, [rep])

            pset = ifcopenshell.api.run("pset.add_pset", model,
                                        product=ifc_building, name="Pset_BuildingCommon")
            ifcopenshell.api.run("pset.edit_pset", model, pset=pset, properties={
                'NumberOfStoreys': int(round(building.floors)),
                'GrossPlannedArea': float(building.footprint.area),
            })
            massing = ifcopenshell.api.run("pset.add_pset", model,
                                           product=ifc_building, name="CPset_TopoMassing")
            ifcopenshell.api.run("pset.edit_pset", model, pset=massing, properties={
                'RoofType': building.roof_type,
                'Height': float(building.height),
                'BaseElevation': float(building.base_z),
                'TerrainRelief': float(building.relief),
            })
            ifc_buildings.append(ifc_building)
        except Exception as e:
            logger.warning(f"Could not write building {i + 1}: {e}")
    return ifc_buildings


def create_topo_ifc(
    output_path: str,
    surface=None,
    terrain_box: Optional[Mesh] = None,
    contours=None,
    buildings=None,
    streets=None,
    water=None,
    parks=None,
    crs_epsg: int = 5186,
    return_model: bool = False,
):
    """
    Create an IFC file from the generated topography groups.

    Args:
        output_path: Path to output IFC file
        surface: TerrainSurface, or None to skip the terrain surface
        terrain_box: Closed terrain Mesh, or None
        contours: ContourResult, or None
        buildings: List of BuildingMass, or None
        streets: StreetResult, or None
        water: WaterResult, or None
        parks: List of ParkPoint, or None
        crs_epsg: EPSG code of the source coordinates
        return_model: If True, return model object instead of writing to file

    Returns:
        If return_model=True: (model, offset_x, offset_y, offset_z)
        If return_model=False: (offset_x, offset_y, offset_z)
    """
    model = ifcopenshell.file(schema='IFC4')

    person = model.createIfcPerson(FamilyName="User")
    organization = model.createIfcOrganization(Name="topokorea")
    person_org = model.createIfcPersonAndOrganization(person, organization)
    application = model.createIfcApplication(organization, "1.0", "topokorea", "topokorea")
    owner_history = model.createIfcOwnerHistory(
        OwningUser=person_org,
        OwningApplication=application,
        ChangeAction="ADDED",
        CreationDate=int(time.time())
    )

    project = ifcopenshell.api.run("root.create_entity", model,
                                   ifc_class="IfcProject",
                                   name="Topography Model")
    project.OwnerHistory = owner_history

    length_unit = ifcopenshell.api.run("unit.add_si_unit", model)
    ifcopenshell.api.run("unit.assign_unit", model, units=[length_unit])

    context = ifcopenshell.api.run("context.add_context", model, context_type="Model")
    body_context = ifcopenshell.api.run(
        "context.add_context",
        model,
        context_type="Model",
        context_identifier="Body",
        target_view="MODEL_VIEW",
        parent=context,
    )
    footprint_context = ifcopenshell.api.run(
        "context.add_context",
        model,
        context_type="Plan",
        context_identifier="FootPrint",
        target_view="PLAN_VIEW",
        parent=context,
    )

    crs = model.createIfcProjectedCRS(Name=f"EPSG:{crs_epsg}")
    offsets = _project_origin(surface, buildings)
    offset_x, offset_y, offset_z = offsets
    print(f"\nProject Origin: E={offset_x}, N={offset_y}, H={offset_z}")

    model.createIfcMapConversion(
        SourceCRS=context,
        TargetCRS=crs,
        Eastings=offset_x,
        Northings=offset_y,
        OrthogonalHeight=offset_z
    )

    site = ifcopenshell.api.run("root.create_entity", model,
                                ifc_class="IfcSite",
                                name="Topography_Site")
    ifcopenshell.api.run("aggregate.assign_object", model,
                         products=[site], relating_object=project)
    ifcopenshell.api.run("geometry.edit_object_placement", model, product=site)

    if surface is not None:
        try:
            mesh = surface.to_mesh()
            print(f"Creating terrain surface with {len(mesh.faces)} triangles...")
            _geographic_element(model, site, "Terrain_Surface", "TERRAIN",
                                _surface_representation(model, body_context, mesh, offsets))
        except Exception:
            logger.exception("Could not write terrain surface")

    if terrain_box is not None and not terrain_box.is_empty:
        try:
            print(f"Creating terrain box with {len(terrain_box.faces)} faces...")
            _geographic_element(model, site, "Terrain_Box", "TERRAIN",
                                _brep_representation(model, body_context, terrain_box, offsets))
        except Exception:
            logger.exception("Could not write terrain box")

    if contours is not None:
        try:
            print(f"Adding {len(contours.blocks)} contour blocks...")
            for block in contours.blocks:
                element = _geographic_element(
                    model, site, f"Contour_{block.level:.1f}", "USERDEFINED",
                    _brep_representation(model, body_context, block.mesh, offsets),
                    object_type="ContourBlock")
                pset = ifcopenshell.api.run("pset.add_pset", model,
                                            product=element, name="CPset_Contour")
                ifcopenshell.api.run("pset.edit_pset", model, pset=pset, properties={
                    'Level': float(block.level),
                    'Thickness': float(block.height),
                    'Area': float(block.area),
                })
            rep = _polyline_representation(model, body_context, [c.coords for c in contours.curves], offsets)
            if rep is not None:
                _annotation(model, site, "Contour_Lines", rep)
        except Exception:
            logger.exception("Could not write contours")

    if buildings:
        print(f"Adding {len(buildings)} buildings...")
        ifc_buildings = buildings_to_ifc(model, buildings, site, body_context, offsets)
        print(f"  Added {len(ifc_buildings)} buildings")

    if streets is not None and (streets.draped_curves or streets.flat_regions):
        try:
            print(f"Adding {len(streets.draped_curves)} draped street outlines...")
            reps = []
            rep = _polyline_representation(model, body_context, streets.draped_curves, offsets)
            if rep is not None:
                reps.append(rep)
            plan = _footprint_representation(model, footprint_context, streets.flat_regions, offsets)
            if plan is not None:
                reps.append(plan)
            if reps:
                annotation = _annotation(model, site, "Streets", reps[0])
                annotation.Representation = model.createIfcProductDefinitionShape(None, None, reps)
        except Exception:
            logger.exception("Could not write streets")

    if water is not None and water.surfaces:
        try:
            print(f"Adding {len(water.surfaces)} water surfaces...")
            for i, patch in enumerate(water.surfaces):
                _geographic_element(model, site, f"Water_{i + 1}", "USERDEFINED",
                                    _surface_representation(model, body_context, patch, offsets),
                                    object_type="Water")
        except Exception:
            logger.exception("Could not write water")

    if parks:
        try:
            print(f"Adding {len(parks)} parks...")
            for park in parks:
                z = surface.elevation_at(park.x, park.y) if surface is not None else None
                point = model.createIfcCartesianPoint([
                    float(park.x - offset_x), float(park.y - offset_y),
                    float((z if z is not None else offset_z) - offset_z)])
                rep = model.createIfcShapeRepresentation(body_context, "Annotation", "Point", [point])
                _annotation(model, site, park.name or "Park", rep)
        except Exception:
            logger.exception("Could not write parks")

    # Set OwnerHistory on all rooted entities that are missing it
    for entity in model.by_type("IfcRoot"):
        if entity.OwnerHistory is None:
            entity.OwnerHistory = owner_history

    if return_model:
        return model, offset_x, offset_y, offset_z
    model.write(output_path)
    print(f"\nIFC file created: {output_path}")
    return offset_x, offset_y, offset_z
