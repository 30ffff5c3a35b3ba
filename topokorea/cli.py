#!/usr/bin/env python3
"""
CLI for the NGII Topography Tool

Command-line interface for generating IFC topography models with terrain,
contours, buildings, streets, water and parks from NGII shapefiles.
"""

# Minimal imports for fast startup
import argparse
import logging
import sys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate an IFC topography model from NGII digital map shapefiles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Terrain, contours and everything else found in one map sheet
  %(prog)s data/37612001 --output site.ifc

  # Several sheets, finer terrain grid, 5 m contours and parapet roofs
  %(prog)s data/37612001 data/37612002 --resolution 2 --z-interval 5 --roof-type parapet

  # Terrain and contours only
  %(prog)s data/37612001 --no-buildings --no-streets --no-water --no-parks
        """
    )

    parser.add_argument("folders", nargs="+",
                        help="Folders holding NGII shapefiles (e.g. N3L_F0010000.shp)")
    parser.add_argument("--encoding", default="cp949",
                        help="DBF text encoding (default: cp949)")

    terrain_group = parser.add_argument_group("Terrain Options")
    terrain_group.add_argument("--resolution", type=int, default=0,
                               help="Grid coarseness index, 0 is the coarsest spacing (default: 0)")
    terrain_group.add_argument("--sample-length", type=float, default=10.0,
                               help="Contour sampling interval in meters (default: 10)")
    terrain_group.add_argument("--margin", type=float, default=30.0,
                               help="Terrain margin around the contours in meters (default: 30)")
    terrain_group.add_argument("--no-terrain-box", dest="include_terrain_box", action="store_false",
                               help="Exclude the closed terrain solid")

    contour_group = parser.add_argument_group("Contour Options")
    contour_group.add_argument("--z-interval", type=int, default=10,
                               help="Contour interval in meters (default: 10)")
    contour_group.add_argument("--no-contours", dest="include_contours", action="store_false",
                               help="Exclude contour curves and blocks")

    building_group = parser.add_argument_group("Building Options")
    building_group.add_argument("--roof-type", choices=["flat", "parapet"], default="flat",
                                help="Roof type of the building masses (default: flat)")
    building_group.add_argument("--remove-under-area", type=float, default=0.0,
                                help="Skip footprints smaller than this in m² (default: 0)")
    building_group.add_argument("--no-buildings", dest="include_buildings", action="store_false",
                                help="Exclude buildings")

    context_group = parser.add_argument_group("Context Options")
    context_group.add_argument("--no-streets", dest="include_streets", action="store_false",
                               help="Exclude draped streets")
    context_group.add_argument("--no-water", dest="include_water", action="store_false",
                               help="Exclude water surfaces")
    context_group.add_argument("--no-parks", dest="include_parks", action="store_false",
                               help="Exclude park markers")

    parser.add_argument("--list-layers", action="store_true",
                        help="Print the shapefile index and exit")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")
    parser.add_argument("--output", default="topography.ifc",
                        help="Output IFC file path")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    print("\n" + "=" * 60, flush=True)
    print("  NGII Topography Model Generator", flush=True)
    print("  IFC export with terrain, contours, buildings, streets & water", flush=True)
    print("=" * 60, flush=True)

    if args.list_layers:
        from topokorea.loaders.shapefile_index import build_shapefile_index, describe_index
        print("\nShapefile Dictionary:")
        for line in describe_index(build_shapefile_index(args.folders)):
            print(f"  {line}")
        return

    features = ["terrain"]
    for name, enabled in [("box", args.include_terrain_box), ("contours", args.include_contours),
                          ("buildings", args.include_buildings), ("streets", args.include_streets),
                          ("water", args.include_water), ("parks", args.include_parks)]:
        if enabled:
            features.append(name)

    print("\nConfiguration:", flush=True)
    print(f"  Resolution: {args.resolution} | Contour interval: {args.z_interval}m | "
          f"Roof: {args.roof_type}", flush=True)
    print(f"  Features: {', '.join(features)}", flush=True)
    print(f"  Output: {args.output}", flush=True)
    print("-" * 60, flush=True)

    # Heavy imports after the banner
    print("\nLoading modules...", flush=True)
    from topokorea.site_model import run_topo_workflow

    try:
        result = run_topo_workflow(
            shp_folders=args.folders,
            resolution=args.resolution,
            z_interval=args.z_interval,
            roof_type=args.roof_type,
            remove_under_area=args.remove_under_area,
            sample_length=args.sample_length,
            margin=args.margin,
            include_terrain_box=args.include_terrain_box,
            include_contours=args.include_contours,
            include_buildings=args.include_buildings,
            include_streets=args.include_streets,
            include_water=args.include_water,
            include_parks=args.include_parks,
            encoding=args.encoding,
            output_path=args.output,
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    except Exception as exc:
        print(f"Unexpected error: {exc}")
        import traceback
        traceback.print_exc()
        sys.exit(1)

    print(f"\nDone: {result.buildings} buildings, {result.contour_blocks} contour blocks, "
          f"{result.draped_streets} street outlines, {result.water_surfaces} water surfaces")


if __name__ == "__main__":
    main()
