"""
NGII Digital Map Loader

Extracts contours, building footprints, streets, water bodies and parks from the
shapefile layers of the National Geographic Information Institute (NGII) of
Korea digital topographic maps.
"""

import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import shapefile
from pyproj import CRS
from pyproj.exceptions import CRSError
from shapely.geometry import Polygon

from topokorea.loaders.shapefile_index import build_shapefile_index, get_files

logger = logging.getLogger(__name__)

# NGII layer codes
CONTOUR_LAYER = "F0010000"
BUILDING_LAYER = "B0010000"
STREET_LAYER = "A0010000"
WATER_LAYER = "E0010001"
PARK_LAYER = "C0380000"

# Attribute columns (record index, deletion flag excluded)
CONTOUR_ELEVATION_FIELD = 1
BUILDING_FLOORS_FIELD = 5
PARK_NAME_FIELD = 1

PARK_KEYWORD = "공원"
DEFAULT_ENCODING = "cp949"
DEFAULT_EPSG = 5186  # Korea 2000 / Central Belt 2010

POINT_TYPES = {shapefile.POINT, shapefile.POINTZ, shapefile.POINTM,
               shapefile.MULTIPOINT, shapefile.MULTIPOINTZ, shapefile.MULTIPOINTM}
LINE_TYPES = {shapefile.POLYLINE, shapefile.POLYLINEZ, shapefile.POLYLINEM}
POLYGON_TYPES = {shapefile.POLYGON, shapefile.POLYGONZ, shapefile.POLYGONM}


@dataclass
class ContourLine:
    """Contour polyline with its elevation attribute"""
    coords: List[Tuple[float, float]]
    elevation: float


@dataclass
class BuildingFootprint:
    """Closed building outline with its number of floors"""
    coords: List[Tuple[float, float]]
    floors: float = 1.0


@dataclass
class ParkPoint:
    x: float
    y: float
    name: str = ""


@dataclass
class NGIIDataset:
    """All layers read from a set of NGII folders"""
    contours: List[ContourLine] = field(default_factory=list)
    buildings: List[BuildingFootprint] = field(default_factory=list)
    streets: List[Polygon] = field(default_factory=list)
    water: List[Polygon] = field(default_factory=list)
    parks: List[ParkPoint] = field(default_factory=list)
    index: Dict[str, Set[str]] = field(default_factory=dict)
    crs_epsg: int = DEFAULT_EPSG


def parse_number(value, default: float) -> float:
    """Parse a numeric attribute, falling back to default for blanks and text."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return default


def _split_parts(shape) -> List[List[Tuple[float, float]]]:
    """Split shape points into parts using the part start indices."""
    points = [(float(p[0]), float(p[1])) for p in shape.points]
    starts = list(shape.parts) or [0]
    ends = starts[1:] + [len(points)]
    return [points[s:e] for s, e in zip(starts, ends) if e > s]


def _open_reader(path: str, encoding: str) -> shapefile.Reader:
    return shapefile.Reader(path, encoding=encoding, encodingErrors="replace")


def _iter_shape_records(path: str, encoding: str, allowed_types: Set[int]):
    try:
        with _open_reader(path, encoding) as sf:
            for shape_record in sf.iterShapeRecords():
                shape = shape_record.shape
                if shape.shapeType not in allowed_types:
                    continue
                yield shape, shape_record.record
    except (struct.error, ValueError) as e:
        # truncated or corrupt record data
        raise shapefile.ShapefileException(f"Corrupt shapefile {path}: {e}") from e


def _record_value(record, index: int):
    try:
        return record[index]
    except IndexError:
        return None


def _read_layer(paths: List[str], encoding: str, allowed_types: Set[int],
                convert: Callable, label: str) -> List:
    """
    Convert the features of every file in a layer.

    A file that fails part way contributes nothing; its features read so far
    are discarded and a warning is logged.
    """
    features = []
    for path in paths:
        try:
            found = []
            for shape, record in _iter_shape_records(path, encoding, allowed_types):
                found.extend(convert(shape, record))
        except (shapefile.ShapefileException, OSError) as e:
            logger.warning(f"Could not read {label} file {path}: {e}")
            continue
        features.extend(found)
    return features


def _contour_parts(shape, record) -> List[ContourLine]:
    elevation = parse_number(_record_value(record, CONTOUR_ELEVATION_FIELD), -1.0)
    if elevation <= -1.0:
        return []
    return [ContourLine(coords=part, elevation=elevation)
            for part in _split_parts(shape) if len(part) >= 2]


def _building_footprint(shape, record) -> List[BuildingFootprint]:
    parts = _split_parts(shape)
    if not parts:
        return []
    exterior = parts[0]
    if len(exterior) < 4 or exterior[0] != exterior[-1]:
        return []
    floors = parse_number(_record_value(record, BUILDING_FLOORS_FIELD), 1.0)
    return [BuildingFootprint(coords=exterior, floors=floors)]


def _exterior_polygon(shape, _record) -> List[Polygon]:
    parts = _split_parts(shape)
    if parts and len(parts[0]) >= 3:
        return [Polygon(parts[0])]
    return []


def _park_points(shape, record) -> List[ParkPoint]:
    value = _record_value(record, PARK_NAME_FIELD)
    name = "" if value is None else str(value)
    if PARK_KEYWORD not in name:
        return []
    return [ParkPoint(x=float(p[0]), y=float(p[1]), name=name) for p in shape.points]


def read_contours(paths: List[str], encoding: str = DEFAULT_ENCODING) -> List[ContourLine]:
    return _read_layer(paths, encoding, LINE_TYPES, _contour_parts, "contour")


def read_buildings(paths: List[str], encoding: str = DEFAULT_ENCODING) -> List[BuildingFootprint]:
    return _read_layer(paths, encoding, POLYGON_TYPES, _building_footprint, "building")


def read_polygons(paths: List[str], encoding: str = DEFAULT_ENCODING) -> List[Polygon]:
    """Exterior rings of every polygon feature (streets, water)."""
    return _read_layer(paths, encoding, POLYGON_TYPES, _exterior_polygon, "polygon")


def read_parks(paths: List[str], encoding: str = DEFAULT_ENCODING) -> List[ParkPoint]:
    return _read_layer(paths, encoding, POINT_TYPES, _park_points, "park")


def detect_epsg(index: Dict[str, Set[str]], default: int = DEFAULT_EPSG) -> int:
    """EPSG code from the first readable .prj beside an indexed shapefile."""
    for key in sorted(index):
        for path in sorted(index[key]):
            prj = Path(path).with_suffix(".prj")
            if not prj.exists():
                continue
            try:
                epsg = CRS.from_wkt(prj.read_text(errors="replace")).to_epsg()
            except CRSError as e:
                logger.debug(f"Unreadable projection {prj}: {e}")
                continue
            if epsg:
                return epsg
    return default


def load_ngii_folders(folders: List[str], encoding: str = DEFAULT_ENCODING) -> NGIIDataset:
    """
    Read every supported NGII layer from the given folders.

    Args:
        folders: Folder paths holding NGII shapefiles
        encoding: DBF text encoding

    Returns:
        NGIIDataset with all extracted features
    """
    index = build_shapefile_index(folders)
    print(f"Indexed {sum(len(v) for v in index.values())} shapefiles in {len(index)} layers")

    dataset = NGIIDataset(
        contours=read_contours(get_files(CONTOUR_LAYER, index), encoding),
        buildings=read_buildings(get_files(BUILDING_LAYER, index), encoding),
        streets=read_polygons(get_files(STREET_LAYER, index), encoding),
        water=read_polygons(get_files(WATER_LAYER, index), encoding),
        parks=read_parks(get_files(PARK_LAYER, index), encoding),
        index=index,
        crs_epsg=detect_epsg(index),
    )

    print(f"  Contours: {len(dataset.contours)} | Buildings: {len(dataset.buildings)} | "
          f"Streets: {len(dataset.streets)} | Water: {len(dataset.water)} | Parks: {len(dataset.parks)}")
    return dataset
