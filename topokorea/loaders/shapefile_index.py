"""
Shapefile directory index

Scans NGII download folders and groups the shapefiles by layer code. NGII names
its files like ``NGII_DTM_36710_F0010000.shp``; the last underscore separated
token is the layer code.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Set

logger = logging.getLogger(__name__)


def _strip_quotes(folder: str) -> str:
    folder = folder.strip()
    if len(folder) > 2 and folder[0] == '"' and folder[-1] == '"':
        return folder[1:-1]
    return folder


def layer_key(path) -> str:
    """Layer code of a shapefile, taken from the last '_' token of its stem."""
    return Path(path).stem.split('_')[-1]


def build_shapefile_index(folders: Iterable[str]) -> Dict[str, Set[str]]:
    """
    Build a layer-code -> shapefile paths dictionary from a list of folders.

    Args:
        folders: Folder paths, optionally wrapped in double quotes

    Returns:
        Dict mapping layer code to the set of .shp paths carrying it
    """
    index: Dict[str, Set[str]] = {}

    for raw in folders:
        folder = Path(_strip_quotes(str(raw)))
        if not folder.is_dir():
            logger.warning(f"Shapefile folder does not exist: {folder}")
            continue

        for shp_file in sorted(folder.glob("*.shp")):
            key = layer_key(shp_file)
            if not key:
                continue
            index.setdefault(key, set()).add(str(shp_file))

    return index


def get_files(key: str, index: Dict[str, Set[str]]) -> List[str]:
    return sorted(index.get(key, ()))


def describe_index(index: Dict[str, Set[str]]) -> List[str]:
    """Flatten the index into 'key: path' lines."""
    return [f"{key}: {path}" for key in sorted(index) for path in sorted(index[key])]
