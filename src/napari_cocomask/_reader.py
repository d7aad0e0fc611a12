"""
COCO file reader for napari.

This module implements the napari reader hook that detects COCO JSON files
with RLE segmentations and turns the annotations of their first image into
napari layers (mask overlay image, bounding boxes and labels).
"""

from typing import Any, Dict, List, Optional, Union
import json
import logging

from napari.types import LayerDataTuple

from ._utils import load_coco_file, validate_coco_structure, get_basename, CocoError
from ._visualization import CocoMaskVisualizer
from ._progress import ProgressReporter, progress_context

logger = logging.getLogger(__name__)


def napari_get_reader(path: Union[str, List[str]]):
    """Return ``coco_reader`` when ``path`` looks like a COCO JSON file."""
    if isinstance(path, list):
        if len(path) != 1:
            return None
        path = path[0]
    if not str(path).endswith('.json'):
        return None
    return coco_reader


def coco_reader(path: Union[str, List[str]]) -> Optional[List[LayerDataTuple]]:
    """
    Read COCO JSON annotation file and return napari-compatible layer data.

    Parameters
    ----------
    path : str or list of str
        Path to the COCO JSON file(s) to read

    Returns
    -------
    list of LayerDataTuple or None
        Layers for the first image of the document (possibly empty), or None
        if the file cannot be read as COCO format
    """
    if isinstance(path, list):
        if len(path) == 1:
            path = path[0]
        else:
            # One annotation document at a time
            return None

    if not _is_coco_file(path):
        return None

    try:
        with progress_context("Loading COCO file...") as reporter:
            reporter.update(0, 2, "Loading COCO data")
            coco_data = load_coco_file(path)

            reporter.update(1, 2, "Rendering first image")
            result = _convert_coco_to_napari(coco_data, reporter=reporter)

            reporter.update(2, 2, "Completed")
            return result

    except CocoError as e:
        logger.error(f"Error loading COCO file {path}: {e.message}")
        return None


def _is_coco_file(path: str) -> bool:
    """
    Check if a JSON file contains the COCO top-level arrays.

    Parameters
    ----------
    path : str
        Path to JSON file to validate

    Returns
    -------
    bool
        True if file contains valid COCO structure, False otherwise
    """
    if not str(path).endswith('.json'):
        return False
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return False

    return validate_coco_structure(data)


def _convert_coco_to_napari(coco_data: Dict[str, Any], image_index: int = 0,
                            reporter: Optional[ProgressReporter] = None) -> List[LayerDataTuple]:
    """
    Convert the annotations of one image to napari layer format.

    Parameters
    ----------
    coco_data : dict
        Loaded COCO JSON data structure
    image_index : int, optional
        Position of the image in the ``images`` array
    reporter : ProgressReporter, optional
        Receives per-annotation render progress

    Returns
    -------
    list of LayerDataTuple
        Napari-compatible layer data tuples, empty when there is no such image
    """
    images = coco_data.get('images', [])
    if not 0 <= image_index < len(images):
        return []

    image = images[image_index]
    visualizer = CocoMaskVisualizer(coco_data)
    result = visualizer.render_image(image['id'], reporter=reporter)
    for message in result.errors:
        logger.warning(message)

    return visualizer.to_layer_data(result, get_basename(str(image.get('file_name', ''))))
