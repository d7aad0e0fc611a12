"""
Shared helpers for COCO segmentation documents.

This module holds the error hierarchy, document loading and validation,
matching of uploaded image files to image records, permissive image id
comparison and the deterministic per-id color assignment used by every
rendering path.
"""

from typing import Dict, List, Any, Optional, Union, Tuple, Protocol
import colorsys
import json
import math
import logging
from pathlib import Path

from matplotlib import colors as mcolors

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('images', 'annotations', 'categories')

GOLDEN_ANGLE = 137.508
COLOR_SATURATION = 0.8
COLOR_LIGHTNESS = 0.6


class CocoImage(Protocol):
    id: int
    file_name: str
    width: int
    height: int


class CocoCategory(Protocol):
    id: int
    name: str
    supercategory: Optional[str]


class CocoRle(Protocol):
    counts: Union[str, List[int]]
    size: List[int]


class CocoAnnotation(Protocol):
    id: int
    image_id: Union[int, str]
    category_id: int
    area: Optional[float]
    bbox: Optional[List[float]]
    segmentation: Optional[Union[CocoRle, List[List[float]]]]
    iscrowd: Optional[int]


class CocoDataset(Protocol):
    images: List[CocoImage]
    categories: List[CocoCategory]
    annotations: List[CocoAnnotation]


class CocoError(Exception):
    def __init__(self, message: str, user_message: Optional[str] = None):
        self.message = message
        self.user_message = user_message or message
        super().__init__(message)


class MalformedDocument(CocoError):
    """Document lacks one of the required top-level arrays."""


class RleDecodeError(CocoError):
    """Segmentation counts could not be turned into run lengths."""


class DimensionMismatch(CocoError):
    """RLE size does not match the pixel size of the base image."""

    def __init__(self, rle_size: Tuple[int, int], image_size: Tuple[int, int]):
        self.rle_size = tuple(rle_size)
        self.image_size = tuple(image_size)
        super().__init__(
            f"RLE size {self.rle_size} does not match image size {self.image_size}",
            "Mask size differs from the image; showing the overlapping region only."
        )


class InvalidId(CocoError):
    """Id is neither an integer nor a numeric string."""


class NoMatchError(CocoError):
    """Uploaded file name matches no image record."""

    def __init__(self, uploaded_name: str, examples: List[str]):
        self.uploaded_name = uploaded_name
        self.examples = list(examples)
        expected = ', '.join(self.examples)
        super().__init__(
            f"No image record matches uploaded file {uploaded_name!r}",
            f'Image "{uploaded_name}" not found. Expected: "{expected}"...'
        )


def load_coco_file(file_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load and validate a COCO JSON file.

    Parameters
    ----------
    file_path : str or Path
        Path to the COCO JSON file

    Returns
    -------
    dict
        Loaded COCO data dictionary

    Raises
    ------
    CocoError
        If the file cannot be read or parsed
    MalformedDocument
        If a required top-level array is missing
    """
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise CocoError(
            f"COCO file not found: {file_path}",
            "Selected file could not be found. Please check the file path."
        )
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error in {file_path}: {e}")
        raise CocoError(
            f"Invalid JSON in COCO file: {e}",
            f"Failed to parse JSON: {e.msg}"
        )
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"Unexpected error reading COCO file {file_path}: {e}")
        raise CocoError(
            f"Error reading COCO file: {e}",
            f"Unexpected error: {str(e)[:100]}..."
        )

    return load_coco_document(data)


def load_coco_document(data: Any) -> Dict[str, Any]:
    """
    Check an already parsed document and return it unchanged.

    Only the presence of the ``images``, ``annotations`` and ``categories``
    arrays is checked; everything else is accepted as-is.

    Raises
    ------
    MalformedDocument
        If any required array is missing or is not a list
    """
    if not isinstance(data, dict):
        raise MalformedDocument(
            f"COCO document must be a JSON object, got {type(data).__name__}",
            "Invalid COCO JSON format. Missing images, annotations, or categories."
        )

    missing = [field for field in REQUIRED_FIELDS
               if not isinstance(data.get(field), list)]
    if missing:
        raise MalformedDocument(
            f"COCO document missing required arrays: {', '.join(missing)}",
            "Invalid COCO JSON format. Missing images, annotations, or categories."
        )
    return data


def validate_coco_structure(data: Optional[Dict[str, Any]]) -> bool:
    """
    Validate that dictionary contains the COCO top-level arrays.

    Parameters
    ----------
    data : dict
        Dictionary to validate as COCO format

    Returns
    -------
    bool
        True if ``images``, ``annotations`` and ``categories`` are all lists
    """
    if data is None:
        return False
    try:
        load_coco_document(data)
    except MalformedDocument:
        return False
    return True


def get_basename(path: str) -> str:
    """Return the final ``/`` or ``\\`` separated segment, trimmed."""
    return path.replace('\\', '/').split('/')[-1].strip()


def strip_extension(name: str) -> str:
    """Return the text before the last dot, or the whole name if that is empty."""
    stem = name[:name.rfind('.')] if '.' in name else ''
    return stem or name


def find_image_for_upload(coco_data: Dict[str, Any], uploaded_name: str,
                          max_examples: int = 3) -> Dict[str, Any]:
    """
    Find the image record an uploaded raster file belongs to.

    Both sides are reduced to their basename, stripped of the extension
    and compared case-insensitively. The first match in document order wins.

    Parameters
    ----------
    coco_data : dict
        Loaded COCO document
    uploaded_name : str
        Name (or path) of the uploaded file
    max_examples : int, optional
        How many expected names to report when nothing matches

    Returns
    -------
    dict
        The matching image record

    Raises
    ------
    NoMatchError
        If no image record matches
    """
    uploaded = get_basename(uploaded_name)
    wanted = strip_extension(uploaded).lower()

    images = coco_data.get('images', [])
    for image in images:
        candidate = strip_extension(get_basename(str(image.get('file_name', ''))))
        if candidate.lower() == wanted:
            return image

    examples = [get_basename(str(img.get('file_name', '')))
                for img in images[:max_examples]]
    raise NoMatchError(uploaded, examples)


def normalize_id(value: Any) -> int:
    """
    Convert an id stored as a number or numeric string to ``int``.

    Raises
    ------
    InvalidId
        If the value is a bool, a non-integral float or a non-numeric string
    """
    if isinstance(value, bool):
        raise InvalidId(f"Boolean is not a valid id: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise InvalidId(f"Non-integral id: {value!r}")
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise InvalidId(f"Non-numeric id: {value!r}")
        if math.isfinite(number) and number.is_integer():
            return int(number)
        raise InvalidId(f"Non-integral id: {value!r}")
    raise InvalidId(f"Unsupported id type {type(value).__name__}: {value!r}")


def ids_equal(left: Any, right: Any) -> bool:
    """Compare two ids after numeric normalization; malformed ids never match."""
    try:
        return normalize_id(left) == normalize_id(right)
    except InvalidId:
        return False


def get_image_annotations(coco_data: Dict[str, Any], image_id: Any) -> List[Dict[str, Any]]:
    """
    Get all annotations for a specific image.

    ``image_id`` values stored as numeric strings compare equal to their
    integer form. Annotations with malformed ids are skipped with a warning.

    Parameters
    ----------
    coco_data : dict
        COCO data structure
    image_id : int or str
        ID of the image to get annotations for

    Returns
    -------
    list of dict
        Matching annotations in document order

    Raises
    ------
    InvalidId
        If ``image_id`` itself is malformed
    """
    target = normalize_id(image_id)
    selected = []
    for ann in coco_data.get('annotations', []):
        try:
            ann_image_id = normalize_id(ann.get('image_id'))
        except InvalidId as e:
            logger.warning(f"Skipping annotation {ann.get('id')}: {e.message}")
            continue
        if ann_image_id == target:
            selected.append(ann)
    return selected


def get_image_record(coco_data: Dict[str, Any], image_id: Any) -> Optional[Dict[str, Any]]:
    """Return the first image record whose id equals ``image_id``, if any."""
    target = normalize_id(image_id)
    for image in coco_data.get('images', []):
        if ids_equal(image.get('id'), target):
            return image
    return None


def get_category_info(coco_data: Dict[str, Any]) -> Dict[int, Dict[str, Any]]:
    """
    Extract category information as lookup dictionary.

    Parameters
    ----------
    coco_data : dict
        COCO data structure

    Returns
    -------
    dict
        Mapping from category ID to category information
    """
    return {cat['id']: cat for cat in coco_data.get('categories', []) if 'id' in cat}


def get_category_name(categories: Dict[int, Dict[str, Any]], category_id: Any) -> str:
    category = categories.get(category_id)
    if category and category.get('name'):
        return category['name']
    return f"Class {category_id}"


def get_color_for_id(identifier: int) -> Tuple[int, int, int]:
    """
    Map an integer id to a stable, visually distinct RGB color.

    Sequential ids are spread around the hue circle by the golden angle and
    converted from HSL with fixed saturation and lightness.

    Parameters
    ----------
    identifier : int
        Annotation (or any other) id

    Returns
    -------
    tuple of int
        ``(r, g, b)`` with each channel in ``[0, 255]``
    """
    hue = (identifier * GOLDEN_ANGLE) % 360
    channels = colorsys.hls_to_rgb(hue / 360, COLOR_LIGHTNESS, COLOR_SATURATION)
    return tuple(min(255, max(0, int(math.floor(c * 255 + 0.5)))) for c in channels)


def color_to_rgba(color: Tuple[int, int, int], alpha: float = 1.0) -> Tuple[float, float, float, float]:
    """Convert an 8-bit RGB triple to a 0-1 RGBA tuple for napari."""
    return mcolors.to_rgba(tuple(c / 255 for c in color), alpha)


def color_to_hex(color: Tuple[int, int, int]) -> str:
    return mcolors.to_hex(tuple(c / 255 for c in color))


def diagnose_coco_file(file_path: str) -> str:
    """
    Diagnose issues with a COCO file for debugging.

    Parameters
    ----------
    file_path : str
        Path to COCO file to diagnose

    Returns
    -------
    str
        Diagnostic information
    """
    diagnostics = []

    path_obj = Path(file_path)
    if not path_obj.exists():
        return f"File does not exist: {file_path}"
    if not path_obj.is_file():
        return f"Path is not a file: {file_path}"
    if not path_obj.suffix.lower() == '.json':
        diagnostics.append("Warning: File does not have .json extension")

    diagnostics.append(f"File size: {path_obj.stat().st_size} bytes")

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        diagnostics.append(f"✗ Invalid JSON: {e}")
        return "\n".join(diagnostics)
    diagnostics.append("✓ Valid JSON format")

    if validate_coco_structure(data):
        diagnostics.append("✓ Valid COCO structure")
    else:
        diagnostics.append("✗ Invalid COCO structure")
        return "\n".join(diagnostics)

    diagnostics.append(f"Images: {len(data['images'])}")
    diagnostics.append(f"Categories: {len(data['categories'])}")
    diagnostics.append(f"Annotations: {len(data['annotations'])}")

    kinds = {'rle_string': 0, 'rle_array': 0, 'polygon': 0, 'none': 0}
    for ann in data['annotations']:
        seg = ann.get('segmentation') if isinstance(ann, dict) else None
        if isinstance(seg, dict) and 'counts' in seg:
            kinds['rle_string' if isinstance(seg['counts'], str) else 'rle_array'] += 1
        elif isinstance(seg, list) and seg:
            kinds['polygon'] += 1
        else:
            kinds['none'] += 1
    diagnostics.append(
        "Segmentations: "
        f"{kinds['rle_string']} compressed RLE, {kinds['rle_array']} uncompressed RLE, "
        f"{kinds['polygon']} polygon, {kinds['none']} none"
    )

    return "\n".join(diagnostics)
