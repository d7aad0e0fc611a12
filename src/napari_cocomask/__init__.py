"""
napari-cocomask plugin for visualizing COCO segmentation datasets.

This plugin decodes COCO run-length encoded masks, composites them over the
matching image with bounding boxes and category labels, and indexes image
records into a searchable folder hierarchy.
"""

__version__ = "0.1.0"

from ._reader import coco_reader, napari_get_reader
from ._rle import (
    decode_rle_string,
    encode_rle_counts,
    rasterize_rle,
    compute_centroid,
    parse_segmentation,
)
from ._tree import TreeNode, build_file_tree, filter_images
from ._utils import (
    load_coco_file,
    validate_coco_structure,
    find_image_for_upload,
    get_image_annotations,
    get_color_for_id,
    CocoError,
    MalformedDocument,
    RleDecodeError,
    NoMatchError,
    DimensionMismatch,
)
from ._visualization import CocoMaskVisualizer

__all__ = [
    'coco_reader',
    'napari_get_reader',
    'decode_rle_string',
    'encode_rle_counts',
    'rasterize_rle',
    'compute_centroid',
    'parse_segmentation',
    'TreeNode',
    'build_file_tree',
    'filter_images',
    'load_coco_file',
    'validate_coco_structure',
    'find_image_for_upload',
    'get_image_annotations',
    'get_color_for_id',
    'CocoError',
    'MalformedDocument',
    'RleDecodeError',
    'NoMatchError',
    'DimensionMismatch',
    'CocoMaskVisualizer',
]
