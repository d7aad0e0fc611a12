"""
Core visualization logic for COCO segmentation overlays.

This module turns the annotations of one image into an RGBA mask overlay,
bounding box and label instructions and legend entries, and converts those
into napari layer data. One malformed annotation never stops the others
from rendering.
"""

from typing import Dict, List, Tuple, Any, Optional
from dataclasses import dataclass, field
import logging

import numpy as np
from napari.types import LayerDataTuple

from ._config import CocoMaskConfig, get_effective_config
from ._memory import get_cache_manager, ResourceTracker
from ._progress import ProgressReporter
from ._rle import (
    UncompressedRle,
    Polygon,
    parse_segmentation,
    normalize_counts,
    rasterize_rle,
    compute_centroid,
)
from ._utils import (
    CocoError,
    DimensionMismatch,
    InvalidId,
    get_category_info,
    get_category_name,
    get_color_for_id,
    get_image_annotations,
    get_image_record,
    normalize_id,
    color_to_rgba,
    color_to_hex,
)

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]


@dataclass(frozen=True)
class BoxInstruction:
    annotation_id: int
    x: float
    y: float
    width: float
    height: float
    color: RGB
    fill_alpha: float
    edge_width: float


@dataclass(frozen=True)
class LabelInstruction:
    annotation_id: int
    x: float
    y: float
    text: str
    anchor: str  # 'bbox' or 'centroid'


@dataclass(frozen=True)
class LegendItem:
    annotation_id: int
    category_id: Any
    name: str
    color: RGB

    @property
    def hex_color(self) -> str:
        return color_to_hex(self.color)

    @property
    def text(self) -> str:
        return f"ID:{self.annotation_id} - {self.name}"


@dataclass
class RenderResult:
    """Everything needed to draw the annotations of one image."""
    image_id: int
    shape: Tuple[int, int]
    overlay: np.ndarray
    boxes: List[BoxInstruction] = field(default_factory=list)
    labels: List[LabelInstruction] = field(default_factory=list)
    legend: List[LegendItem] = field(default_factory=list)
    mask_count: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def bbox_count(self) -> int:
        return len(self.boxes)


def alpha_over(dst: np.ndarray, src: np.ndarray) -> np.ndarray:
    """
    Composite ``src`` over ``dst`` (both RGBA uint8 of the same shape).

    Returns
    -------
    numpy.ndarray
        New RGBA uint8 array
    """
    src_a = src[..., 3:4].astype(np.float32) / 255
    dst_a = dst[..., 3:4].astype(np.float32) / 255
    out_a = src_a + dst_a * (1 - src_a)

    premultiplied = (src[..., :3].astype(np.float32) * src_a
                     + dst[..., :3].astype(np.float32) * dst_a * (1 - src_a))
    out_rgb = np.divide(premultiplied, out_a,
                        out=np.zeros_like(premultiplied), where=out_a > 0)

    out = np.empty(dst.shape, dtype=np.uint8)
    out[..., :3] = np.clip(np.rint(out_rgb), 0, 255)
    out[..., 3:4] = np.clip(np.rint(out_a * 255), 0, 255)
    return out


def to_rgba_image(image: np.ndarray) -> np.ndarray:
    """Promote a grayscale, RGB or RGBA uint8 image to opaque-by-default RGBA."""
    image = np.asarray(image)
    if image.dtype != np.uint8:
        raise CocoError(f"Base image must be uint8, got {image.dtype}",
                        "Unsupported image pixel format.")
    if image.ndim == 2:
        image = np.stack([image] * 3, axis=-1)
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise CocoError(f"Unsupported image shape {image.shape}",
                        "Unsupported image pixel format.")
    if image.shape[2] == 3:
        alpha = np.full(image.shape[:2] + (1,), 255, dtype=np.uint8)
        image = np.concatenate([image, alpha], axis=-1)
    return image


def composite_over(base: np.ndarray, overlay: np.ndarray) -> np.ndarray:
    """
    Alpha-composite an RGBA overlay over a base image.

    Raises
    ------
    DimensionMismatch
        If the overlay and the base image differ in height or width
    """
    base_rgba = to_rgba_image(base)
    if base_rgba.shape[:2] != overlay.shape[:2]:
        raise DimensionMismatch(overlay.shape[:2], base_rgba.shape[:2])
    return alpha_over(base_rgba, overlay)


def burn_boxes(image: np.ndarray, boxes: List[BoxInstruction]) -> np.ndarray:
    """Draw box fills and outlines into an RGBA image, clipped to its bounds."""
    out = image.copy()
    h, w = out.shape[:2]
    for box in boxes:
        x0 = int(np.clip(np.floor(box.x), 0, w))
        y0 = int(np.clip(np.floor(box.y), 0, h))
        x1 = int(np.clip(np.ceil(box.x + box.width), 0, w))
        y1 = int(np.clip(np.ceil(box.y + box.height), 0, h))
        if x1 <= x0 or y1 <= y0:
            continue

        fill = np.zeros((y1 - y0, x1 - x0, 4), dtype=np.uint8)
        fill[...] = (*box.color, int(round(box.fill_alpha * 255)))
        out[y0:y1, x0:x1] = alpha_over(out[y0:y1, x0:x1], fill)

        edge = max(1, int(round(box.edge_width)))
        stroke = (*box.color, 255)
        out[y0:min(y0 + edge, y1), x0:x1] = stroke
        out[max(y1 - edge, y0):y1, x0:x1] = stroke
        out[y0:y1, x0:min(x0 + edge, x1)] = stroke
        out[y0:y1, max(x1 - edge, x0):x1] = stroke
    return out


def flatten_render(base: np.ndarray, result: RenderResult) -> np.ndarray:
    """Base image with masks and boxes burnt in (labels are left to the host)."""
    return burn_boxes(composite_over(base, result.overlay), result.boxes)


def _valid_bbox(bbox: Any) -> Optional[Tuple[float, float, float, float]]:
    if not isinstance(bbox, (list, tuple)) or len(bbox) != 4:
        return None
    try:
        x, y, w, h = (float(v) for v in bbox)
    except (TypeError, ValueError):
        return None
    return x, y, w, h


class CocoMaskVisualizer:
    """
    Renders the annotations of COCO images as overlays.

    Colors are assigned per annotation id, masks are composited in
    annotation order and decoded run lengths are cached between renders.
    """

    def __init__(self, coco_data: Dict[str, Any], config: Optional[CocoMaskConfig] = None):
        """
        Initialize visualizer with COCO data.

        Parameters
        ----------
        coco_data : dict
            Loaded COCO JSON data structure
        config : CocoMaskConfig, optional
            Rendering configuration, defaults to the effective plugin config
        """
        self.coco_data = coco_data
        self.categories = get_category_info(coco_data)
        self.config = config or get_effective_config()

        performance = self.config.performance
        self._counts_cache = get_cache_manager().get_cache(
            "rle_counts", performance.cache_size_limit, performance.cache_memory_mb)

    def get_category_name(self, category_id: Any) -> str:
        return get_category_name(self.categories, category_id)

    def render_image(self,
                     image_id: Any,
                     image_shape: Optional[Tuple[int, int]] = None,
                     show_bbox: Optional[bool] = None,
                     show_mask: Optional[bool] = None,
                     reporter: Optional[ProgressReporter] = None) -> RenderResult:
        """
        Render all annotations of one image.

        Parameters
        ----------
        image_id : int or str
            COCO image id
        image_shape : tuple of int, optional
            ``(height, width)`` of the loaded base image; defaults to the
            size recorded in the image record
        show_bbox, show_mask : bool, optional
            Override the configured display modes
        reporter : ProgressReporter, optional
            Receives per-annotation progress

        Returns
        -------
        RenderResult
        """
        vis = self.config.visualization
        show_bbox = vis.show_bbox if show_bbox is None else show_bbox
        show_mask = vis.show_mask if show_mask is None else show_mask

        target_id = normalize_id(image_id)
        if image_shape is None:
            image_shape = self._recorded_shape(target_id)
        height, width = (int(v) for v in image_shape)

        annotations = get_image_annotations(self.coco_data, target_id)
        result = RenderResult(
            image_id=target_id,
            shape=(height, width),
            overlay=np.zeros((height, width, 4), dtype=np.uint8),
        )

        with ResourceTracker(f"render image {target_id}"):
            decoded = {}
            for index, ann in enumerate(annotations):
                if reporter:
                    reporter.update(index, len(annotations), f"Annotation {index + 1}/{len(annotations)}")
                ann_id = self._annotation_id(ann)
                color = get_color_for_id(ann_id)

                bbox = _valid_bbox(ann.get('bbox'))
                if show_bbox and bbox is not None:
                    x, y, w, h = bbox
                    result.boxes.append(BoxInstruction(
                        ann_id, x, y, w, h, color, vis.bbox_fill_alpha, vis.bbox_edge_width))

                rle = self._decode_annotation(ann, ann_id, result)
                decoded[index] = rle
                if show_mask and rle is not None:
                    self._draw_mask(rle, ann_id, color, result)

            for index, ann in enumerate(annotations):
                ann_id = self._annotation_id(ann)
                label = self._place_label(ann, ann_id, decoded.get(index))
                if label is not None:
                    result.labels.append(label)
                result.legend.append(LegendItem(
                    ann_id, ann.get('category_id'),
                    self.get_category_name(ann.get('category_id')),
                    get_color_for_id(ann_id)))

        logger.debug(f"Rendered image {target_id}: {result.mask_count} masks, "
                     f"{result.bbox_count} boxes, {len(result.errors)} errors")
        return result

    def _recorded_shape(self, image_id: int) -> Tuple[int, int]:
        record = get_image_record(self.coco_data, image_id)
        if record is None:
            raise CocoError(f"Image id {image_id} is not in the document",
                            f"Image #{image_id} not found.")
        try:
            return int(record['height']), int(record['width'])
        except (KeyError, TypeError, ValueError):
            raise CocoError(f"Image {image_id} has no usable width/height",
                            "Image size is missing from the annotations.")

    @staticmethod
    def _annotation_id(ann: Dict[str, Any]) -> int:
        try:
            return normalize_id(ann.get('id', 0))
        except InvalidId as e:
            logger.warning(f"Annotation has malformed id, coloring as 0: {e.message}")
            return 0

    def _decode_annotation(self, ann: Dict[str, Any], ann_id: int,
                           result: RenderResult) -> Optional[UncompressedRle]:
        try:
            segmentation = parse_segmentation(ann.get('segmentation'))
            if segmentation is None:
                return None
            if isinstance(segmentation, Polygon):
                logger.debug(f"Annotation {ann_id}: polygon segmentation is not rendered")
                return None
            return self._decoded_rle(segmentation)
        except CocoError as e:
            logger.warning(f"Annotation {ann_id}: {e.message}")
            result.errors.append(f"Annotation {ann_id}: {e.user_message}")
            return None

    def _decoded_rle(self, segmentation) -> UncompressedRle:
        if isinstance(segmentation, UncompressedRle):
            normalize_counts(segmentation)
            return segmentation

        enabled = self.config.performance.enable_caching
        key = (segmentation.counts, segmentation.size)
        cached = self._counts_cache.get(key) if enabled else None
        if cached is not None:
            return cached

        decoded = UncompressedRle(tuple(normalize_counts(segmentation)), segmentation.size)
        if enabled:
            self._counts_cache.put(key, decoded, len(decoded.counts) * 8 + len(segmentation.counts))
        return decoded

    def _draw_mask(self, rle: UncompressedRle, ann_id: int, color: RGB,
                   result: RenderResult) -> None:
        height, width = result.shape
        if rle.size != (height, width):
            mismatch = DimensionMismatch(rle.size, (height, width))
            logger.warning(f"Annotation {ann_id}: {mismatch.message}")
            result.errors.append(f"Annotation {ann_id}: {mismatch.user_message}")

        buffer = rasterize_rle(rle, color, self.config.visualization.mask_alpha,
                               max_pixels=self.config.performance.max_mask_pixels)
        if buffer is None:
            if rle.counts and all(rle.size):
                result.errors.append(f"Annotation {ann_id}: mask could not be rasterized")
            return

        rows = min(height, buffer.shape[0])
        cols = min(width, buffer.shape[1])
        region = result.overlay[:rows, :cols]
        result.overlay[:rows, :cols] = alpha_over(region, buffer[:rows, :cols])
        result.mask_count += 1

    def _place_label(self, ann: Dict[str, Any], ann_id: int,
                     rle: Optional[UncompressedRle]) -> Optional[LabelInstruction]:
        """Label above the box, below it near the top edge, else at the mask centroid."""
        text = self.get_category_name(ann.get('category_id'))
        offset = self.config.visualization.label_offset

        bbox = _valid_bbox(ann.get('bbox'))
        if bbox is not None:
            x, y, w, h = bbox
            label_y = y - offset
            if label_y < offset:
                label_y = y + h + offset
            return LabelInstruction(ann_id, x + w / 2, label_y, text, 'bbox')

        if rle is not None:
            centroid = compute_centroid(rle, max_pixels=self.config.performance.max_mask_pixels)
            if centroid is not None:
                return LabelInstruction(ann_id, centroid[0], centroid[1], text, 'centroid')
        return None

    def to_layer_data(self, result: RenderResult, name: str = "") -> List[LayerDataTuple]:
        """
        Convert a render result into napari layer data tuples.

        Returns
        -------
        list of LayerDataTuple
            An RGBA image layer for the masks, a shapes layer for bounding
            boxes and a points layer carrying the label text, each only when
            it has content
        """
        suffix = f" - {name}" if name else ""
        vis = self.config.visualization
        layers: List[LayerDataTuple] = []

        if result.mask_count:
            layers.append((result.overlay, {
                'name': f'COCO Masks{suffix}',
                'rgb': True,
                'blending': 'translucent',
            }, 'image'))

        if result.boxes:
            shapes = [np.array([
                [box.y, box.x],
                [box.y, box.x + box.width],
                [box.y + box.height, box.x + box.width],
                [box.y + box.height, box.x],
            ]) for box in result.boxes]
            layers.append((shapes, {
                'name': f'COCO Boxes{suffix}',
                'shape_type': ['rectangle'] * len(shapes),
                'face_color': [color_to_rgba(box.color, box.fill_alpha) for box in result.boxes],
                'edge_color': [color_to_rgba(box.color) for box in result.boxes],
                'edge_width': vis.bbox_edge_width,
                'properties': {'annotation_id': [box.annotation_id for box in result.boxes]},
            }, 'shapes'))

        if result.labels:
            points = np.array([[label.y, label.x] for label in result.labels])
            layers.append((points, {
                'name': f'COCO Labels{suffix}',
                'size': 1,
                'face_color': 'transparent',
                'border_color': 'transparent',
                'properties': {
                    'label': [label.text for label in result.labels],
                    'annotation_id': [label.annotation_id for label in result.labels],
                },
                'text': {
                    'string': '{label}',
                    'size': vis.label_font_size,
                    'color': 'white',
                    'anchor': 'center',
                },
            }, 'points'))

        return layers

    def clear_cache(self):
        """Drop cached decoded masks."""
        self._counts_cache.clear()
