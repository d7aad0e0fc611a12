"""
Controller classes for COCO mask viewer functionality.

This module contains specialized controller classes that handle different
aspects of the viewer: the loaded document, image navigation and search,
render passes and the napari layers showing the newest render.
"""

from typing import Dict, List, Any, Optional, Tuple
from collections import Counter
from dataclasses import dataclass
import itertools
import logging
import threading
from pathlib import Path

from napari import Viewer

from ._config import get_effective_config
from ._tree import TreeNode, build_search_tree, count_files, find_node
from ._utils import (
    load_coco_file,
    load_coco_document,
    find_image_for_upload,
    get_category_info,
    get_category_name,
    get_image_annotations,
    get_image_record,
    normalize_id,
    CocoError,
)
from ._visualization import CocoMaskVisualizer, RenderResult

logger = logging.getLogger(__name__)


class CocoFileManager:
    """Manages COCO document loading and data access."""

    def __init__(self):
        """Initialize file manager with empty state."""
        self.coco_data: Optional[Dict[str, Any]] = None
        self.file_path: Optional[Path] = None

    def load_file(self, file_path: str) -> Dict[str, Any]:
        """Load COCO file; on failure the previously loaded document stays active."""
        data = load_coco_file(file_path)
        self.coco_data = data
        self.file_path = Path(file_path)
        logger.info(f"Loaded COCO file {self.file_path.name}: "
                    f"{len(data['images'])} images, {len(data['annotations'])} annotations")
        return self.coco_data

    def load_document(self, data: Any, source_name: Optional[str] = None) -> Dict[str, Any]:
        """Install an already parsed document after validating it."""
        self.coco_data = load_coco_document(data)
        self.file_path = Path(source_name) if source_name else None
        return self.coco_data

    def require_data(self) -> Dict[str, Any]:
        if self.coco_data is None:
            raise CocoError("No COCO document loaded",
                            "Please upload annotations (JSON) first.")
        return self.coco_data

    def match_upload(self, uploaded_name: str) -> Dict[str, Any]:
        """
        Resolve an uploaded image file to its image record.

        Raises
        ------
        CocoError
            If no document is loaded
        NoMatchError
            If no image record matches the file name
        """
        data = self.require_data()
        max_examples = get_effective_config().ui.max_example_names
        image = find_image_for_upload(data, uploaded_name, max_examples)
        logger.debug(f"Matched upload {uploaded_name!r} to image {image.get('id')}")
        return image

    def get_annotations(self, image_id: Any) -> List[Dict[str, Any]]:
        return get_image_annotations(self.require_data(), image_id)

    def get_file_info(self) -> Dict[str, Any]:
        if not self.coco_data:
            return {}

        return {
            'num_annotations': len(self.coco_data.get('annotations', [])),
            'num_images': len(self.coco_data.get('images', [])),
            'num_categories': len(self.coco_data.get('categories', [])),
            'file_name': self.file_path.name if self.file_path else 'Unknown'
        }

    def get_image_metadata(self, image_id: Any) -> Dict[str, Any]:
        """
        Summarize one image: size, id, annotation count and per-category counts.

        Returns
        -------
        dict
            Empty when the image id is not in the document
        """
        data = self.require_data()
        image = get_image_record(data, image_id)
        if image is None:
            return {}

        annotations = get_image_annotations(data, image['id'])
        categories = get_category_info(data)
        counts = Counter(ann.get('category_id') for ann in annotations)
        return {
            'id': image['id'],
            'file_name': image.get('file_name', ''),
            'width': image.get('width'),
            'height': image.get('height'),
            'num_annotations': len(annotations),
            'category_counts': {
                get_category_name(categories, cat_id): count
                for cat_id, count in counts.items()
            },
        }

    def is_loaded(self) -> bool:
        return self.coco_data is not None


class NavigationController:
    """Handles image hierarchy, search filtering and selection."""

    def __init__(self):
        """Initialize navigation controller with default state."""
        self.images: List[Dict[str, Any]] = []
        self.search_term: str = ""
        self.tree: TreeNode = build_search_tree([])
        self.selected_image: Optional[Dict[str, Any]] = None

    def initialize_images(self, coco_data: Dict[str, Any]):
        """Reset navigation for a newly loaded document."""
        self.images = list(coco_data.get('images', []))
        self.search_term = ""
        self.selected_image = None
        self.tree = build_search_tree(self.images)

    def set_search(self, search_term: str) -> TreeNode:
        """Rebuild the tree for a new search term."""
        self.search_term = search_term or ""
        self.tree = build_search_tree(self.images, self.search_term)
        return self.tree

    def visible_count(self) -> int:
        return count_files(self.tree)

    def select_path(self, path: str) -> Optional[Dict[str, Any]]:
        node = find_node(self.tree, path)
        if node is None or not node.is_file:
            return None
        self.selected_image = node.image
        return self.selected_image

    def select_image(self, image_id: Any) -> Optional[Dict[str, Any]]:
        self.selected_image = get_image_record({'images': self.images}, image_id)
        return self.selected_image

    def get_selected_image_id(self) -> Optional[int]:
        if self.selected_image is None:
            return None
        return normalize_id(self.selected_image['id'])


@dataclass(frozen=True)
class RenderRequest:
    generation: int
    image_id: Any
    image_shape: Optional[Tuple[int, int]] = None
    label: str = ""


class RenderController:
    """
    Hands out render requests and keeps only the newest completed result.

    Every call to ``submit`` supersedes all earlier requests; results for
    a superseded request are discarded when they arrive.
    """

    def __init__(self):
        self._generation = itertools.count(1)
        self._latest = 0
        self._accepted: Optional[Tuple[RenderRequest, RenderResult]] = None
        self._lock = threading.Lock()

    @property
    def latest_generation(self) -> int:
        return self._latest

    def submit(self, image_id: Any, image_shape: Optional[Tuple[int, int]] = None,
               label: str = "") -> RenderRequest:
        with self._lock:
            self._latest = next(self._generation)
            return RenderRequest(self._latest, image_id, image_shape, label)

    def is_current(self, request: RenderRequest) -> bool:
        return request.generation == self._latest

    def accept(self, request: RenderRequest, result: RenderResult) -> bool:
        """Store ``result`` if ``request`` is still the newest; return whether it was kept."""
        with self._lock:
            if request.generation != self._latest:
                logger.debug(f"Discarding stale render {request.generation} "
                             f"(latest is {self._latest})")
                return False
            self._accepted = (request, result)
            return True

    @property
    def current_result(self) -> Optional[RenderResult]:
        return self._accepted[1] if self._accepted else None

    def reset(self):
        with self._lock:
            self._latest = next(self._generation)
            self._accepted = None


class OverlayManager:
    """Manages napari layers showing the newest accepted render."""

    def __init__(self, viewer: Viewer):
        """Initialize overlay manager with napari viewer."""
        self.viewer = viewer
        self.visualizer: Optional[CocoMaskVisualizer] = None
        self.render_controller = RenderController()
        self.current_layers: list = []

    def initialize_visualizer(self, coco_data: Dict[str, Any]):
        """Initialize visualization components with COCO data."""
        self.cleanup()
        self.render_controller.reset()
        self.visualizer = CocoMaskVisualizer(coco_data)

    def request_render(self, image_id: Any, image_shape: Optional[Tuple[int, int]] = None,
                       label: str = "") -> RenderRequest:
        return self.render_controller.submit(image_id, image_shape, label)

    def run(self, request: RenderRequest) -> Optional[RenderResult]:
        """Render ``request`` and show it unless a newer request was submitted meanwhile."""
        if not self.visualizer:
            return None
        if not self.render_controller.is_current(request):
            return None

        result = self.visualizer.render_image(request.image_id, request.image_shape)
        if not self.render_controller.accept(request, result):
            return None

        self._show(result, request.label)
        return result

    def refresh(self, image_id: Any, image_shape: Optional[Tuple[int, int]] = None,
                label: str = "") -> Optional[RenderResult]:
        return self.run(self.request_render(image_id, image_shape, label))

    def _show(self, result: RenderResult, label: str):
        self._remove_current_layers()
        for data, kwargs, layer_type in self.visualizer.to_layer_data(result, label):
            add_layer = getattr(self.viewer, f"add_{layer_type}")
            self.current_layers.append(add_layer(data, **kwargs))

    def _remove_current_layers(self):
        for layer in self.current_layers:
            if layer in self.viewer.layers:
                self.viewer.layers.remove(layer)
        self.current_layers = []

    def cleanup(self):
        """Remove overlay layers from the viewer."""
        self._remove_current_layers()
