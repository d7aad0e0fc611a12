"""
Tests for COCO controller classes.

This module tests the individual controller classes that handle
document loading, navigation, render ordering and napari layers.
"""

import pytest
import json
import tempfile
from pathlib import Path
from unittest.mock import Mock

from napari_cocomask._controllers import (
    CocoFileManager, NavigationController, RenderController, OverlayManager
)
from napari_cocomask._utils import CocoError, MalformedDocument, NoMatchError
from napari_cocomask._visualization import RenderResult


@pytest.fixture
def sample_coco_data():
    """Sample COCO data for testing."""
    return {
        'images': [
            {'id': 1, 'file_name': 'CT/brain/scan_001.png', 'width': 3, 'height': 2},
            {'id': 2, 'file_name': 'CT/brain/scan_002.png', 'width': 3, 'height': 2},
            {'id': 12, 'file_name': 'MR/knee/slice_010.png', 'width': 3, 'height': 2},
        ],
        'categories': [
            {'id': 1, 'name': 'tumor'},
            {'id': 2, 'name': 'edema'}
        ],
        'annotations': [
            {
                'id': 1, 'image_id': 1, 'category_id': 1,
                'segmentation': {'counts': [1, 2, 3], 'size': [2, 3]},
                'bbox': [0, 0, 2, 1], 'area': 2
            },
            {
                'id': 2, 'image_id': 1, 'category_id': 1,
                'segmentation': {'counts': [4, 2], 'size': [2, 3]},
                'bbox': [2, 0, 1, 2], 'area': 2
            },
            {
                'id': 3, 'image_id': '1', 'category_id': 2,
                'bbox': [0, 0, 1, 1], 'area': 1
            },
            {
                'id': 4, 'image_id': 2, 'category_id': 2,
                'segmentation': {'counts': [0, 6], 'size': [2, 3]},
                'area': 6
            }
        ]
    }


@pytest.fixture
def temp_coco_file(sample_coco_data):
    """Create temporary COCO file for testing."""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        json.dump(sample_coco_data, f)
        return f.name


@pytest.fixture
def mock_viewer():
    """Viewer whose add_* methods register layers in a plain list."""
    viewer = Mock()
    viewer.layers = []

    def adder(layer_type):
        def add(data, **kwargs):
            layer = Mock(name=f"{layer_type}:{kwargs.get('name')}")
            viewer.layers.append(layer)
            return layer
        return add

    viewer.add_image.side_effect = adder('image')
    viewer.add_shapes.side_effect = adder('shapes')
    viewer.add_points.side_effect = adder('points')
    return viewer


class TestCocoFileManager:
    """Test cases for CocoFileManager."""

    def test_initialization(self):
        manager = CocoFileManager()
        assert manager.coco_data is None
        assert manager.file_path is None
        assert not manager.is_loaded()

    def test_successful_file_loading(self, temp_coco_file, sample_coco_data):
        manager = CocoFileManager()
        data = manager.load_file(temp_coco_file)

        assert data == sample_coco_data
        assert manager.is_loaded()

        info = manager.get_file_info()
        assert info['num_annotations'] == 4
        assert info['num_images'] == 3
        assert info['num_categories'] == 2
        assert info['file_name'] == Path(temp_coco_file).name

        Path(temp_coco_file).unlink()

    def test_failed_load_keeps_previous_document(self, sample_coco_data, tmp_path):
        manager = CocoFileManager()
        manager.load_document(sample_coco_data, "first.json")

        broken = tmp_path / "broken.json"
        broken.write_text(json.dumps({'images': []}))
        with pytest.raises(MalformedDocument):
            manager.load_file(str(broken))
        with pytest.raises(MalformedDocument):
            manager.load_document({'images': [], 'categories': []})

        assert manager.coco_data is sample_coco_data
        assert manager.get_file_info()['file_name'] == 'first.json'

    def test_missing_file(self):
        manager = CocoFileManager()
        with pytest.raises(CocoError):
            manager.load_file('nonexistent_file.json')
        assert not manager.is_loaded()

    def test_file_info_when_no_data_loaded(self):
        assert CocoFileManager().get_file_info() == {}

    def test_upload_requires_document(self):
        manager = CocoFileManager()
        with pytest.raises(CocoError) as exc_info:
            manager.match_upload("scan_001.png")
        assert exc_info.value.user_message == "Please upload annotations (JSON) first."

    def test_match_upload(self, sample_coco_data):
        manager = CocoFileManager()
        manager.load_document(sample_coco_data)

        assert manager.match_upload("SCAN_002.jpg")['id'] == 2
        with pytest.raises(NoMatchError):
            manager.match_upload("scan_404.png")

    def test_get_annotations(self, sample_coco_data):
        manager = CocoFileManager()
        manager.load_document(sample_coco_data)
        assert [ann['id'] for ann in manager.get_annotations("1")] == [1, 2, 3]

    def test_image_metadata(self, sample_coco_data):
        manager = CocoFileManager()
        manager.load_document(sample_coco_data)

        metadata = manager.get_image_metadata(1)
        assert metadata['file_name'] == 'CT/brain/scan_001.png'
        assert (metadata['width'], metadata['height']) == (3, 2)
        assert metadata['num_annotations'] == 3
        assert metadata['category_counts'] == {'tumor': 2, 'edema': 1}

        assert manager.get_image_metadata(99) == {}


class TestNavigationController:
    """Test cases for NavigationController."""

    def test_initialization(self):
        controller = NavigationController()
        assert controller.images == []
        assert controller.visible_count() == 0
        assert controller.get_selected_image_id() is None

    def test_image_initialization(self, sample_coco_data):
        controller = NavigationController()
        controller.initialize_images(sample_coco_data)

        assert controller.visible_count() == 3
        assert sorted(controller.tree.children) == ['CT', 'MR']

    def test_search(self, sample_coco_data):
        controller = NavigationController()
        controller.initialize_images(sample_coco_data)

        controller.set_search('KNEE')
        assert controller.visible_count() == 1
        assert list(controller.tree.children) == ['MR']

        # Matches id 12 by its decimal text
        controller.set_search('12')
        assert controller.visible_count() == 1

        controller.set_search('')
        assert controller.visible_count() == 3

    def test_select_path(self, sample_coco_data):
        controller = NavigationController()
        controller.initialize_images(sample_coco_data)

        image = controller.select_path('CT/brain/scan_002.png')
        assert image['id'] == 2
        assert controller.get_selected_image_id() == 2

        # Folders cannot be selected
        assert controller.select_path('CT/brain') is None
        assert controller.get_selected_image_id() == 2

    def test_select_image_by_id(self, sample_coco_data):
        controller = NavigationController()
        controller.initialize_images(sample_coco_data)

        assert controller.select_image("12")['file_name'] == 'MR/knee/slice_010.png'
        assert controller.select_image(404) is None

    def test_new_document_resets_state(self, sample_coco_data):
        controller = NavigationController()
        controller.initialize_images(sample_coco_data)
        controller.set_search('knee')
        controller.select_image(12)

        controller.initialize_images({'images': [{'id': 7, 'file_name': 'a.png'}]})
        assert controller.search_term == ""
        assert controller.selected_image is None
        assert controller.visible_count() == 1


class TestRenderController:
    """Test cases for RenderController."""

    def result(self, image_id):
        return RenderResult(image_id=image_id, shape=(1, 1), overlay=None)

    def test_generations_increase(self):
        controller = RenderController()
        first = controller.submit(1)
        second = controller.submit(2)
        assert second.generation > first.generation
        assert controller.latest_generation == second.generation

    def test_stale_result_is_discarded(self):
        controller = RenderController()
        first = controller.submit(1)
        second = controller.submit(2)

        assert not controller.is_current(first)
        assert controller.accept(second, self.result(2))
        # The older render finishes later and must not replace the newer one
        assert not controller.accept(first, self.result(1))
        assert controller.current_result.image_id == 2

    def test_reset_invalidates_pending(self):
        controller = RenderController()
        request = controller.submit(1)
        controller.reset()

        assert not controller.accept(request, self.result(1))
        assert controller.current_result is None


class TestOverlayManager:
    """Test cases for OverlayManager."""

    def test_initialization(self):
        mock_viewer = Mock()
        manager = OverlayManager(mock_viewer)

        assert manager.viewer is mock_viewer
        assert manager.visualizer is None
        assert manager.current_layers == []

    def test_run_without_document(self, mock_viewer):
        manager = OverlayManager(mock_viewer)
        assert manager.refresh(1) is None
        mock_viewer.add_image.assert_not_called()

    def test_refresh_adds_layers(self, mock_viewer, sample_coco_data):
        manager = OverlayManager(mock_viewer)
        manager.initialize_visualizer(sample_coco_data)

        result = manager.refresh(1, label='scan_001.png')

        assert result.mask_count == 2
        assert result.bbox_count == 3
        assert len(manager.current_layers) == 3
        mock_viewer.add_image.assert_called_once()
        assert mock_viewer.add_image.call_args.kwargs['name'] == 'COCO Masks - scan_001.png'

    def test_refresh_replaces_previous_layers(self, mock_viewer, sample_coco_data):
        manager = OverlayManager(mock_viewer)
        manager.initialize_visualizer(sample_coco_data)

        manager.refresh(1)
        first_layers = list(manager.current_layers)
        manager.refresh(2)

        assert all(layer not in mock_viewer.layers for layer in first_layers)
        # Image 2 only has a mask and a centroid label
        assert len(mock_viewer.layers) == 2

    def test_stale_request_is_not_shown(self, mock_viewer, sample_coco_data):
        manager = OverlayManager(mock_viewer)
        manager.initialize_visualizer(sample_coco_data)

        stale = manager.request_render(1)
        current = manager.request_render(2)

        assert manager.run(stale) is None
        mock_viewer.add_image.assert_not_called()

        assert manager.run(current).image_id == 2
        assert manager.render_controller.current_result.image_id == 2

    def test_cleanup(self, mock_viewer, sample_coco_data):
        manager = OverlayManager(mock_viewer)
        manager.initialize_visualizer(sample_coco_data)
        manager.refresh(1)

        manager.cleanup()
        assert manager.current_layers == []
        assert mock_viewer.layers == []
