#!/usr/bin/env python3
"""
Basic usage example for napari-cocomask plugin.

This script builds a small synthetic COCO document with RLE masks and
shows the reader hook, the image hierarchy with search, upload matching
and the controller-driven render flow.
"""

import json
import sys
import tempfile

import napari
import numpy as np

from napari_cocomask import coco_reader, encode_rle_counts
from napari_cocomask._controllers import CocoFileManager, NavigationController, OverlayManager
from napari_cocomask._rle import mask_to_counts
from napari_cocomask._tree import flatten_tree
from napari_cocomask._utils import NoMatchError


def make_sample_document(height=128, width=160):
    """Two scans with a disc and a box mask each."""
    yy, xx = np.mgrid[:height, :width]
    disc = (yy - 60) ** 2 + (xx - 70) ** 2 < 30 ** 2
    box = np.zeros((height, width), dtype=bool)
    box[20:50, 100:140] = True

    def rle(mask):
        return {'counts': encode_rle_counts(mask_to_counts(mask)), 'size': [height, width]}

    return {
        'images': [
            {'id': 1, 'file_name': 'CT/brain/scan_001.png', 'width': width, 'height': height},
            {'id': 2, 'file_name': 'MR/knee/slice_010.png', 'width': width, 'height': height},
        ],
        'categories': [{'id': 1, 'name': 'tumor'}, {'id': 2, 'name': 'edema'}],
        'annotations': [
            {'id': 1, 'image_id': 1, 'category_id': 1, 'segmentation': rle(disc),
             'bbox': [40, 30, 60, 60]},
            {'id': 2, 'image_id': 1, 'category_id': 2, 'segmentation': rle(box)},
            {'id': 3, 'image_id': 2, 'category_id': 1, 'segmentation': rle(disc | box)},
        ],
    }


def write_sample_document():
    with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        json.dump(make_sample_document(), f)
        return f.name


def example_1_direct_reader():
    """Example 1: Direct use of coco_reader function."""
    print("Example 1: Direct reader usage")
    print("-" * 40)

    path = write_sample_document()
    layers = coco_reader(path)
    if not layers:
        print("❌ Failed to load COCO file")
        return

    print(f"✅ Loaded {len(layers)} layer(s)")
    for data, metadata, layer_type in layers:
        print(f"   - {layer_type}: {metadata['name']}")

    viewer = napari.Viewer()
    for data, metadata, layer_type in layers:
        getattr(viewer, f"add_{layer_type}")(data, **metadata)
    napari.run()


def example_2_hierarchy_and_matching():
    """Example 2: Image hierarchy, search and upload matching without GUI."""
    print("Example 2: Hierarchy and matching")
    print("-" * 40)

    file_manager = CocoFileManager()
    data = file_manager.load_file(write_sample_document())

    navigation = NavigationController()
    navigation.initialize_images(data)
    for depth, node in flatten_tree(navigation.tree):
        print(f"{'  ' * depth}{'📁' if node.is_folder else '🖼️ '} {node.name}")

    navigation.set_search('knee')
    print(f"\n🔍 'knee' matches {navigation.visible_count()} image(s)")

    for upload in ("SCAN_001.tif", "scan_999.png"):
        try:
            image = file_manager.match_upload(upload)
            print(f"✅ {upload} -> image {image['id']}: {file_manager.get_image_metadata(image['id'])}")
        except NoMatchError as e:
            print(f"❌ {e.user_message}")


def example_3_overlay_manager():
    """Example 3: Render through the overlay manager."""
    print("Example 3: Overlay manager")
    print("-" * 40)

    file_manager = CocoFileManager()
    data = file_manager.load_file(write_sample_document())

    viewer = napari.Viewer()
    overlays = OverlayManager(viewer)
    overlays.initialize_visualizer(data)

    result = overlays.refresh(1, label='scan_001.png')
    print(f"✅ {result.mask_count} masks, {result.bbox_count} boxes")
    for item in result.legend:
        print(f"   {item.hex_color} {item.text}")
    napari.run()


def main():
    """Main function to run examples."""
    print("napari-cocomask Usage Examples")
    print("=" * 50)

    examples = [
        ("1", "Direct reader usage", example_1_direct_reader),
        ("2", "Hierarchy and matching", example_2_hierarchy_and_matching),
        ("3", "Overlay manager", example_3_overlay_manager),
    ]

    print("\nAvailable examples:")
    for num, desc, _ in examples:
        print(f"  {num}. {desc}")

    choice = sys.argv[1] if len(sys.argv) > 1 else input("\nSelect example (1-3): ").strip()
    for num, desc, func in examples:
        if num == choice:
            try:
                func()
            except KeyboardInterrupt:
                print("\n⏹️  Example interrupted by user")
            return

    print("Invalid choice.")


if __name__ == "__main__":
    main()
