"""
Performance tests for napari-cocomask plugin.

Tests decoding, rasterization and centroid times on large synthetic masks
to ensure the plugin can handle real-world medical annotation files.
"""

import time

import numpy as np
import pytest

from napari_cocomask._config import CocoMaskConfig
from napari_cocomask._rle import (
    encode_rle_counts,
    decode_rle_string,
    mask_to_counts,
    rasterize_rle,
    compute_centroid,
)
from napari_cocomask._visualization import CocoMaskVisualizer


SIZE = 1024


@pytest.fixture(scope="module")
def large_rle():
    """A 1024x1024 disc with a noisy border, compressed."""
    yy, xx = np.mgrid[:SIZE, :SIZE]
    rng = np.random.default_rng(0)
    radius = 300 + rng.integers(0, 20, size=(SIZE, SIZE))
    mask = (yy - 500) ** 2 + (xx - 480) ** 2 < radius ** 2
    return {'counts': encode_rle_counts(mask_to_counts(mask)), 'size': [SIZE, SIZE]}


def best_of(func, runs=3):
    times = []
    for _ in range(runs):
        start_time = time.perf_counter()
        func()
        times.append(time.perf_counter() - start_time)
    return min(times)


class TestDecodingPerformance:
    """Test decoding throughput on a large mask."""

    def test_decode_speed(self, large_rle):
        elapsed = best_of(lambda: decode_rle_string(large_rle['counts']))
        print(f"Decoded {len(large_rle['counts'])} chars in {elapsed:.3f}s")
        assert elapsed < 2.0, f"Decoding too slow: {elapsed:.3f}s"

    def test_rasterize_speed(self, large_rle):
        elapsed = best_of(lambda: rasterize_rle(large_rle, (255, 0, 0)))
        print(f"Rasterized {SIZE}x{SIZE} mask in {elapsed:.3f}s")
        assert elapsed < 2.0, f"Rasterization too slow: {elapsed:.3f}s"

    def test_centroid_speed(self, large_rle):
        elapsed = best_of(lambda: compute_centroid(large_rle))
        print(f"Centroid in {elapsed:.3f}s")
        assert elapsed < 2.0, f"Centroid too slow: {elapsed:.3f}s"

    def test_centroid_is_near_disc_center(self, large_rle):
        x, y = compute_centroid(large_rle)
        assert x == pytest.approx(480, abs=2)
        assert y == pytest.approx(500, abs=2)


class TestRenderPerformance:
    """Test rendering of an image with many annotations."""

    def test_many_annotations(self, large_rle):
        coco_data = {
            'images': [{'id': 1, 'file_name': 'big.png', 'width': SIZE, 'height': SIZE}],
            'categories': [{'id': 1, 'name': 'lesion'}],
            'annotations': [
                {'id': i, 'image_id': 1, 'category_id': 1, 'segmentation': large_rle,
                 'bbox': [180, 200, 600, 600]}
                for i in range(1, 21)
            ],
        }
        visualizer = CocoMaskVisualizer(coco_data, config=CocoMaskConfig())
        visualizer.clear_cache()

        start_time = time.perf_counter()
        result = visualizer.render_image(1)
        elapsed = time.perf_counter() - start_time

        print(f"Rendered {result.mask_count} masks in {elapsed:.3f}s")
        assert result.mask_count == 20
        assert result.errors == []
        assert elapsed < 20.0, f"Rendering too slow: {elapsed:.3f}s"
