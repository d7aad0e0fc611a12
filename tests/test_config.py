"""
Tests for configuration loading and environment overrides.
"""

import json
import logging

from napari_cocomask._config import (
    CocoMaskConfig,
    ConfigManager,
    apply_env_overrides,
    get_config,
    get_effective_config,
)
from napari_cocomask._rle import compute_centroid, rasterize_rle


class TestConfig:
    """Test cases for configuration loading and overrides."""

    def test_defaults(self):
        config = CocoMaskConfig()
        assert config.visualization.mask_alpha == 210
        assert config.visualization.bbox_fill_alpha == 0.25
        assert config.visualization.label_offset == 15.0
        assert config.ui.max_example_names == 3
        assert config.performance.max_mask_pixels == 64 * 1024 * 1024

    def test_dict_round_trip(self):
        config = CocoMaskConfig()
        config.visualization.mask_alpha = 128
        assert CocoMaskConfig.from_dict(config.to_dict()) == config

    def test_missing_file_gives_defaults(self, tmp_path):
        manager = ConfigManager(config_dir=tmp_path)
        assert manager.config == CocoMaskConfig()
        assert manager.get_config_path() == tmp_path / "config.json"

    def test_reads_user_file(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({
            'visualization': {'mask_alpha': 100, 'show_bbox': False},
            'ui': {'max_example_names': 5},
        }))
        config = ConfigManager(config_dir=tmp_path).config

        assert config.visualization.mask_alpha == 100
        assert config.visualization.show_bbox is False
        assert config.ui.max_example_names == 5
        assert config.performance.enable_caching is True

    def test_broken_file_falls_back(self, tmp_path, caplog):
        (tmp_path / "config.json").write_text("{ nope")
        with caplog.at_level(logging.WARNING):
            config = ConfigManager(config_dir=tmp_path).config
        assert config == CocoMaskConfig()
        assert "Error loading config" in caplog.text

    def test_unknown_keys_fall_back(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({'ui': {'theme': 'dark'}}))
        assert ConfigManager(config_dir=tmp_path).config == CocoMaskConfig()

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv('NAPARI_COCOMASK_MASK_ALPHA', '999')
        monkeypatch.setenv('NAPARI_COCOMASK_HIDE_BBOX', 'true')
        monkeypatch.setenv('NAPARI_COCOMASK_MAX_EXAMPLES', '1')
        monkeypatch.setenv('NAPARI_COCOMASK_EDGE_WIDTH', 'wide')

        config = apply_env_overrides(CocoMaskConfig())
        assert config.visualization.mask_alpha == 255
        assert config.visualization.show_bbox is False
        assert config.visualization.bbox_edge_width == 3.0
        assert config.ui.max_example_names == 1


    def test_overrides_are_not_kept_after_unset(self, monkeypatch):
        rle = {'counts': [1, 2, 3], 'size': [2, 3]}
        monkeypatch.setenv('NAPARI_COCOMASK_MAX_MASK_PIXELS', '2')
        monkeypatch.setenv('NAPARI_COCOMASK_HIDE_BBOX', 'true')

        assert get_effective_config().performance.max_mask_pixels == 2
        assert get_effective_config().visualization.show_bbox is False
        assert compute_centroid(rle) is None

        monkeypatch.delenv('NAPARI_COCOMASK_MAX_MASK_PIXELS')
        monkeypatch.delenv('NAPARI_COCOMASK_HIDE_BBOX')

        effective = get_effective_config()
        assert effective.performance.max_mask_pixels == get_config().performance.max_mask_pixels
        assert effective.visualization.show_bbox == get_config().visualization.show_bbox
        assert rasterize_rle(rle, (255, 0, 0)) is not None
        assert compute_centroid(rle) == (0.5, 0.5)

    def test_effective_config_is_a_copy(self):
        first = get_effective_config()
        first.performance.max_mask_pixels = 1
        assert get_effective_config().performance.max_mask_pixels != 1
        assert get_config().performance.max_mask_pixels != 1
