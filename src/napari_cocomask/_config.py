"""
Configuration management for napari-cocomask plugin.

This module handles rendering defaults, user preferences read from the
user config directory and environment variable overrides.
"""

from typing import Dict, Any, Optional
from pathlib import Path
import json
import os
import logging
from dataclasses import dataclass, asdict
import appdirs

logger = logging.getLogger(__name__)


@dataclass
class VisualizationConfig:
    """Configuration for overlay rendering."""
    mask_alpha: int = 210  # 0-255, applied to every foreground pixel
    bbox_fill_alpha: float = 0.25
    bbox_edge_width: float = 3.0
    label_offset: float = 15.0
    label_font_size: int = 14
    show_bbox: bool = True
    show_mask: bool = True


@dataclass
class UIConfig:
    """Configuration for user facing feedback."""
    max_example_names: int = 3


@dataclass
class PerformanceConfig:
    """Configuration for performance settings."""
    enable_caching: bool = True
    cache_size_limit: int = 256  # Number of decoded masks kept
    cache_memory_mb: int = 256
    max_mask_pixels: int = 64 * 1024 * 1024


@dataclass
class CocoMaskConfig:
    """Main configuration class for napari-cocomask plugin."""
    visualization: VisualizationConfig = None
    ui: UIConfig = None
    performance: PerformanceConfig = None

    def __post_init__(self):
        if self.visualization is None:
            self.visualization = VisualizationConfig()
        if self.ui is None:
            self.ui = UIConfig()
        if self.performance is None:
            self.performance = PerformanceConfig()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CocoMaskConfig':
        return cls(
            visualization=VisualizationConfig(**data.get('visualization', {})),
            ui=UIConfig(**data.get('ui', {})),
            performance=PerformanceConfig(**data.get('performance', {}))
        )


class ConfigManager:
    """Loads plugin configuration from the user config directory."""

    def __init__(self, app_name: str = "napari-cocomask", config_dir: Optional[Path] = None):
        self.app_name = app_name
        self._config_dir = Path(config_dir) if config_dir else Path(appdirs.user_config_dir(app_name))
        self._config_file = self._config_dir / "config.json"
        self._config: Optional[CocoMaskConfig] = None

    @property
    def config(self) -> CocoMaskConfig:
        if self._config is None:
            self._config = self.load_config()
        return self._config

    def load_config(self) -> CocoMaskConfig:
        if self._config_file.exists():
            try:
                with open(self._config_file, 'r') as f:
                    data = json.load(f)
                return CocoMaskConfig.from_dict(data)
            except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"Error loading config, using defaults: {e}")

        return CocoMaskConfig()

    def reload(self) -> CocoMaskConfig:
        self._config = None
        return self.config

    def get_config_path(self) -> Path:
        return self._config_file


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_config() -> CocoMaskConfig:
    return get_config_manager().config


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}")
        return None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}")
        return None


def apply_env_overrides(config: CocoMaskConfig) -> CocoMaskConfig:
    """Apply environment variable overrides to configuration."""
    mask_alpha = _env_int('NAPARI_COCOMASK_MASK_ALPHA')
    if mask_alpha is not None:
        config.visualization.mask_alpha = min(255, max(0, mask_alpha))

    edge_width = _env_float('NAPARI_COCOMASK_EDGE_WIDTH')
    if edge_width is not None:
        config.visualization.bbox_edge_width = edge_width

    if os.getenv('NAPARI_COCOMASK_HIDE_BBOX'):
        config.visualization.show_bbox = os.getenv('NAPARI_COCOMASK_HIDE_BBOX').lower() != 'true'

    if os.getenv('NAPARI_COCOMASK_DISABLE_CACHE'):
        config.performance.enable_caching = os.getenv('NAPARI_COCOMASK_DISABLE_CACHE').lower() != 'true'

    max_pixels = _env_int('NAPARI_COCOMASK_MAX_MASK_PIXELS')
    if max_pixels is not None:
        config.performance.max_mask_pixels = max_pixels

    examples = _env_int('NAPARI_COCOMASK_MAX_EXAMPLES')
    if examples is not None:
        config.ui.max_example_names = max(0, examples)

    return config


def get_effective_config() -> CocoMaskConfig:
    """Loaded config with environment overrides applied to a fresh copy."""
    config = CocoMaskConfig.from_dict(get_config().to_dict())
    return apply_env_overrides(config)
