"""Configuration models and loading."""

from paneherd.config.loader import load_config, load_config_file
from paneherd.config.schema import DYNAMIC_LAYOUT, PaneherdConfig, ReaperConfig, TmuxConfig

__all__ = [
    "DYNAMIC_LAYOUT",
    "PaneherdConfig",
    "ReaperConfig",
    "TmuxConfig",
    "load_config",
    "load_config_file",
]
