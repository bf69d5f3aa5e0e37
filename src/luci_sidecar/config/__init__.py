"""Configuration (embedded defaults + YAML overlays, validated with pydantic)."""

from __future__ import annotations

from luci_sidecar.config.defaults import load_default_config_dict
from luci_sidecar.config.loader import LuciSidecarConfig, load_config, load_config_dicts

__all__ = ["LuciSidecarConfig", "load_config", "load_config_dicts", "load_default_config_dict"]
