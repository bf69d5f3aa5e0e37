"""
Embedded default config loader.

The defaults ship with the package (`importlib.resources`), so the library runs without any
repo-relative path.
"""

from __future__ import annotations

from importlib.resources import files
from typing import Any, Dict

import yaml


def load_default_config_dict() -> Dict[str, Any]:
    """
    Read `luci_sidecar/assets/default.yaml` and return it as a dict.

    Raises:
    - RuntimeError: the asset is missing or its root is not a mapping
    """

    try:
        text = files("luci_sidecar.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    except (OSError, ModuleNotFoundError) as exc:  # pragma: no cover
        raise RuntimeError("failed to load embedded default config (luci_sidecar/assets/default.yaml)") from exc

    obj = yaml.safe_load(text) or {}
    if not isinstance(obj, dict):
        raise RuntimeError("embedded default config root must be a mapping(dict)")
    return obj
