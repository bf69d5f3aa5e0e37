"""
Bootstrap layer (config discovery for the application that embeds luci_sidecar).

The core objects never read the environment on their own; this module is the optional entry
point that does:

- embedded defaults (`luci_sidecar/assets/default.yaml`)
- explicit overlays, then overlays listed in `LUCI_SIDECAR_CONFIG_PATHS` (`,` / `;` separated)
- `LUCI_SIDECAR_ROOT_DIR` overrides `root_storage_dir`
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import yaml

from luci_sidecar.config.defaults import load_default_config_dict
from luci_sidecar.config.loader import LuciSidecarConfig, load_config_dicts

if TYPE_CHECKING:
    from luci_sidecar.registry import SessionRegistry

ENV_CONFIG_PATHS = "LUCI_SIDECAR_CONFIG_PATHS"
ENV_ROOT_DIR = "LUCI_SIDECAR_ROOT_DIR"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the stripped env value, or None when unset/blank."""

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """Split a `,`/`;` separated path list (blank entries dropped, order kept)."""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


def discover_overlay_paths(*, env: Optional[Mapping[str, str]] = None, base_dir: Optional[Path] = None) -> list[Path]:
    """
    Overlay paths from `LUCI_SIDECAR_CONFIG_PATHS` (relative entries resolve against base_dir/cwd).

    Duplicates are dropped; order is kept.
    """

    base = Path(base_dir or Path.cwd()).resolve()
    raw = _get_env_nonempty(ENV_CONFIG_PATHS, env=env) or ""
    seen: set[Path] = set()
    out: list[Path] = []
    for p in _split_paths(raw):
        pp = Path(p).expanduser()
        pp = (base / pp).resolve() if not pp.is_absolute() else pp.resolve()
        if pp in seen:
            continue
        seen.add(pp)
        out.append(pp)
    return out


def resolve_config(
    *,
    config_paths: Optional[list[Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    base_dir: Optional[Path] = None,
) -> LuciSidecarConfig:
    """
    Resolve the effective config: defaults < explicit overlays < env overlays < env root dir.

    Args:
    - config_paths: explicit YAML overlays (applied before env-discovered ones)
    - env: environment mapping (defaults to `os.environ`)
    - base_dir: anchor for relative overlay paths
    """

    overlays: list[Dict[str, Any]] = [load_default_config_dict()]
    for p in config_paths or []:
        overlays.append(_load_yaml_mapping(Path(p)))
    for p in discover_overlay_paths(env=env, base_dir=base_dir):
        overlays.append(_load_yaml_mapping(p))

    root_dir = _get_env_nonempty(ENV_ROOT_DIR, env=env)
    if root_dir is not None:
        overlays.append({"root_storage_dir": root_dir})
    return load_config_dicts(overlays)


def build_registry(
    *,
    config_paths: Optional[list[Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> "SessionRegistry":
    """Build a `SessionRegistry` from the resolved config."""

    from luci_sidecar.registry import SessionRegistry

    return SessionRegistry(config=resolve_config(config_paths=config_paths, env=env))
