"""
Configuration loader (YAML overlays + pydantic validation).

- multiple YAML mappings are deep-merged in order (later overlays win)
- unknown fields are rejected (`extra="forbid"`) so typos never get silently ignored
- embedded defaults live in `luci_sidecar/assets/default.yaml` (see `luci_sidecar.config.defaults`)
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from luci_sidecar.session_id import SESSION_ID_ALPHABET


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    Deep-merge `overlay` into `base` (in place).

    Rules:
    - dict + dict: recursive merge
    - anything else (lists included): overlay replaces
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


def _validate_file_name(value: str) -> str:
    if not value or "/" in value or "\\" in value or value in {".", ".."}:
        raise ValueError(f"must be a plain file name: {value!r}")
    return value


class LuciResourceConfig(BaseModel):
    """Where the embedded installer archive lives and what to extract from it."""

    model_config = ConfigDict(extra="forbid")

    package: str = Field(default="luci_sidecar.assets", min_length=1)
    archive_name: str = "lucidoitdoit-0.1-py3-none-any.whl"
    installer_name: str = "lucisetup"

    @field_validator("archive_name", "installer_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_file_name(value)


class LuciSessionConfig(BaseModel):
    """Session id shape and handshake file names."""

    model_config = ConfigDict(extra="forbid")

    socket_file_name: str = "lucidoitdoit.socket"
    pid_file_name: str = "lucidoitdoit.pid"
    id_prefix: str = "luci"
    id_length: StrictInt = Field(default=16, ge=4, le=64)

    @field_validator("socket_file_name", "pid_file_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_file_name(value)

    @field_validator("id_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        """The prefix ends up in a directory name: keep it to the id alphabet."""

        if any(ch not in SESSION_ID_ALPHABET and ch != "u" for ch in value):
            raise ValueError("session.id_prefix must only contain [a-z0-9]")
        return value


class LuciHandshakeConfig(BaseModel):
    """Bounded poll loop parameters."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: StrictInt = Field(default=10, ge=1)
    interval_ms: StrictInt = Field(default=1000, ge=0)


class LuciSpawnConfig(BaseModel):
    """Installer process spawn policy."""

    model_config = ConfigDict(extra="forbid")

    stdio: Literal["inherit", "devnull", "files"] = Field(default="inherit")
    extra_env: Dict[str, str] = Field(default_factory=dict)


class LuciConnectionConfig(BaseModel):
    """Client socket parameters."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="localhost", min_length=1)
    connect_timeout_sec: float = Field(default=5.0, gt=0.0)


class LuciShutdownConfig(BaseModel):
    """
    Stop semantics.

    `kill_reported_pid` also sends SIGTERM to the pid the sidecar wrote into its pid file
    (the long-lived server, which outlives the installer process).
    """

    model_config = ConfigDict(extra="forbid")

    terminate_timeout_sec: float = Field(default=5.0, gt=0.0)
    kill_reported_pid: bool = False


class LuciSidecarConfig(BaseModel):
    """Configuration root."""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    # None -> `<tempdir>/luci`
    root_storage_dir: Optional[str] = None
    resource: LuciResourceConfig = Field(default_factory=LuciResourceConfig)
    session: LuciSessionConfig = Field(default_factory=LuciSessionConfig)
    handshake: LuciHandshakeConfig = Field(default_factory=LuciHandshakeConfig)
    spawn: LuciSpawnConfig = Field(default_factory=LuciSpawnConfig)
    connection: LuciConnectionConfig = Field(default_factory=LuciConnectionConfig)
    shutdown: LuciShutdownConfig = Field(default_factory=LuciShutdownConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """Read a YAML file as a dict; an empty file is an empty dict."""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config file root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> LuciSidecarConfig:
    """
    Merge config dicts in order (later wins) and validate them.

    Args:
    - config_dicts: overlays; empty/None entries are skipped
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return LuciSidecarConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> LuciSidecarConfig:
    """Load, merge and validate YAML config files (later files win)."""

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
