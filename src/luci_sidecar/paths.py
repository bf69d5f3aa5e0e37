from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tempfile
from typing import Optional

from luci_sidecar.session_id import validate_session_id

GLOBAL_FILES = Path("global", "files")
INSTALL_WHL_NAME = "lucidoitdoit-0.1-py3-none-any.whl"
INSTALL_SETUP_NAME = "lucisetup"
SESSION_SOCKET_NAME = "lucidoitdoit.socket"
SESSION_PID_NAME = "lucidoitdoit.pid"
SHARED_ENV_NAME = "env"


def default_root_storage_dir() -> Path:
    """Default root storage directory: `<tempdir>/luci`."""

    return (Path(tempfile.gettempdir()) / "luci").resolve()


def resolve_root_storage_dir(root_storage_dir: Optional[Path | str]) -> Path:
    """Return an absolute root dir (None -> default)."""

    if root_storage_dir is None or str(root_storage_dir).strip() == "":
        return default_root_storage_dir()
    return Path(root_storage_dir).expanduser().resolve()


@dataclass(frozen=True)
class SessionPaths:
    """Per-session handshake locations (derived, never persisted)."""

    session_dir: Path
    socket_port_file: Path
    pid_file: Path


@dataclass(frozen=True)
class SharedCache:
    """Host-wide extraction target shared by all sessions under one root."""

    global_file_dir: Path
    archive_path: Path
    installer_script_path: Path
    env_dir: Path


def get_session_paths(
    *,
    root_storage_dir: Optional[Path | str],
    session_id: str,
    socket_file_name: str = SESSION_SOCKET_NAME,
    pid_file_name: str = SESSION_PID_NAME,
) -> SessionPaths:
    """
    Compute the handshake paths of one session (`<root>/<session_id>/...`).

    Args:
    - root_storage_dir: root storage dir (None -> `<tempdir>/luci`)
    - session_id: validated session id
    - socket_file_name / pid_file_name: names written by the sidecar
    """

    root = resolve_root_storage_dir(root_storage_dir)
    session_dir = root / validate_session_id(session_id)
    return SessionPaths(
        session_dir=session_dir,
        socket_port_file=session_dir / socket_file_name,
        pid_file=session_dir / pid_file_name,
    )


def get_shared_cache(
    *,
    root_storage_dir: Optional[Path | str],
    archive_name: str = INSTALL_WHL_NAME,
    installer_name: str = INSTALL_SETUP_NAME,
) -> SharedCache:
    """Compute the shared cache layout (`<root>/global/files/...`)."""

    global_file_dir = resolve_root_storage_dir(root_storage_dir) / GLOBAL_FILES
    return SharedCache(
        global_file_dir=global_file_dir,
        archive_path=global_file_dir / archive_name,
        installer_script_path=global_file_dir / installer_name,
        env_dir=global_file_dir / SHARED_ENV_NAME,
    )
