"""
luci_sidecar: lifecycle manager for the Luci python sidecar.

Typical use:

    registry = SessionRegistry()
    manager = registry.get_or_create(registry.new_session_id())
    manager.start_server()          # extract -> spawn -> handshake
    sock = manager.get_connection() # memoized client socket
    ...
    registry.close_all()
"""

from __future__ import annotations

from luci_sidecar.config.loader import LuciSidecarConfig, load_config, load_config_dicts
from luci_sidecar.connection import ConnectionFactory
from luci_sidecar.errors import (
    ConnectionFailure,
    ExtractionFailure,
    HandshakeCancelled,
    HandshakeTimeout,
    InvalidHandshake,
    LuciSidecarError,
    ProcessDiedDuringHandshake,
    SessionStateError,
    SidecarError,
    SidecarErrorKind,
    SpawnFailure,
)
from luci_sidecar.extractor import ResourceExtractor
from luci_sidecar.handshake import HandshakeResult, HandshakeWaiter
from luci_sidecar.manager import SessionManager, SessionState
from luci_sidecar.paths import SessionPaths, SharedCache, get_session_paths, get_shared_cache
from luci_sidecar.registry import SessionRegistry
from luci_sidecar.session_id import create_session_id, validate_session_id
from luci_sidecar.supervisor import ProcessHandle, ProcessSupervisor

__all__ = [
    "ConnectionFactory",
    "ConnectionFailure",
    "ExtractionFailure",
    "HandshakeCancelled",
    "HandshakeResult",
    "HandshakeTimeout",
    "HandshakeWaiter",
    "InvalidHandshake",
    "LuciSidecarConfig",
    "LuciSidecarError",
    "ProcessDiedDuringHandshake",
    "ProcessHandle",
    "ProcessSupervisor",
    "ResourceExtractor",
    "SessionManager",
    "SessionPaths",
    "SessionRegistry",
    "SessionState",
    "SessionStateError",
    "SharedCache",
    "SidecarError",
    "SidecarErrorKind",
    "SpawnFailure",
    "__version__",
    "create_session_id",
    "get_session_paths",
    "get_shared_cache",
    "load_config",
    "load_config_dicts",
    "validate_session_id",
]

__version__ = "0.1.0"
