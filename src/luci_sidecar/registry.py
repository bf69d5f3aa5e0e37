"""
Session registry: at most one `SessionManager` per session id.

The registry is an explicit object owned by the application (no module-level singleton), so
tests and embedders can run isolated registries side by side.
"""

from __future__ import annotations

import logging
from pathlib import Path
import threading
from typing import Callable, Dict, Optional

from luci_sidecar.config.loader import LuciSidecarConfig
from luci_sidecar.manager import SessionManager
from luci_sidecar.paths import resolve_root_storage_dir
from luci_sidecar.session_id import create_session_id, validate_session_id

logger = logging.getLogger(__name__)

ManagerFactory = Callable[..., SessionManager]


class SessionRegistry:
    """Thread-safe `session_id -> SessionManager` table."""

    def __init__(
        self,
        *,
        config: Optional[LuciSidecarConfig] = None,
        manager_factory: Optional[ManagerFactory] = None,
    ) -> None:
        """
        Args:
        - config: config handed to every manager (defaults when omitted)
        - manager_factory: `(session_id, root_storage_dir=..., config=...) -> SessionManager`
          (tests inject managers wired with doubles)
        """

        self.config = config or LuciSidecarConfig()
        self._factory: ManagerFactory = manager_factory or SessionManager
        self._lock = threading.Lock()
        self._managers: Dict[str, SessionManager] = {}
        self._retired: set[str] = set()

    def __len__(self) -> int:
        return len(self._managers)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._managers

    def new_session_id(self) -> str:
        """Create a session id that this registry has never seen."""

        while True:
            sid = create_session_id(prefix=self.config.session.id_prefix, length=self.config.session.id_length)
            if sid not in self._managers and sid not in self._retired:
                return sid

    def get(self, session_id: str) -> Optional[SessionManager]:
        return self._managers.get(session_id)

    def get_or_create(self, session_id: str, root_storage_dir: Optional[Path | str] = None) -> SessionManager:
        """
        Return the manager of `session_id`, creating it on first use.

        Existing ids are served without taking the creation lock; creation itself is a critical
        section (double-checked) so concurrent callers always observe the same instance.

        Raises:
        - ValueError: invalid or retired id, or the id is registered under another root dir
        """

        existing = self._managers.get(session_id)
        if existing is None:
            validate_session_id(session_id)
            with self._lock:
                existing = self._managers.get(session_id)
                if existing is None:
                    if session_id in self._retired:
                        raise ValueError(f"session id {session_id!r} was released and cannot be reused")
                    root = root_storage_dir if root_storage_dir is not None else self.config.root_storage_dir
                    manager = self._factory(session_id, root_storage_dir=root, config=self.config)
                    self._managers[session_id] = manager
                    logger.debug("Registered session %s under %s", session_id, manager.root_storage_dir)
                    return manager

        if root_storage_dir is not None and resolve_root_storage_dir(root_storage_dir) != existing.root_storage_dir:
            raise ValueError(
                f"session id {session_id!r} is already registered under {existing.root_storage_dir}"
            )
        return existing

    def release(self, session_id: str) -> None:
        """Stop the session's sidecar and retire its id (a no-op for unknown ids)."""

        with self._lock:
            manager = self._managers.pop(session_id, None)
            if manager is None:
                return
            self._retired.add(session_id)
        manager.stop_server()

    def close_all(self) -> None:
        """Release every registered session; failures are logged and the rest still stop."""

        with self._lock:
            managers = list(self._managers.items())
            self._managers.clear()
            self._retired.update(sid for sid, _ in managers)
        for sid, manager in managers:
            try:
                manager.stop_server()
            except Exception:
                logger.warning("Failed to stop session %s", sid, exc_info=True)
