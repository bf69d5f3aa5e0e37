"""
Session manager: one sidecar per session id.

`start_server()` drives a small state machine with strict ordering:

    UNSTARTED -> EXTRACTING -> SPAWNED -> AWAITING_HANDSHAKE -> READY -> STOPPED
                       \\            \\              \\
                        +------------+--------------+--> FAILED(kind)

- FAILED with the installer still alive (timeout / cancel) resumes waiting on the same process
- FAILED with the installer dead starts over (extract is a no-op the second time)
- the port is written once (on READY) and the memoized socket is reused until `stop_server()`
"""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
import signal
import socket
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional

from luci_sidecar.config.loader import LuciSidecarConfig
from luci_sidecar.connection import ConnectionFactory
from luci_sidecar.errors import SessionStateError, SidecarError, SidecarErrorKind, SpawnFailure
from luci_sidecar.extractor import ResourceExtractor
from luci_sidecar.handshake import HandshakeWaiter
from luci_sidecar.paths import get_session_paths, get_shared_cache
from luci_sidecar.session_id import validate_session_id
from luci_sidecar.supervisor import ENV_SESSION_DIR, ENV_SHARED_ENV, ENV_WHL, ProcessHandle, ProcessSupervisor

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle states of a `SessionManager`."""

    UNSTARTED = "unstarted"
    EXTRACTING = "extracting"
    SPAWNED = "spawned"
    AWAITING_HANDSHAKE = "awaiting_handshake"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


_TRANSITIONS: Dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNSTARTED: frozenset({SessionState.EXTRACTING, SessionState.STOPPED}),
    SessionState.EXTRACTING: frozenset({SessionState.SPAWNED, SessionState.FAILED}),
    SessionState.SPAWNED: frozenset({SessionState.AWAITING_HANDSHAKE, SessionState.FAILED}),
    SessionState.AWAITING_HANDSHAKE: frozenset({SessionState.READY, SessionState.FAILED}),
    SessionState.READY: frozenset({SessionState.STOPPED}),
    SessionState.FAILED: frozenset({SessionState.EXTRACTING, SessionState.AWAITING_HANDSHAKE, SessionState.STOPPED}),
    SessionState.STOPPED: frozenset(),
}


class SessionManager:
    """Owns the installer process, the handshake result and the client socket of one session."""

    def __init__(
        self,
        session_id: str,
        *,
        root_storage_dir: Optional[Path | str] = None,
        config: Optional[LuciSidecarConfig] = None,
        extractor: Optional[ResourceExtractor] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Create a manager (no I/O happens until `start_server()`).

        Args:
        - session_id: validated session id (directory name under the root)
        - root_storage_dir: overrides `config.root_storage_dir` (None -> `<tempdir>/luci`)
        - config: effective config (defaults when omitted)
        - extractor / supervisor / connection_factory: collaborators (built from config when omitted)
        - sleep: handshake sleep function (tests inject a fake)
        """

        self.session_id = validate_session_id(session_id)
        self.config = config or LuciSidecarConfig()
        root = root_storage_dir if root_storage_dir is not None else self.config.root_storage_dir
        self.paths = get_session_paths(
            root_storage_dir=root,
            session_id=self.session_id,
            socket_file_name=self.config.session.socket_file_name,
            pid_file_name=self.config.session.pid_file_name,
        )
        self.cache = get_shared_cache(
            root_storage_dir=root,
            archive_name=self.config.resource.archive_name,
            installer_name=self.config.resource.installer_name,
        )
        self.root_storage_dir = self.paths.session_dir.parent

        self._extractor = extractor or ResourceExtractor(
            resource_package=self.config.resource.package,
            archive_name=self.config.resource.archive_name,
        )
        self._supervisor = supervisor or ProcessSupervisor(stdio=self.config.spawn.stdio)
        self._waiter = HandshakeWaiter(supervisor=self._supervisor, sleep=sleep)
        self._connections = connection_factory or ConnectionFactory(
            host=self.config.connection.host,
            connect_timeout_sec=self.config.connection.connect_timeout_sec,
        )

        self._lock = threading.RLock()
        self._state = SessionState.UNSTARTED
        self._failure_kind: Optional[SidecarErrorKind] = None
        self._handle: Optional[ProcessHandle] = None
        self._port: Optional[int] = None
        self._reported_pid: Optional[int] = None
        self._socket: Optional[socket.socket] = None

    def __repr__(self) -> str:
        return f"SessionManager(session_id={self.session_id!r}, state={self._state.value}, port={self._port})"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure_kind(self) -> Optional[SidecarErrorKind]:
        """Kind of the last failure while in FAILED, else None."""

        return self._failure_kind if self._state == SessionState.FAILED else None

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def reported_pid(self) -> Optional[int]:
        """Pid written by the sidecar into its pid file (the long-lived server)."""

        return self._reported_pid

    @property
    def pid(self) -> Optional[int]:
        """Pid of the installer process this manager spawned."""

        return self._handle.pid if self._handle is not None else None

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise SessionStateError(
                f"illegal session transition {self._state.value} -> {new_state.value} ({self.session_id})"
            )
        logger.debug("Session %s: %s -> %s", self.session_id, self._state.value, new_state.value)
        self._state = new_state
        if new_state != SessionState.FAILED:
            self._failure_kind = None

    def _fail(self, kind: SidecarErrorKind) -> None:
        self._transition(SessionState.FAILED)
        self._failure_kind = kind

    def is_unpacked(self) -> bool:
        """True if the shared installer files are already present on this host."""

        return self._extractor.is_unpacked(self.cache)

    def is_server_started(self) -> bool:
        """READY and both handshake files are still on disk."""

        if self._state != SessionState.READY:
            return False
        return self.paths.socket_port_file.exists() and self.paths.pid_file.exists()

    def _spawn_env(self) -> Dict[str, str]:
        env = dict(self.config.spawn.extra_env)
        env[ENV_WHL] = str(self.cache.archive_path)
        env[ENV_SHARED_ENV] = str(self.cache.env_dir)
        env[ENV_SESSION_DIR] = str(self.paths.session_dir)
        return env

    def start_server(self, *, cancel_event: Optional[threading.Event] = None) -> int:
        """
        Make sure the sidecar of this session is running and return its port.

        Idempotent: a READY manager returns its port immediately; concurrent callers serialize
        on the manager lock so the installer is spawned at most once per attempt.

        Raises:
        - ExtractionFailure / SpawnFailure / ProcessDiedDuringHandshake / InvalidHandshake (fatal)
        - HandshakeTimeout (recoverable: call again to keep waiting on the same process)
        - HandshakeCancelled (cancel_event set; `self.pid` is the process left running)
        - SessionStateError: the session was stopped
        """

        with self._lock:
            if self._state == SessionState.READY:
                if self._port is None:
                    raise SessionStateError(f"session {self.session_id} is ready without a port")
                return self._port
            if self._state == SessionState.STOPPED:
                raise SessionStateError(f"session {self.session_id} was stopped; use a new session id")

            if self._state == SessionState.FAILED and self._handle is not None and self._supervisor.is_alive(self._handle):
                logger.info("Session %s: resuming handshake on installer pid=%s", self.session_id, self._handle.pid)
                return self._await_handshake(cancel_event)

            self._transition(SessionState.EXTRACTING)
            step_kind = SidecarErrorKind.EXTRACTION_FAILURE
            try:
                self._extractor.ensure_unpacked(self.cache)
                step_kind = SidecarErrorKind.SPAWN_FAILURE
                try:
                    self.paths.session_dir.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    raise SpawnFailure(
                        "Could not create the session directory.",
                        details={"session_dir": str(self.paths.session_dir), "reason": str(exc)},
                    ) from exc
                self._handle = self._supervisor.start(
                    self.session_id,
                    self.cache.installer_script_path,
                    self._spawn_env(),
                    log_dir=self.paths.session_dir,
                )
            except SidecarError as exc:
                self._fail(exc.kind)
                raise
            except BaseException:
                # unexpected errors still leave the session in FAILED so it can be stopped
                self._fail(step_kind)
                raise
            self._transition(SessionState.SPAWNED)
            return self._await_handshake(cancel_event)

    def _await_handshake(self, cancel_event: Optional[threading.Event]) -> int:
        if self._handle is None:
            raise SessionStateError(f"session {self.session_id} has no installer process to wait on")
        self._transition(SessionState.AWAITING_HANDSHAKE)
        try:
            result = self._waiter.await_ready(
                self.paths,
                self._handle,
                self.config.handshake.max_attempts,
                self.config.handshake.interval_ms,
                cancel_event=cancel_event,
            )
        except SidecarError as exc:
            self._fail(exc.kind)
            if exc.kind in (SidecarErrorKind.HANDSHAKE_TIMEOUT, SidecarErrorKind.HANDSHAKE_CANCELLED):
                logger.warning(
                    "Session %s: handshake %s; installer pid=%s left running",
                    self.session_id,
                    exc.kind.value,
                    self._handle.pid,
                )
            raise
        except BaseException:
            # KeyboardInterrupt and friends: keep the handle so the caller can still stop it.
            self._fail(SidecarErrorKind.HANDSHAKE_CANCELLED)
            logger.warning("Session %s: handshake interrupted; installer pid=%s", self.session_id, self._handle.pid)
            raise

        self._port = result.port
        self._reported_pid = result.pid
        self._transition(SessionState.READY)
        logger.info("Session %s: server available at port %s", self.session_id, self._port)
        return self._port

    def get_connection(self) -> socket.socket:
        """
        Return the session's client socket, opening it on first use.

        Raises:
        - SessionStateError: no port yet (start_server() has not succeeded)
        - ConnectionFailure: the sidecar did not accept the connection
        """

        with self._lock:
            if self._socket is not None:
                return self._socket
            if self._port is None or self._state != SessionState.READY:
                raise SessionStateError(
                    f"session {self.session_id} has no port yet (state={self._state.value}); call start_server() first"
                )
            self._socket = self._connections.connect(self._port)
            return self._socket

    def stop_server(self) -> None:
        """
        Stop this session: close the socket, stop the installer, remove the handshake files.

        Idempotent. A stopped session cannot be restarted (ids are never reused).
        """

        with self._lock:
            if self._state == SessionState.STOPPED:
                return

            if self._socket is not None:
                with contextlib.suppress(OSError):
                    self._socket.close()
                self._socket = None

            if self._handle is not None:
                code = self._supervisor.terminate(
                    self._handle, timeout_sec=self.config.shutdown.terminate_timeout_sec
                )
                logger.debug("Session %s: installer pid=%s exit code %s", self.session_id, self._handle.pid, code)

            if self.config.shutdown.kill_reported_pid and self._reported_pid is not None:
                self._signal_reported_pid(self._reported_pid)

            self._clean_session_files()
            self._transition(SessionState.STOPPED)
            logger.info("Session %s stopped", self.session_id)

    def _signal_reported_pid(self, pid: int) -> None:
        try:
            os.kill(int(pid), signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Session %s: reported pid %s already gone", self.session_id, pid)
        except PermissionError:
            logger.warning("Session %s: not allowed to signal reported pid %s", self.session_id, pid)

    def _clean_session_files(self) -> None:
        """Remove the handshake files, then the session dir if it ended up empty."""

        for p in (self.paths.socket_port_file, self.paths.pid_file):
            try:
                p.unlink()
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Session %s: could not remove %s", self.session_id, p, exc_info=True)
        try:
            self.paths.session_dir.rmdir()
        except OSError:
            # Missing, or still holds sidecar logs/state.
            pass

    def close(self) -> None:
        self.stop_server()

    def __enter__(self) -> "SessionManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
