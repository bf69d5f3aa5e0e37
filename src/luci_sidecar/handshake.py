"""
Filesystem readiness handshake.

The sidecar reports readiness by writing two files into its session dir:

- `lucidoitdoit.socket`: the TCP port it listens on
- `lucidoitdoit.pid`: the pid of the long-lived server process

The waiter polls for both with a bounded number of attempts and a fixed interval, and
fails fast (never keeps polling) once the supervised process is confirmed dead.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import threading
import time
from typing import Any, Callable, Optional, Protocol

from luci_sidecar.errors import HandshakeCancelled, HandshakeTimeout, InvalidHandshake, ProcessDiedDuringHandshake
from luci_sidecar.paths import SessionPaths

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
MIN_PID = 1


class LivenessSource(Protocol):
    """The part of `ProcessSupervisor` the waiter depends on."""

    def is_alive(self, handle: Any) -> bool: ...

    def exit_code(self, handle: Any) -> Optional[int]: ...


@dataclass(frozen=True)
class HandshakeResult:
    """Port and server pid reported by the sidecar."""

    port: int
    pid: int


def _read_int_file(path: Path, *, field: str) -> Optional[int]:
    """
    Read a handshake file as an int.

    Returns:
    - None when the file is missing or still empty (the sidecar is mid-write)

    Raises:
    - InvalidHandshake: non-empty content that is not an integer
    """

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    text = raw.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError as exc:
        raise InvalidHandshake(
            f"Sidecar wrote an invalid {field} file.",
            details={"path": str(path), "field": field, "content": text[:64]},
        ) from exc


class HandshakeWaiter:
    """Bounded poll loop over a session's handshake files."""

    def __init__(self, *, supervisor: LivenessSource, sleep: Callable[[float], None] = time.sleep) -> None:
        """
        Args:
        - supervisor: liveness source (a `ProcessSupervisor` or a test double)
        - sleep: sleep function in seconds (injectable so tests do not wait)
        """

        self._supervisor = supervisor
        self._sleep = sleep

    def try_read(self, paths: SessionPaths) -> Optional[HandshakeResult]:
        """Return the handshake result if both files are present and complete, else None."""

        if not paths.socket_port_file.exists() or not paths.pid_file.exists():
            return None
        port = _read_int_file(paths.socket_port_file, field="port")
        if port is None:
            return None
        if port < MIN_PORT or port > MAX_PORT:
            raise InvalidHandshake(
                "Sidecar reported a port outside [1, 65535].",
                details={"path": str(paths.socket_port_file), "port": port},
            )
        pid = _read_int_file(paths.pid_file, field="pid")
        if pid is None:
            return None
        if pid < MIN_PID:
            # 0 and negative pids address process groups in os.kill
            raise InvalidHandshake(
                "Sidecar reported a pid below 1.",
                details={"path": str(paths.pid_file), "pid": pid},
            )
        return HandshakeResult(port=port, pid=pid)

    def await_ready(
        self,
        paths: SessionPaths,
        handle: Any,
        max_attempts: int,
        interval_ms: int,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> HandshakeResult:
        """
        Wait until the sidecar has written its port and pid files.

        Args:
        - paths: the session's handshake paths
        - handle: the supervised installer process
        - max_attempts: number of polls (>= 1)
        - interval_ms: sleep between polls
        - cancel_event: when set, the wait stops with HandshakeCancelled

        Raises:
        - ProcessDiedDuringHandshake: the process exited before the files appeared (fatal)
        - InvalidHandshake: the files exist but are unusable (fatal)
        - HandshakeCancelled: cancel_event was set (carries the pid for cleanup)
        - HandshakeTimeout: attempts exhausted with the process still alive (recoverable)
        """

        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if interval_ms < 0:
            raise ValueError("interval_ms must be >= 0")

        pid = getattr(handle, "pid", None)
        logger.debug("Trying to read socket info at %s", paths.socket_port_file)
        for attempt in range(1, max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise HandshakeCancelled(pid=pid, attempts=attempt - 1)

            result = self.try_read(paths)
            if result is not None:
                logger.info("Sidecar available at port %s (pid %s)", result.port, result.pid)
                return result

            if not self._supervisor.is_alive(handle):
                # The installer normally exits right after writing the files.
                result = self.try_read(paths)
                if result is not None:
                    logger.info("Sidecar available at port %s (pid %s)", result.port, result.pid)
                    return result
                raise ProcessDiedDuringHandshake(
                    exit_code=self._supervisor.exit_code(handle),
                    pid=pid,
                    details={"session_dir": str(paths.session_dir), "attempts": attempt},
                )

            if attempt < max_attempts:
                self._sleep(interval_ms / 1000.0)

        raise HandshakeTimeout(
            attempts=max_attempts,
            pid=pid,
            details={"session_dir": str(paths.session_dir), "interval_ms": interval_ms},
        )
