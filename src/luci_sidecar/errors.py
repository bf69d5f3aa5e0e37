"""
Sidecar error taxonomy (exception types + stable kinds).

Every failure that the lifecycle core can report has a stable `SidecarErrorKind`
so callers branch on `exc.kind` / `exc.retryable` instead of catching broadly:

- fatal: extraction / spawn / died during handshake / invalid handshake / cancelled / connection
- recoverable: handshake timeout (the process is still alive; callers may wait again)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class LuciSidecarError(Exception):
    """Base class for all luci_sidecar errors (not raised directly)."""


class SidecarErrorKind(str, Enum):
    """Stable, machine-consumable failure kinds."""

    EXTRACTION_FAILURE = "extraction_failure"
    SPAWN_FAILURE = "spawn_failure"
    PROCESS_DIED_DURING_HANDSHAKE = "process_died_during_handshake"
    INVALID_HANDSHAKE = "invalid_handshake"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    HANDSHAKE_CANCELLED = "handshake_cancelled"
    CONNECTION_FAILURE = "connection_failure"


class SidecarError(LuciSidecarError):
    """Structured error (`code/message/details`) tagged with a `SidecarErrorKind`."""

    kind: SidecarErrorKind
    retryable: bool = False

    def __init__(self, message: str, *, code: Optional[str] = None, details: Dict[str, Any] | None = None) -> None:
        """
        Create a structured sidecar error.

        Args:
        - message: readable English message
        - code: stable upper-case code (defaults to the kind value upper-cased)
        - details: JSON-safe context (paths, pid, exit code ...)
        """

        super().__init__(message)
        self.code = code or self.kind.value.upper()
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_payload(self) -> Dict[str, Any]:
        """Return a stable dict form (for logs or an orchestration layer)."""

        out: Dict[str, Any] = {
            "error_kind": str(self.kind.value),
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
        }
        if self.details:
            out["details"] = dict(self.details)
        return out


class ExtractionFailure(SidecarError):
    """The installer archive could not be unpacked into the shared cache."""

    kind = SidecarErrorKind.EXTRACTION_FAILURE


class SpawnFailure(SidecarError):
    """The installer process could not be started (missing executable, permissions, ...)."""

    kind = SidecarErrorKind.SPAWN_FAILURE


class ProcessDiedDuringHandshake(SidecarError):
    """The supervised process exited before both handshake files appeared."""

    kind = SidecarErrorKind.PROCESS_DIED_DURING_HANDSHAKE

    def __init__(self, *, exit_code: Optional[int], pid: Optional[int] = None, details: Dict[str, Any] | None = None) -> None:
        self.exit_code = exit_code
        self.pid = pid
        merged = {"exit_code": exit_code, "pid": pid}
        merged.update(details or {})
        super().__init__(
            f"The sidecar process died before a connection could be made (exit code {exit_code}).",
            details=merged,
        )


class InvalidHandshake(SidecarError):
    """A handshake file exists but its content is not a usable port/pid."""

    kind = SidecarErrorKind.INVALID_HANDSHAKE


class HandshakeTimeout(SidecarError):
    """Attempts exhausted while the process is still alive (recoverable)."""

    kind = SidecarErrorKind.HANDSHAKE_TIMEOUT
    retryable = True

    def __init__(self, *, attempts: int, pid: Optional[int] = None, details: Dict[str, Any] | None = None) -> None:
        self.attempts = attempts
        self.pid = pid
        merged = {"attempts": attempts, "pid": pid}
        merged.update(details or {})
        super().__init__(f"Sidecar handshake timed out after {attempts} attempts.", details=merged)


class HandshakeCancelled(SidecarError):
    """The caller cancelled the handshake wait; `pid` identifies the process left to clean up."""

    kind = SidecarErrorKind.HANDSHAKE_CANCELLED

    def __init__(self, *, pid: Optional[int], attempts: int) -> None:
        self.pid = pid
        self.attempts = attempts
        super().__init__(
            "Sidecar handshake was cancelled by the caller.",
            details={"pid": pid, "attempts": attempts},
        )


class ConnectionFailure(SidecarError):
    """Connecting to the reported port failed."""

    kind = SidecarErrorKind.CONNECTION_FAILURE


class SessionStateError(LuciSidecarError, RuntimeError):
    """An operation was called in a session state that does not allow it (programming error)."""
