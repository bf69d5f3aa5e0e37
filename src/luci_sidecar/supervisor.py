"""
Sidecar process supervision.

- `start` is fire-and-forget: readiness is the handshake's job (see `luci_sidecar.handshake`)
- `is_alive` always asks the OS (`Popen.poll()`), never a cached flag
- `terminate` gives start/stop symmetric semantics (SIGTERM, wait, SIGKILL)
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
from pathlib import Path
import subprocess
import time
from typing import IO, Any, Callable, Literal, Mapping, Optional

from luci_sidecar.errors import SpawnFailure

logger = logging.getLogger(__name__)

StdioPolicy = Literal["inherit", "devnull", "files"]

ENV_WHL = "LUCIDOITDOIT_WHL"
ENV_SHARED_ENV = "LUCIDOITDOIT_ENV"
ENV_SESSION_DIR = "LUCIDOITDOIT_SESSION_DIR"

STDOUT_LOG_NAME = "sidecar.stdout.log"
STDERR_LOG_NAME = "sidecar.stderr.log"

_TEXT_BUSY_RETRY_SEC = 0.05


class ProcessHandle:
    """One spawned OS process (owned by the supervisor that started it)."""

    def __init__(self, proc: subprocess.Popen, *, argv: list[str]) -> None:
        self._proc = proc
        self.argv = list(argv)

    @property
    def pid(self) -> int:
        return int(self._proc.pid)

    def is_alive(self) -> bool:
        return self._proc.poll() is None

    @property
    def exit_code(self) -> Optional[int]:
        """Exit code, or None while the process is still running."""

        return self._proc.poll()

    def send_terminate(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            self._proc.terminate()

    def send_kill(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            self._proc.kill()

    def wait(self, timeout_sec: Optional[float] = None) -> int:
        """Reap the process; raises `subprocess.TimeoutExpired` when it outlives `timeout_sec`."""

        return self._proc.wait(timeout=timeout_sec)

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, exit_code={self.exit_code})"


class ProcessSupervisor:
    """Spawns the sidecar installer and answers liveness queries."""

    def __init__(
        self,
        *,
        stdio: StdioPolicy = "inherit",
        log_dir: Optional[Path] = None,
        popen: Callable[..., Any] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Create a supervisor.

        Args:
        - stdio: `inherit` (share our stdout/stderr), `devnull`, or `files` (append to log files)
        - log_dir: directory for `files` mode logs (defaults to the installer's session dir at start)
        - popen / sleep: process factory and retry sleep (tests inject fakes)
        """

        if stdio not in ("inherit", "devnull", "files"):
            raise ValueError(f"unsupported stdio policy: {stdio!r}")
        self._stdio = stdio
        self._log_dir = Path(log_dir) if log_dir is not None else None
        self._popen = popen
        self._sleep = sleep

    def start(
        self,
        session_id: str,
        installer_path: Path,
        env: Optional[Mapping[str, str]] = None,
        *,
        log_dir: Optional[Path] = None,
    ) -> ProcessHandle:
        """
        Spawn `<installer_path> <session_id>` with `env` merged over `os.environ`.

        Raises:
        - SpawnFailure: executable missing, permission denied, OS resource exhaustion
        """

        argv = [str(installer_path), str(session_id)]
        merged_env = dict(os.environ)
        if env:
            merged_env.update({str(k): str(v) for k, v in env.items()})

        logger.debug("Attempting to start process with command: %s", argv)
        stdout: Any = None
        stderr: Any = None
        opened: list[IO[bytes]] = []
        try:
            if self._stdio == "devnull":
                stdout = stderr = subprocess.DEVNULL
            elif self._stdio == "files":
                target_dir = Path(log_dir or self._log_dir or Path(installer_path).parent)
                target_dir.mkdir(parents=True, exist_ok=True)
                stdout = open(target_dir / STDOUT_LOG_NAME, "ab")
                opened.append(stdout)
                stderr = open(target_dir / STDERR_LOG_NAME, "ab")
                opened.append(stderr)

            proc = self._spawn(argv, merged_env, stdout, stderr)
        except OSError as exc:
            raise SpawnFailure(
                "Could not start the sidecar installer.",
                details={"argv": argv, "errno": getattr(exc, "errno", None), "reason": str(exc)},
            ) from exc
        finally:
            # The child keeps its own copies of the log descriptors.
            for f in opened:
                f.close()

        handle = ProcessHandle(proc, argv=argv)
        logger.debug("Started sidecar installer pid=%s", handle.pid)
        return handle

    def is_alive(self, handle: ProcessHandle) -> bool:
        return handle.is_alive()

    def exit_code(self, handle: ProcessHandle) -> Optional[int]:
        return handle.exit_code

    def terminate(self, handle: ProcessHandle, *, timeout_sec: float = 5.0) -> Optional[int]:
        """
        Stop the process if it is still running and reap it.

        Returns:
        - the exit code (None only if the process could not be reaped)
        """

        code = handle.exit_code
        if code is not None:
            return code

        logger.debug("Terminating sidecar installer pid=%s", handle.pid)
        handle.send_terminate()
        try:
            return handle.wait(timeout_sec)
        except subprocess.TimeoutExpired:
            logger.warning("Sidecar installer pid=%s ignored SIGTERM; killing", handle.pid)
            handle.send_kill()
            try:
                return handle.wait(timeout_sec)
            except subprocess.TimeoutExpired:
                logger.warning("Sidecar installer pid=%s could not be reaped", handle.pid)
                return None

    def _spawn(self, argv: list[str], env: dict[str, str], stdout: Any, stderr: Any) -> Any:
        """
        Run `popen`, retrying once on ETXTBSY.

        A concurrent fork elsewhere in the process can still hold a write descriptor on a
        freshly extracted installer until its child execs.
        """

        kwargs = dict(env=env, stdin=subprocess.DEVNULL, stdout=stdout, stderr=stderr, close_fds=True)
        try:
            return self._popen(argv, **kwargs)  # noqa: S603
        except OSError as exc:
            if exc.errno != errno.ETXTBSY:
                raise
            logger.debug("Installer %s is busy (ETXTBSY); retrying once", argv[0])
        self._sleep(_TEXT_BUSY_RETRY_SEC)
        return self._popen(argv, **kwargs)  # noqa: S603
