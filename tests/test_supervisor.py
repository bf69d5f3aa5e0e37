from __future__ import annotations

import errno
import os
from pathlib import Path
import time

import pytest

from luci_sidecar.errors import SidecarErrorKind, SpawnFailure
from luci_sidecar.supervisor import STDERR_LOG_NAME, STDOUT_LOG_NAME, ProcessSupervisor

pytestmark = pytest.mark.skipif(os.name == "nt", reason="no Windows support")


def _script(tmp_path: Path, body: str, name: str = "lucisetup") -> Path:
    p = tmp_path / name
    p.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    p.chmod(0o755)
    return p


def _wait_exit(sup: ProcessSupervisor, handle, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while sup.is_alive(handle) and time.monotonic() < deadline:
        time.sleep(0.02)


def test_start_passes_session_id_and_env(tmp_path: Path) -> None:
    out = tmp_path / "out.txt"
    script = _script(tmp_path, f'printf "%s|%s" "$1" "$LUCIDOITDOIT_WHL" > "{out}"\nexit 3')
    sup = ProcessSupervisor(stdio="devnull")

    handle = sup.start("luciabc123", script, {"LUCIDOITDOIT_WHL": "/x/y.whl"})
    _wait_exit(sup, handle)

    assert handle.pid > 0
    assert sup.is_alive(handle) is False
    assert sup.exit_code(handle) == 3
    assert out.read_text(encoding="utf-8") == "luciabc123|/x/y.whl"


def test_is_alive_reflects_os_state_and_terminate_stops(tmp_path: Path) -> None:
    script = _script(tmp_path, "exec sleep 30")
    sup = ProcessSupervisor(stdio="devnull")

    handle = sup.start("luciabc123", script)
    assert sup.is_alive(handle) is True
    assert sup.exit_code(handle) is None

    code = sup.terminate(handle, timeout_sec=5.0)

    assert code is not None and code != 0
    assert sup.is_alive(handle) is False
    # terminating an exited process just reports its code
    assert sup.terminate(handle) == code


def test_files_stdio_appends_to_logs(tmp_path: Path) -> None:
    script = _script(tmp_path, 'echo "hello out"\necho "hello err" >&2')
    log_dir = tmp_path / "logs"
    sup = ProcessSupervisor(stdio="files")

    handle = sup.start("luciabc123", script, log_dir=log_dir)
    _wait_exit(sup, handle)

    assert (log_dir / STDOUT_LOG_NAME).read_text(encoding="utf-8") == "hello out\n"
    assert (log_dir / STDERR_LOG_NAME).read_text(encoding="utf-8") == "hello err\n"


def test_missing_executable_is_spawn_failure(tmp_path: Path) -> None:
    with pytest.raises(SpawnFailure) as ei:
        ProcessSupervisor(stdio="devnull").start("luciabc123", tmp_path / "nope")

    assert ei.value.kind == SidecarErrorKind.SPAWN_FAILURE
    assert ei.value.details["argv"] == [str(tmp_path / "nope"), "luciabc123"]


def test_unknown_stdio_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        ProcessSupervisor(stdio="pipe")  # type: ignore[arg-type]


class _FakeProc:
    pid = 4321

    def poll(self):
        return None


def test_text_file_busy_is_retried_once(tmp_path: Path) -> None:
    calls: list[list[str]] = []
    sleeps: list[float] = []

    def _popen(argv, **kwargs):
        calls.append(argv)
        if len(calls) == 1:
            raise OSError(errno.ETXTBSY, "Text file busy")
        return _FakeProc()

    sup = ProcessSupervisor(stdio="devnull", popen=_popen, sleep=sleeps.append)
    handle = sup.start("luciabc123", tmp_path / "lucisetup")

    assert handle.pid == 4321
    assert len(calls) == 2
    assert len(sleeps) == 1


def test_text_file_busy_twice_is_spawn_failure(tmp_path: Path) -> None:
    def _popen(argv, **kwargs):
        raise OSError(errno.ETXTBSY, "Text file busy")

    sup = ProcessSupervisor(stdio="devnull", popen=_popen, sleep=lambda s: None)
    with pytest.raises(SpawnFailure) as ei:
        sup.start("luciabc123", tmp_path / "lucisetup")
    assert ei.value.details["errno"] == errno.ETXTBSY
