from __future__ import annotations

from pathlib import Path
import threading

import pytest

from luci_sidecar.manager import SessionManager, SessionState
from luci_sidecar.registry import SessionRegistry


class _CountingFactory:
    def __init__(self) -> None:
        self.created: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, session_id: str, **kwargs) -> SessionManager:
        with self._lock:
            self.created.append(session_id)
        return SessionManager(session_id, **kwargs)


def test_same_id_same_instance_distinct_ids_distinct_instances(tmp_path: Path) -> None:
    registry = SessionRegistry()

    a1 = registry.get_or_create("luciaaa", tmp_path)
    a2 = registry.get_or_create("luciaaa", tmp_path)
    b = registry.get_or_create("lucibbb", tmp_path)

    assert a1 is a2
    assert a1 is not b
    assert len(registry) == 2
    assert "luciaaa" in registry
    assert registry.get("lucibbb") is b
    assert registry.get("lucizzz") is None


def test_lookup_without_root_returns_existing(tmp_path: Path) -> None:
    registry = SessionRegistry()
    mgr = registry.get_or_create("luciaaa", tmp_path)
    assert registry.get_or_create("luciaaa") is mgr


def test_concurrent_get_or_create_creates_once(tmp_path: Path) -> None:
    factory = _CountingFactory()
    registry = SessionRegistry(manager_factory=factory)
    n = 16
    barrier = threading.Barrier(n)
    seen: list[SessionManager] = []
    seen_lock = threading.Lock()

    def worker(i: int) -> None:
        barrier.wait()
        mgr = registry.get_or_create("luci-shared" if i % 2 == 0 else f"luci-{i}", tmp_path)
        with seen_lock:
            seen.append(mgr)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    shared = [m for m in seen if m.session_id == "luci-shared"]
    assert len(shared) == n // 2
    assert all(m is shared[0] for m in shared)
    assert factory.created.count("luci-shared") == 1
    assert len(factory.created) == 1 + n // 2


def test_independent_registries_do_not_share_managers(tmp_path: Path) -> None:
    a = SessionRegistry().get_or_create("luciaaa", tmp_path)
    b = SessionRegistry().get_or_create("luciaaa", tmp_path)
    assert a is not b


def test_root_mismatch_is_rejected(tmp_path: Path) -> None:
    registry = SessionRegistry()
    registry.get_or_create("luciaaa", tmp_path / "one")
    with pytest.raises(ValueError):
        registry.get_or_create("luciaaa", tmp_path / "two")


def test_invalid_id_is_rejected() -> None:
    with pytest.raises(ValueError):
        SessionRegistry().get_or_create("../escape")


def test_release_stops_and_retires_id(tmp_path: Path) -> None:
    registry = SessionRegistry()
    mgr = registry.get_or_create("luciaaa", tmp_path)

    registry.release("luciaaa")
    registry.release("luciaaa")  # unknown now: no-op

    assert mgr.state == SessionState.STOPPED
    assert "luciaaa" not in registry
    with pytest.raises(ValueError):
        registry.get_or_create("luciaaa", tmp_path)


def test_close_all_stops_every_manager(tmp_path: Path) -> None:
    registry = SessionRegistry()
    managers = [registry.get_or_create(f"luci{i}", tmp_path) for i in range(3)]

    registry.close_all()

    assert len(registry) == 0
    assert all(m.state == SessionState.STOPPED for m in managers)


def test_new_session_id_uses_config_prefix() -> None:
    registry = SessionRegistry()
    sid = registry.new_session_id()
    assert sid.startswith("luci")
    assert len(sid) == 20
