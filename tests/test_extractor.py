from __future__ import annotations

from io import BytesIO
import os
from pathlib import Path
import stat
import threading
import zipfile

import pytest

from luci_sidecar.errors import ExtractionFailure, SidecarErrorKind
from luci_sidecar.extractor import ResourceExtractor
from luci_sidecar.paths import get_shared_cache

_INSTALLER = b"#!/bin/sh\necho installing\n"


def _wheel_bytes(*, installer: bytes | None = _INSTALLER) -> bytes:
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("lucidoitdoit/__init__.py", "")
        if installer is not None:
            zf.writestr("lucidoitdoit-0.1.data/scripts/lucisetup", installer)
        zf.writestr("lucidoitdoit-0.1.dist-info/METADATA", "Name: lucidoitdoit\n")
    return buf.getvalue()


def _opener(data: bytes):
    return lambda: BytesIO(data)


def _leftovers(cache_dir: Path) -> list[str]:
    return sorted(p.name for p in cache_dir.iterdir() if p.name.startswith(".tmp."))


def test_ensure_unpacked_writes_archive_and_executable_installer(tmp_path: Path) -> None:
    data = _wheel_bytes()
    cache = get_shared_cache(root_storage_dir=tmp_path)
    extractor = ResourceExtractor(open_resource=_opener(data))

    assert extractor.is_unpacked(cache) is False
    extractor.ensure_unpacked(cache)

    assert extractor.is_unpacked(cache) is True
    assert cache.archive_path.read_bytes() == data
    assert cache.installer_script_path.read_bytes() == _INSTALLER
    assert cache.installer_script_path.stat().st_mode & stat.S_IXUSR
    assert _leftovers(cache.global_file_dir) == []


def test_ensure_unpacked_fast_path_does_not_read_resource(tmp_path: Path) -> None:
    cache = get_shared_cache(root_storage_dir=tmp_path)
    ResourceExtractor(open_resource=_opener(_wheel_bytes())).ensure_unpacked(cache)

    def _boom():
        raise AssertionError("resource must not be opened when already unpacked")

    ResourceExtractor(open_resource=_boom).ensure_unpacked(cache)


def test_concurrent_extractors_all_succeed_with_one_final_copy(tmp_path: Path) -> None:
    data = _wheel_bytes()
    cache = get_shared_cache(root_storage_dir=tmp_path)
    n = 8
    barrier = threading.Barrier(n)
    errors: list[BaseException] = []

    def worker() -> None:
        extractor = ResourceExtractor(open_resource=_opener(data))
        barrier.wait()
        try:
            extractor.ensure_unpacked(cache)
        except BaseException as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    names = sorted(os.listdir(cache.global_file_dir))
    assert names == ["lucidoitdoit-0.1-py3-none-any.whl", "lucisetup"]
    assert cache.archive_path.read_bytes() == data
    assert cache.installer_script_path.read_bytes() == _INSTALLER


def test_existing_archive_from_another_actor_is_not_an_error(tmp_path: Path) -> None:
    cache = get_shared_cache(root_storage_dir=tmp_path)
    cache.global_file_dir.mkdir(parents=True)
    cache.archive_path.write_bytes(b"published by someone else")

    ResourceExtractor(open_resource=_opener(_wheel_bytes())).ensure_unpacked(cache)

    # the winner's copy is kept
    assert cache.archive_path.read_bytes() == b"published by someone else"
    assert cache.installer_script_path.exists()
    assert _leftovers(cache.global_file_dir) == []


def test_missing_embedded_resource_is_extraction_failure(tmp_path: Path) -> None:
    cache = get_shared_cache(root_storage_dir=tmp_path)
    extractor = ResourceExtractor(resource_package="luci_sidecar.assets", archive_name="does-not-exist.whl")

    with pytest.raises(ExtractionFailure) as ei:
        extractor.ensure_unpacked(cache)

    assert ei.value.kind == SidecarErrorKind.EXTRACTION_FAILURE
    assert ei.value.code == "RESOURCE_MISSING"
    assert ei.value.retryable is False
    assert not cache.installer_script_path.exists()
    assert _leftovers(cache.global_file_dir) == []


def test_invalid_archive_is_extraction_failure(tmp_path: Path) -> None:
    cache = get_shared_cache(root_storage_dir=tmp_path)
    extractor = ResourceExtractor(open_resource=_opener(b"definitely not a zip"))

    with pytest.raises(ExtractionFailure) as ei:
        extractor.ensure_unpacked(cache)

    assert ei.value.code == "ARCHIVE_INVALID"
    assert not cache.archive_path.exists()
    assert _leftovers(cache.global_file_dir) == []


def test_archive_without_installer_is_extraction_failure(tmp_path: Path) -> None:
    cache = get_shared_cache(root_storage_dir=tmp_path)
    extractor = ResourceExtractor(open_resource=_opener(_wheel_bytes(installer=None)))

    with pytest.raises(ExtractionFailure) as ei:
        extractor.ensure_unpacked(cache)

    assert ei.value.code == "INSTALLER_MISSING"
    assert not cache.installer_script_path.exists()
    assert _leftovers(cache.global_file_dir) == []


def test_corrupt_installer_entry_is_extraction_failure(tmp_path: Path) -> None:
    data = _wheel_bytes()
    # entries are stored uncompressed: flip one payload byte so the CRC check fails on read
    idx = data.index(b"installing")
    corrupt = data[:idx] + b"I" + data[idx + 1 :]
    cache = get_shared_cache(root_storage_dir=tmp_path)
    extractor = ResourceExtractor(open_resource=_opener(corrupt))

    with pytest.raises(ExtractionFailure) as ei:
        extractor.ensure_unpacked(cache)

    assert ei.value.kind == SidecarErrorKind.EXTRACTION_FAILURE
    assert ei.value.code == "ARCHIVE_INVALID"
    assert ei.value.details["entry"] == "lucidoitdoit-0.1.data/scripts/lucisetup"
    assert not cache.archive_path.exists()
    assert not cache.installer_script_path.exists()
    assert _leftovers(cache.global_file_dir) == []
