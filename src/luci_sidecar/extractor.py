"""
Installer extraction into the shared cache.

The embedded archive (a python wheel) carries the `lucisetup` installer script. Both the
archive and the script are published once per host under `<root>/global/files/`:

- private temp files in the cache dir + atomic "rename if absent" (hard link, then unlink)
- a concurrent winner is not an error: the loser discards its temp copy
- the installer script is published last and doubles as the completion marker
"""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path, PurePosixPath
import shutil
import uuid
import zipfile
import zlib
from typing import BinaryIO, Callable, Optional

from luci_sidecar.errors import ExtractionFailure
from luci_sidecar.paths import INSTALL_WHL_NAME, SharedCache

logger = logging.getLogger(__name__)

DEFAULT_RESOURCE_PACKAGE = "luci_sidecar.assets"
_COPY_CHUNK_BYTES = 64 * 1024
_INSTALLER_MODE = 0o755

OpenResource = Callable[[], BinaryIO]


def package_resource_opener(package: str, name: str) -> OpenResource:
    """Return a callable opening `name` inside `package` (importlib.resources) as a binary stream."""

    def _open() -> BinaryIO:
        from importlib.resources import files

        return files(package).joinpath(name).open("rb")

    return _open


def _publish_if_absent(tmp: Path, final: Path) -> bool:
    """
    Atomically publish `tmp` at `final` unless `final` already exists.

    Returns:
    - True when this call published the file, False when another actor won the race
    """

    try:
        os.link(tmp, final)
    except FileExistsError:
        logger.debug("%s already published by another actor; discarding %s", final, tmp)
        return False
    return True


class ResourceExtractor:
    """Unpacks the embedded installer archive into a `SharedCache` exactly once."""

    def __init__(
        self,
        *,
        open_resource: Optional[OpenResource] = None,
        resource_package: str = DEFAULT_RESOURCE_PACKAGE,
        archive_name: str = INSTALL_WHL_NAME,
    ) -> None:
        """
        Create an extractor.

        Args:
        - open_resource: returns a binary stream of the archive; defaults to the package resource
        - resource_package / archive_name: location of the embedded archive resource
        """

        self._resource_label = f"{resource_package}/{archive_name}"
        self._open_resource = open_resource or package_resource_opener(resource_package, archive_name)

    def is_unpacked(self, cache: SharedCache) -> bool:
        # The installer is published last, so its presence implies the archive is there too.
        return cache.installer_script_path.exists()

    def ensure_unpacked(self, cache: SharedCache) -> None:
        """
        Make sure the archive and installer script exist in the shared cache.

        Raises:
        - ExtractionFailure: missing resource, invalid archive, no installer entry, write failure
        """

        if self.is_unpacked(cache):
            return

        try:
            cache.global_file_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ExtractionFailure(
                "Could not create the shared cache directory.",
                details={"global_file_dir": str(cache.global_file_dir), "reason": str(exc)},
            ) from exc

        token = uuid.uuid4().hex[:10]
        tmp_archive = cache.global_file_dir / f".tmp.{cache.archive_path.name}.{token}"
        tmp_installer = cache.global_file_dir / f".tmp.{cache.installer_script_path.name}.{token}"
        try:
            self._copy_resource(tmp_archive)
            self._extract_installer(tmp_archive, tmp_installer, cache.installer_script_path.name)

            published_archive = _publish_if_absent(tmp_archive, cache.archive_path)
            published_installer = _publish_if_absent(tmp_installer, cache.installer_script_path)
            logger.debug(
                "Unpacked sidecar files into %s (archive=%s, installer=%s)",
                cache.global_file_dir,
                published_archive,
                published_installer,
            )
        except OSError as exc:
            raise ExtractionFailure(
                "Could not write the sidecar files into the shared cache.",
                details={"global_file_dir": str(cache.global_file_dir), "reason": str(exc)},
            ) from exc
        finally:
            for tmp in (tmp_archive, tmp_installer):
                with contextlib.suppress(FileNotFoundError):
                    tmp.unlink()

    def _copy_resource(self, dst_path: Path) -> None:
        """Copy the embedded archive into a private temp file."""

        try:
            src = self._open_resource()
        except (OSError, ModuleNotFoundError) as exc:
            raise ExtractionFailure(
                f"Bad setup, missing {self._resource_label}",
                code="RESOURCE_MISSING",
                details={"resource": self._resource_label, "reason": str(exc)},
            ) from exc

        with src, dst_path.open("xb") as dst:
            shutil.copyfileobj(src, dst, _COPY_CHUNK_BYTES)

    def _extract_installer(self, archive_path: Path, dst_path: Path, installer_name: str) -> None:
        """Find the entry named `installer_name` (any directory) and copy it to `dst_path`."""

        try:
            zf = zipfile.ZipFile(archive_path)
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            raise ExtractionFailure(
                "Embedded sidecar archive is not a valid zip archive.",
                code="ARCHIVE_INVALID",
                details={"resource": self._resource_label, "reason": str(exc)},
            ) from exc

        with zf:
            for info in zf.infolist():
                if info.is_dir() or PurePosixPath(info.filename).name != installer_name:
                    continue
                try:
                    with zf.open(info, "r") as src, dst_path.open("xb") as dst:
                        shutil.copyfileobj(src, dst, _COPY_CHUNK_BYTES)
                except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError) as exc:
                    # bad CRC, truncated data, unsupported compression or an encrypted entry
                    raise ExtractionFailure(
                        f"Embedded sidecar archive has an unreadable {installer_name} entry.",
                        code="ARCHIVE_INVALID",
                        details={"resource": self._resource_label, "entry": info.filename, "reason": str(exc)},
                    ) from exc
                dst_path.chmod(_INSTALLER_MODE)
                return

        raise ExtractionFailure(
            f"Embedded sidecar archive does not contain {installer_name}.",
            code="INSTALLER_MISSING",
            details={"resource": self._resource_label, "installer_name": installer_name},
        )
