"""Disk cache: one directory per installed moniker (``<id>#<version>``)."""
from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

from fhirpkg.common.logging_utils import Timer, extra_context, is_debug_enabled
from fhirpkg.constants import Constants
from fhirpkg.versioning.compare import highest_version
from fhirpkg.versioning.models import CI_TAG, LOCAL_TAG, CachedPackageEntry, Directive, PackageManifest
from .index import INSTALL_DATE_FORMAT, read_index, write_index

logger = logging.getLogger(__name__)

PackageRef = Union[Directive, str]

CONTENT_DIR = "package"
MANIFEST_FILE = "package.json"
_TMP_PREFIX = ".tmp-"


def _moniker(ref: PackageRef) -> str:
    return ref.moniker if isinstance(ref, Directive) else ref


def _directory_size(path: str) -> int:
    total = 0
    for dirpath, _, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.path.getsize(os.path.join(dirpath, filename))
            except OSError:
                continue
    return total


def read_manifest_file(path: str) -> Optional[PackageManifest]:
    """Parse a package.json; None when absent or unreadable."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable package manifest %s: %s", path, exc)
        return None
    return PackageManifest.from_json(data) if isinstance(data, dict) else None


def _is_cached_version(version: str) -> bool:
    """Offline 'highest' ignores local and CI installs."""
    lowered = version.lower()
    return lowered not in (LOCAL_TAG, CI_TAG) and not lowered.startswith(CI_TAG + "$")


class DiskCache:
    """Owned cache directory with an in-memory index rebuilt at open.

    Usable as a context manager; ``open()`` creates the directory and
    reconciles the side index against the folders that actually exist.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(os.path.expanduser(root or Constants.CACHE_DIR))
        self.index_path = os.path.join(self.root, Constants.INDEX_FILE)
        self._entries: Dict[str, CachedPackageEntry] = {}
        self._lock = threading.Lock()
        self._opened = False

    def __enter__(self) -> "DiskCache":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"DiskCache({self.root!r})"

    def open(self) -> "DiskCache":
        os.makedirs(self.root, exist_ok=True)
        self.reconcile()
        self._opened = True
        return self

    def close(self) -> None:
        if self._opened:
            with self._lock:
                self._write_index()
            self._opened = False

    def reconcile(self) -> None:
        """Rebuild the in-memory index from the folders on disk."""
        indexed = read_index(self.index_path)
        entries: Dict[str, CachedPackageEntry] = {}
        for name in sorted(os.listdir(self.root)) if os.path.isdir(self.root) else []:
            path = os.path.join(self.root, name)
            if "#" not in name or name.startswith(_TMP_PREFIX) or not os.path.isdir(path):
                continue
            date, size = indexed.get(name, ("", 0))
            entries[name] = CachedPackageEntry(
                moniker=name,
                directory=path,
                manifest=self._load_manifest(path),
                size=size or _directory_size(path),
                install_date=date,
            )
        dropped = set(indexed) - set(entries)
        with self._lock:
            self._entries = entries
            if dropped or set(entries) - set(indexed):
                self._write_index()
        if dropped:
            logger.info("Dropped %d stale cache index entries", len(dropped))

    def _write_index(self) -> None:
        try:
            write_index(
                self.index_path,
                {m: (e.install_date, e.size) for m, e in self._entries.items()},
            )
        except OSError as exc:
            logger.warning("Could not write cache index %s: %s", self.index_path, exc)

    @staticmethod
    def _load_manifest(directory: str) -> Optional[PackageManifest]:
        return read_manifest_file(os.path.join(directory, CONTENT_DIR, MANIFEST_FILE))

    # queries

    def entries(self) -> List[CachedPackageEntry]:
        with self._lock:
            return list(self._entries.values())

    def entry(self, ref: PackageRef) -> Optional[CachedPackageEntry]:
        moniker = _moniker(ref)
        with self._lock:
            entry = self._entries.get(moniker)
        if entry is not None and not os.path.isdir(entry.directory):
            return None
        if entry is None:
            # another process may have installed it since open()
            path = self.package_folder(moniker)
            if os.path.isdir(path):
                entry = CachedPackageEntry(moniker, path, self._load_manifest(path), _directory_size(path))
                with self._lock:
                    self._entries[moniker] = entry
        return entry

    def is_installed(self, ref: PackageRef) -> bool:
        return self.entry(ref) is not None

    def package_folder(self, ref: PackageRef) -> str:
        return os.path.join(self.root, _moniker(ref))

    def content_folder(self, ref: PackageRef) -> str:
        return os.path.join(self.package_folder(ref), CONTENT_DIR)

    def read_manifest(self, ref: PackageRef) -> Optional[PackageManifest]:
        """Manifest of an installed package; None (a miss) when not installed."""
        folder = self.package_folder(ref)
        if not os.path.isdir(folder):
            return None
        return self._load_manifest(folder)

    def cached_versions(self, package_ids: Iterable[str]) -> List[str]:
        wanted = {pid.lower() for pid in package_ids}
        return [e.version for e in self.entries() if e.package_id.lower() in wanted]

    def highest_cached_version(self, package_ids: Iterable[str], version_range: str = "") -> Optional[str]:
        versions = [v for v in self.cached_versions(package_ids) if _is_cached_version(v)]
        return highest_version(versions, version_range)

    # mutation

    def install(self, ref: PackageRef, data: bytes) -> CachedPackageEntry:
        """Extract a package archive into the folder for ``ref``.

        The archive is unpacked next to the target and renamed into place,
        so a failed install never leaves a folder behind.

        Raises:
            tarfile.TarError: the archive is corrupt.
            OSError: the cache directory is not writable.
        """
        moniker = _moniker(ref)
        target = self.package_folder(moniker)
        os.makedirs(self.root, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=_TMP_PREFIX, dir=self.root)
        try:
            with Timer() as timer:
                with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
                    archive.extractall(path=staging, filter="data")
            if os.path.isdir(target):
                shutil.rmtree(target)
            os.replace(staging, target)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        entry = CachedPackageEntry(
            moniker=moniker,
            directory=target,
            manifest=self._load_manifest(target),
            size=_directory_size(target),
            install_date=datetime.now(timezone.utc).strftime(INSTALL_DATE_FORMAT),
        )
        with self._lock:
            self._entries[moniker] = entry
            self._write_index()

        if is_debug_enabled(logger):
            logger.debug(
                "Package extracted",
                extra=extra_context(
                    event="cache_install",
                    component="cache",
                    outcome="installed",
                    moniker=moniker,
                    size=entry.size,
                    duration_ms=timer.duration_ms()
                )
            )
        return entry

    def delete(self, ref: PackageRef) -> bool:
        """Remove an installed package; returns False when it was not installed."""
        moniker = _moniker(ref)
        folder = self.package_folder(moniker)
        existed = os.path.isdir(folder)
        if existed:
            shutil.rmtree(folder)
        with self._lock:
            removed = self._entries.pop(moniker, None) is not None
            if removed or existed:
                self._write_index()
        if existed:
            logger.info("Removed %s from the package cache", moniker)
        return existed
