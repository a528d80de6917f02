"""Named cross-process lock backed by lock files in the cache directory."""
from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from typing import Iterator, Optional

from filelock import FileLock, Timeout

from fhirpkg.common.logging_utils import extra_context, is_debug_enabled
from fhirpkg.constants import Constants

logger = logging.getLogger(__name__)

LOCK_DIR = ".locks"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def lock_name(moniker: str) -> str:
    return "pkg-" + moniker


class PackageLock:
    """Serializes work on one name across threads and processes.

    Each acquisition opens its own lock file handle, so two threads of one
    process exclude each other just like two processes do.
    """

    def __init__(self, cache_root: str, timeout: Optional[float] = None):
        self.directory = os.path.join(cache_root, LOCK_DIR)
        self.timeout = Constants.LOCK_TIMEOUT_SEC if timeout is None else timeout

    def path_for(self, name: str) -> str:
        return os.path.join(self.directory, _UNSAFE.sub("_", name) + ".lock")

    def acquire(self, name: str) -> FileLock:
        """Block until ``name`` is held; returns the handle for :meth:`release`.

        Raises:
            filelock.Timeout: the lock was not obtained within the timeout.
        """
        os.makedirs(self.directory, exist_ok=True)
        handle = FileLock(self.path_for(name), timeout=self.timeout)
        try:
            handle.acquire()
        except Timeout:
            logger.error("Timed out after %ss waiting for lock %s", self.timeout, name)
            raise
        if is_debug_enabled(logger):
            logger.debug("Lock acquired", extra=extra_context(event="lock", component="cache", outcome="acquired", lock=name))
        return handle

    @staticmethod
    def release(handle: FileLock) -> None:
        handle.release()

    @contextmanager
    def hold(self, name: str) -> Iterator[FileLock]:
        handle = self.acquire(name)
        try:
            yield handle
        finally:
            self.release(handle)
