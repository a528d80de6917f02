"""Optional ``packages.ini`` side index kept next to the cached package folders.

Layout::

    [cache]
    version = 3

    [packages]
    hl7.fhir.r4.core#4.0.1 = 20240101120000

    [package-sizes]
    hl7.fhir.r4.core#4.0.1 = 51234567

The directories on disk are authoritative; this file only carries install
dates and sizes across runs.
"""
from __future__ import annotations

import configparser
import logging
import os
import tempfile
from typing import Dict, Tuple

logger = logging.getLogger(__name__)

INDEX_VERSION = "3"
INSTALL_DATE_FORMAT = "%Y%m%d%H%M%S"


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None, delimiters=("=",))
    parser.optionxform = str  # monikers are case sensitive
    return parser


def read_index(path: str) -> Dict[str, Tuple[str, int]]:
    """Return ``{moniker: (install_date, size)}``; empty when absent or unreadable."""
    if not os.path.isfile(path):
        return {}
    parser = _new_parser()
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        logger.warning("Ignoring unreadable cache index %s: %s", path, exc)
        return {}

    entries: Dict[str, Tuple[str, int]] = {}
    if parser.has_section("packages"):
        for moniker, date in parser.items("packages"):
            entries[moniker] = (date, 0)
    if parser.has_section("package-sizes"):
        for moniker, size in parser.items("package-sizes"):
            try:
                entries[moniker] = (entries.get(moniker, ("", 0))[0], int(size))
            except ValueError:
                continue
    return entries


def write_index(path: str, entries: Dict[str, Tuple[str, int]]) -> None:
    """Rewrite the side index from ``{moniker: (install_date, size)}``."""
    parser = _new_parser()
    parser["cache"] = {"version": INDEX_VERSION}
    parser["packages"] = {m: date for m, (date, _) in sorted(entries.items())}
    parser["package-sizes"] = {m: str(size) for m, (_, size) in sorted(entries.items())}
    # one temp file per writer; processes sharing a cache may write concurrently
    fd, tmp_path = tempfile.mkstemp(prefix=".packages-", suffix=".ini", dir=os.path.dirname(path) or ".")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            parser.write(fh)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
