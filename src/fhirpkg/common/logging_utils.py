"""Centralized logging helpers.

Provides a single root configuration entry point, structured ``extra``
payloads for DEBUG traces, a small timing helper, and redaction of
credentials before URLs reach the log.
"""
from __future__ import annotations

import logging
import os
import re
import time
import urllib.parse
from typing import Any, Dict, Optional

from fhirpkg.constants import Constants

LOG_LEVEL_ENV = "FHIRPKG_LOG_LEVEL"

_SENSITIVE_QUERY_KEYS = {"token", "access_token", "api_key", "apikey", "key", "password", "secret", "sig"}
_TOKEN_PATTERN = re.compile(r"(?i)(bearer\s+|token[=:]\s*)([A-Za-z0-9._\-]+)")

# LogRecord attributes that cannot be overwritten through ``extra``
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_configured = False


def configure_logging() -> None:
    """Install the root handler once; the level comes from FHIRPKG_LOG_LEVEL."""
    global _configured  # pylint: disable=global-statement
    root = logging.getLogger()
    level_name = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records from this logger would be emitted."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra`` mapping for structured logs.

    None values are dropped and keys that collide with LogRecord
    attributes are prefixed with ``ctx_``.
    """
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        out[f"ctx_{key}" if key in _RESERVED else key] = value
    return out


def redact(text: Optional[str]) -> str:
    """Mask bearer tokens and token=... fragments in free text."""
    if not text:
        return ""
    return _TOKEN_PATTERN.sub(lambda m: m.group(1) + "[REDACTED]", text)


def safe_url(url: str) -> str:
    """Strip userinfo credentials and sensitive query values from a URL."""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = "[REDACTED]@" + netloc.rsplit("@", 1)[1]
    query = parts.query
    if query:
        pairs = urllib.parse.parse_qsl(query, keep_blank_values=True)
        query = urllib.parse.urlencode(
            [(k, "[REDACTED]" if k.lower() in _SENSITIVE_QUERY_KEYS else v) for k, v in pairs],
            safe="[]",
        )
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring elapsed wall time."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds, measured up to now while still inside the block."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
