"""Shared HTTP transport used by the registry and CI build clients.

All helpers report the HTTP status and body separately so callers can tell
a 404 apart from a transport failure. Transport failures never raise: they
come back as status 0 with the error text in place of the body.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

import requests

from fhirpkg.constants import Constants
from fhirpkg.common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)

# In-memory cache for small text responses (manifests, listings)
_http_cache: Dict[str, Tuple[Tuple[int, Dict[str, str], str], float]] = {}
_http_cache_lock = threading.Lock()


def _get_cache_key(method: str, url: str, headers: Optional[Dict[str, str]] = None) -> str:
    headers_str = str(sorted(headers.items())) if headers else ""
    return f"{method}:{url}:{headers_str}"


def _is_cache_valid(cached_time: float) -> bool:
    return time.time() - cached_time < Constants.HTTP_CACHE_TTL_SEC


def clear_cache() -> None:
    """Drop every cached response."""
    with _http_cache_lock:
        _http_cache.clear()


def _log_exception(safe_target: str, action: str, outcome: str, attempt: int) -> None:
    if is_debug_enabled(logger):
        logger.debug(
            "HTTP request exception",
            extra=extra_context(
                event="http_exception",
                component="http_client",
                action=action,
                outcome=outcome,
                attempt=attempt,
                target=safe_target
            )
        )


def robust_get(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    use_cache: bool = True,
    **kwargs: Any
) -> Tuple[int, Dict[str, str], str]:
    """Perform a GET with timeout, retries and optional caching.

    Args:
        url: Target URL.
        headers: Optional request headers.
        use_cache: Serve from and store into the in-memory response cache.
        **kwargs: Passed through to requests.get.

    Returns:
        Tuple of (status_code, headers_dict, text). Status is 0 when every
        attempt failed at the transport level.
    """
    cache_key = _get_cache_key("GET", url, headers)
    safe_target = safe_url(url)

    if use_cache:
        with _http_cache_lock:
            entry = _http_cache.get(cache_key)
        if entry is not None and _is_cache_valid(entry[1]):
            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP cache hit",
                    extra=extra_context(
                        event="cache_hit",
                        component="http_client",
                        action="GET",
                        target=safe_target
                    )
                )
            return entry[0]

    last_exception = None

    for attempt in range(Constants.HTTP_RETRY_MAX):
        with Timer() as t:
            try:
                response = requests.get(
                    url,
                    timeout=Constants.REQUEST_TIMEOUT,
                    headers=headers,
                    **kwargs
                )
            except requests.Timeout:
                last_exception = "timeout"
                _log_exception(safe_target, "GET", "timeout", attempt + 1)
                continue
            except requests.RequestException as exc:
                last_exception = str(exc)
                _log_exception(safe_target, "GET", "request_exception", attempt + 1)
                continue

            result = (response.status_code, dict(response.headers), response.text)
            # server errors are never cached
            if use_cache and response.status_code < 500:
                with _http_cache_lock:
                    _http_cache[cache_key] = (result, time.time())

            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response",
                    extra=extra_context(
                        event="http_response",
                        component="http_client",
                        action="GET",
                        status_code=response.status_code,
                        duration_ms=t.duration_ms(),
                        target=safe_target
                    )
                )
            return result

    return 0, {}, f"Request failed after {Constants.HTTP_RETRY_MAX} attempts: {last_exception}"


def get_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    use_cache: bool = True,
    **kwargs: Any
) -> Tuple[int, Dict[str, str], Optional[Any]]:
    """Perform a GET and parse the body as JSON.

    Args:
        url: Target URL
        headers: Optional request headers
        use_cache: Forwarded to robust_get
        **kwargs: Additional requests.get parameters

    Returns:
        Tuple of (status_code, headers_dict, parsed_json_or_none)
    """
    status_code, response_headers, text = robust_get(url, headers=headers, use_cache=use_cache, **kwargs)

    if status_code == 200 and text:
        try:
            return status_code, response_headers, json.loads(text)
        except json.JSONDecodeError:
            if is_debug_enabled(logger):
                logger.debug(
                    "JSON decode error",
                    extra=extra_context(
                        event="parse",
                        component="http_client",
                        action="get_json",
                        outcome="json_decode_error",
                        status_code=status_code,
                        target=safe_url(url)
                    )
                )
            return status_code, response_headers, None

    return status_code, response_headers, None


def get_text(url: str, *, use_cache: bool = True) -> Tuple[int, Optional[str]]:
    """GET a text document; the body is None unless the status is 200."""
    status_code, _, text = robust_get(url, use_cache=use_cache)
    if status_code == 200:
        return status_code, text
    return status_code, None


def get_bytes(url: str, *, headers: Optional[Dict[str, str]] = None) -> Tuple[int, Optional[bytes], Optional[str]]:
    """Download a binary body (package tarballs). Never cached.

    Returns:
        Tuple of (status_code, content_or_none, error_or_none). Status is 0
        on a transport failure.
    """
    safe_target = safe_url(url)
    with Timer() as t:
        try:
            response = requests.get(url, timeout=Constants.REQUEST_TIMEOUT, headers=headers)
        except requests.Timeout:
            _log_exception(safe_target, "GET", "timeout", 1)
            return 0, None, f"timed out after {Constants.REQUEST_TIMEOUT} seconds"
        except requests.RequestException as exc:
            _log_exception(safe_target, "GET", "request_exception", 1)
            return 0, None, str(exc)

    if is_debug_enabled(logger):
        logger.debug(
            "HTTP download",
            extra=extra_context(
                event="http_response",
                component="http_client",
                action="download",
                status_code=response.status_code,
                duration_ms=t.duration_ms(),
                size=len(response.content) if response.status_code == 200 else None,
                target=safe_target
            )
        )
    if response.status_code != 200:
        return response.status_code, None, f"HTTP {response.status_code}"
    return response.status_code, response.content, None
