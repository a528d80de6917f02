"""Constants used in the project."""
from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    PARSE_ERROR = 3
    RESOLUTION_ERROR = 4


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URLS = [
        "https://packages.fhir.org/",
        "https://packages2.fhir.org/packages/",
    ]
    CI_BASE_URL = "https://build.fhir.org/"
    CI_QAS_URL = "https://build.fhir.org/ig/qas.json"
    CI_BRANCHES_URL = "https://build.fhir.org/branches/"
    PUBLICATION_BASE_URL = "http://hl7.org/fhir/"
    CACHE_DIR = os.path.join("~", ".fhir", "packages")
    INDEX_FILE = "packages.ini"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_CACHE_TTL_SEC = 300

    # -1 never refreshes on its own, 0 always refetches, N refetches after N seconds
    CI_INVALIDATION_SEC = -1
    DEFAULT_BRANCHES = ("main", "master")

    INSTALL_RETRY_MAX = 5
    INSTALL_BACKOFF_BASE_MS = 500
    INSTALL_BACKOFF_JITTER_MS = 1000
    LOCK_TIMEOUT_SEC = 60

    OFFLINE = False

    CONFIG_ENV = "FHIRPKG_CONFIG"
    CONFIG_LOCATIONS = [
        "fhirpkg.yml",
        "fhirpkg.yaml",
        os.path.join("~", ".config", "fhirpkg", "fhirpkg.yml"),
    ]


def _find_config_path(explicit: Optional[str] = None) -> Optional[str]:
    """Return the first existing config file, honoring an explicit path first."""
    candidates = []
    if explicit:
        candidates.append(explicit)
    env_path = os.environ.get(Constants.CONFIG_ENV)
    if env_path:
        candidates.append(env_path)
    candidates.extend(Constants.CONFIG_LOCATIONS)
    for candidate in candidates:
        path = os.path.expanduser(candidate)
        if os.path.isfile(path):
            return path
    return None


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML configuration from an explicit path or the default locations.

    Returns an empty dict when no file exists or the file is not a mapping.
    """
    import yaml  # pylint: disable=import-outside-toplevel

    found = _find_config_path(path)
    if not found:
        return {}
    with open(found, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not a mapping", found)
        return {}
    logger.debug("Loaded config from %s", found)
    return data


def _set_int(attr: str, value: Any) -> None:
    try:
        setattr(Constants, attr, int(value))
    except (TypeError, ValueError):
        logger.debug("Ignoring non-integer config value for %s: %r", attr, value)


def apply_config(cfg: Dict[str, Any]) -> None:
    """Overlay a parsed config mapping onto Constants.

    Unknown keys are ignored; values of the wrong type are skipped.
    """
    if not cfg:
        return

    registries = cfg.get("registries")
    if isinstance(registries, list) and registries:
        Constants.REGISTRY_URLS = [str(r) for r in registries]

    if cfg.get("cache_dir"):
        Constants.CACHE_DIR = str(cfg["cache_dir"])

    if "offline" in cfg:
        Constants.OFFLINE = bool(cfg["offline"])

    ci = cfg.get("ci")
    if isinstance(ci, dict):
        if ci.get("base_url"):
            base = str(ci["base_url"]).rstrip("/") + "/"
            Constants.CI_BASE_URL = base
            Constants.CI_QAS_URL = base + "ig/qas.json"
            Constants.CI_BRANCHES_URL = base + "branches/"
        if "invalidation_sec" in ci:
            _set_int("CI_INVALIDATION_SEC", ci["invalidation_sec"])

    install = cfg.get("install")
    if isinstance(install, dict):
        if "retry_max" in install:
            _set_int("INSTALL_RETRY_MAX", install["retry_max"])
        if "backoff_base_ms" in install:
            _set_int("INSTALL_BACKOFF_BASE_MS", install["backoff_base_ms"])
        if "backoff_jitter_ms" in install:
            _set_int("INSTALL_BACKOFF_JITTER_MS", install["backoff_jitter_ms"])

    lock = cfg.get("lock")
    if isinstance(lock, dict) and "timeout_sec" in lock:
        _set_int("LOCK_TIMEOUT_SEC", lock["timeout_sec"])

    http = cfg.get("http")
    if isinstance(http, dict):
        if "timeout" in http:
            _set_int("REQUEST_TIMEOUT", http["timeout"])
        if "retry_max" in http:
            _set_int("HTTP_RETRY_MAX", http["retry_max"])
        if "cache_ttl_sec" in http:
            _set_int("HTTP_CACHE_TTL_SEC", http["cache_ttl_sec"])
