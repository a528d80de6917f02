"""npm-style FHIR package registry client (packages.fhir.org and alternates)."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fhirpkg.common.http_client import get_bytes, get_json
from fhirpkg.common.logging_utils import extra_context, is_debug_enabled, safe_url
from fhirpkg.versioning.models import Directive, PackageVersionInfo, RegistryManifest
from fhirpkg.versioning.parser import CORE_FULL_RE, CORE_PARTIAL_RE, classify_name
from fhirpkg.versioning.releases import release_for
from .base import PackageSource, TarballResult

logger = logging.getLogger(__name__)

UNKNOWN_MARKER = "??"

MANIFEST_HEADERS = {"Accept": "application/json"}


def is_core_package(name: str) -> bool:
    return bool(CORE_FULL_RE.match(name) or CORE_PARTIAL_RE.match(name))


def parse_manifest(data: Dict[str, Any], source: str = "") -> Optional[RegistryManifest]:
    """Build a RegistryManifest from the registry wire shape.

    Version entries whose kind or release is missing or ``??`` are dropped
    unless the value can be inferred; only core packages allow inference.
    """
    if not isinstance(data, dict) or not isinstance(data.get("versions"), dict):
        return None

    versions: Dict[str, PackageVersionInfo] = {}
    for key, raw in data["versions"].items():
        if not isinstance(raw, dict):
            continue
        if not isinstance(raw.get("dist") or {}, dict) or not isinstance(raw.get("dependencies") or {}, dict):
            continue
        info = PackageVersionInfo.from_json(key, raw)
        name = info.name or str(data.get("name") or "")
        # core ids name their own release (hl7.fhir.r2.core), whatever the version says
        release = release_for(classify_name(name)[1]) if is_core_package(name) else None
        release = release or release_for(key)

        if not info.kind or info.kind == UNKNOWN_MARKER:
            if not is_core_package(name):
                continue
            info.kind = "Core"

        is_core_kind = info.kind.lower() == "core"
        if not info.fhir_version or info.fhir_version == UNKNOWN_MARKER:
            if not (is_core_kind and release is not None):
                continue

        # core packages always describe their own release
        if is_core_kind and release is not None:
            info.fhir_version = release.long_version

        versions[key] = info

    dist_tags = data.get("dist-tags")
    if not isinstance(dist_tags, dict):
        dist_tags = {}

    return RegistryManifest(
        id=str(data.get("_id") or data.get("name") or ""),
        name=str(data.get("name") or ""),
        description=str(data.get("description") or ""),
        dist_tags={str(k): str(v) for k, v in dist_tags.items()},
        versions=versions,
        source=source,
    )


class RegistryClient(PackageSource):
    """One registry endpoint; failures are reported as None, never raised."""

    def __init__(self, base_url: str):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"

    @property
    def name(self) -> str:
        return self.base_url

    def __repr__(self) -> str:
        return f"RegistryClient({self.base_url!r})"

    def manifest_url(self, package_id: str) -> str:
        return f"{self.base_url}{package_id}"

    def tarball_url(self, package_id: str, version: str) -> str:
        return f"{self.base_url}{package_id}/{version}"

    def fetch_manifest(self, package_id: str) -> Optional[RegistryManifest]:
        url = self.manifest_url(package_id)
        status, _, data = get_json(url, headers=MANIFEST_HEADERS)

        if status == 404:
            if is_debug_enabled(logger):
                logger.debug(
                    "Package not listed",
                    extra=extra_context(
                        event="registry_manifest",
                        component="registry",
                        outcome="not_found",
                        package=package_id,
                        target=safe_url(url)
                    )
                )
            return None
        if status != 200 or data is None:
            logger.warning(
                "Registry %s failed for %s (status %s)",
                safe_url(self.base_url),
                package_id,
                status,
            )
            return None

        try:
            manifest = parse_manifest(data, source=self.name)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning(
                "Registry %s returned a malformed manifest for %s: %s", safe_url(self.base_url), package_id, exc
            )
            return None
        if manifest is None:
            logger.warning("Registry %s returned a malformed manifest for %s", safe_url(self.base_url), package_id)
            return None
        if manifest.name.lower() != package_id.lower() or not manifest.versions:
            if is_debug_enabled(logger):
                logger.debug(
                    "Manifest rejected",
                    extra=extra_context(
                        event="registry_manifest",
                        component="registry",
                        outcome="mismatch_or_empty",
                        package=package_id,
                        manifest_name=manifest.name,
                        version_count=len(manifest.versions)
                    )
                )
            return None
        return manifest

    def fetch_tarball(self, directive: Directive) -> TarballResult:
        version = directive.resolved_version or directive.version_literal
        url = self.tarball_url(directive.package_id, version)
        manifest = directive.manifests_by_source.get(self.name)
        if manifest is not None:
            info = manifest.versions.get(version)
            if info is None:
                return 404, None, f"{version} not listed by {self.base_url}"
            url = info.tarball_url or url
        return get_bytes(url)
