"""Resolver: turn a parsed directive into a concrete version and download URL."""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from fhirpkg.constants import Constants
from fhirpkg.exceptions import UnresolvedCiError, UnresolvedVersionError
from .compare import compare_versions, highest_version
from .models import Directive, NameClass, PackageVersionInfo, RegistryManifest, VersionClass
from .parser import cache_ids, classify_name, sibling_id
from .releases import release_for

logger = logging.getLogger(__name__)


def reconcile_latest(manifests: Sequence[RegistryManifest]) -> Optional[str]:
    """Pick one ``latest`` across registries that may disagree.

    Agreement wins; otherwise the first registry advertising a version that
    some other registry does not know yet (it is ahead); otherwise the first
    ``latest`` seen; otherwise the highest version anyone lists.
    """
    tags = [m.latest for m in manifests if m.latest]
    if tags:
        if all(tag == tags[0] for tag in tags):
            return tags[0]
        for manifest in manifests:
            if manifest.latest and not all(manifest.latest in other.versions for other in manifests):
                return manifest.latest
        return tags[0]
    return highest_version(v for m in manifests for v in m.versions)


class Resolver:
    """Dispatches resolution on the directive's version class.

    Args:
        sources: registry clients, in preference order. A CI-capable source
            in this list is used as the CI client unless one is passed.
        cache: DiskCache consulted before (and, offline, instead of) the network.
        ci_client: CiBuildClient for ``current`` directives.
        offline: never touch the network; defaults to ``Constants.OFFLINE``.
    """

    def __init__(self, sources: Sequence = (), cache=None, ci_client=None, offline: Optional[bool] = None):
        self.registries = [s for s in sources if not getattr(s, "supports_ci", False)]
        self.ci_client = ci_client or next((s for s in sources if getattr(s, "supports_ci", False)), None)
        self.cache = cache
        self.offline = Constants.OFFLINE if offline is None else offline
        self._manifests: Dict[Tuple[str, str], Optional[RegistryManifest]] = {}

    def resolve(self, directive: Directive) -> Directive:
        """Resolve in place and return the directive.

        A directive that is already resolved is returned untouched, so an
        exact version never changes once set.

        Raises:
            UnresolvedVersionError: no candidate for Latest/Partial/Local/Exact.
            UnresolvedCiError: the CI tag or branch is unknown, or offline
                without a cached copy.
        """
        if directive.is_resolved:
            return directive
        try:
            return self._dispatch(directive)
        except (UnresolvedVersionError, UnresolvedCiError) as first_error:
            sibling = sibling_id(directive)
            if not sibling:
                raise
            logger.info("No match for %s, retrying as %s", directive.package_id, sibling)
            retry = dataclasses.replace(
                directive,
                package_id=sibling,
                name_class=classify_name(sibling)[0],
                manifests_by_source={},
            )
            try:
                self._dispatch(retry)
            except (UnresolvedVersionError, UnresolvedCiError):
                raise first_error from None
            for f in dataclasses.fields(Directive):
                if f.name != "raw_text":
                    setattr(directive, f.name, getattr(retry, f.name))
            return directive

    def _dispatch(self, directive: Directive) -> Directive:
        vc = directive.version_class
        if vc == VersionClass.CONTINUOUS_INTEGRATION:
            return self._resolve_ci(directive)
        if vc == VersionClass.LOCAL:
            return self._resolve_local(directive)
        if vc == VersionClass.LATEST:
            return self._resolve_latest(directive)
        if vc == VersionClass.PARTIAL:
            return self._resolve_partial(directive)
        if vc in (VersionClass.EXACT, VersionClass.NON_SEMVER):
            return self._resolve_exact(directive, directive.version_literal)
        raise UnresolvedVersionError(directive.raw_text, f"unsupported version '{directive.version_literal}'")

    # helpers

    def _query_id(self, directive: Directive) -> str:
        if directive.name_class == NameClass.CORE_PARTIAL:
            return directive.package_id + ".core"
        return directive.package_id

    def _manifests_for(self, directive: Directive) -> List[RegistryManifest]:
        """Fetch (once per resolver) every registry's manifest for the directive."""
        if self.offline:
            return []
        query_id = self._query_id(directive)
        found: List[RegistryManifest] = []
        for registry in self.registries:
            key = (registry.name, query_id)
            if key not in self._manifests:
                self._manifests[key] = registry.fetch_manifest(query_id)
            manifest = self._manifests[key]
            if manifest is not None:
                directive.manifests_by_source[registry.name] = manifest.copy()
                found.append(manifest)
        return found

    def _cached_hit(self, directive: Directive, version: str) -> Optional[str]:
        """Package id under which ``version`` is cached, if any."""
        if self.cache is None:
            return None
        ids = cache_ids(directive)
        if directive.name_class == NameClass.CORE_PARTIAL:
            ids.reverse()
        for package_id in ids:
            if self.cache.is_installed(f"{package_id}#{version}"):
                return package_id
        return None

    def _highest_cached(self, directive: Directive, version_range: str = "") -> Optional[str]:
        if self.cache is None:
            return None
        return self.cache.highest_cached_version(cache_ids(directive), version_range)

    def _known_version_info(self, directive: Directive, version: str) -> Optional[PackageVersionInfo]:
        for key, manifest in self._manifests.items():
            if manifest is not None and key[1] == self._query_id(directive) and version in manifest.versions:
                return manifest.versions[version]
        return None

    def _apply_version_info(self, directive: Directive, version: str, info: Optional[PackageVersionInfo]) -> None:
        directive.resolved_version = version
        if info is not None:
            directive.tarball_url = info.tarball_url or None
            directive.checksum = info.checksum or None
            if not directive.release:
                release = release_for(info.fhir_version)
                directive.release = release.value if release is not None else ""
        if directive.name_class == NameClass.CORE_PARTIAL:
            directive.package_id = self._query_id(directive)
            directive.name_class = NameClass.CORE_FULL
        if not directive.tarball_url and self.registries:
            directive.tarball_url = self.registries[0].tarball_url(directive.package_id, version)

    # version classes

    def _resolve_exact(self, directive: Directive, version: str) -> Directive:
        cached_id = self._cached_hit(directive, version)
        if cached_id is not None:
            info = self._known_version_info(directive, version)
            directive.resolved_version = version
            directive.package_id = cached_id
            directive.name_class = classify_name(cached_id)[0]
            if info is not None:
                directive.tarball_url = info.tarball_url or None
                directive.checksum = info.checksum or None
            if not directive.tarball_url:
                if self.registries:
                    directive.tarball_url = self.registries[0].tarball_url(cached_id, version)
                else:
                    directive.tarball_url = Path(self.cache.package_folder(directive)).as_uri()
            logger.debug("Using cached %s", directive.moniker)
            return directive

        if self.offline:
            raise UnresolvedVersionError(directive.raw_text, "not cached and offline")

        for manifest in self._manifests_for(directive):
            info = manifest.versions.get(version)
            if info is not None:
                self._apply_version_info(directive, version, info)
                return directive

        if directive.publication_url:
            directive.resolved_version = version
            directive.tarball_url = directive.publication_url
            logger.info("Falling back to the publication site for %s", directive.raw_text)
            return directive

        raise UnresolvedVersionError(directive.raw_text, f"version {version} is not listed by any registry")

    def _resolve_local(self, directive: Directive) -> Directive:
        cached_id = self._cached_hit(directive, directive.version_literal or "dev")
        if cached_id is None:
            raise UnresolvedVersionError(directive.raw_text, "local build is not in the package cache")
        directive.package_id = cached_id
        directive.resolved_version = directive.version_literal or "dev"
        return directive

    def _resolve_ci(self, directive: Directive) -> Directive:
        if self.offline or self.ci_client is None:
            if self.cache is not None and self.cache.is_installed(directive):
                manifest = self.cache.read_manifest(directive)
                directive.resolved_version = manifest.version if manifest is not None else directive.ci_tag
                directive.tarball_url = Path(self.cache.package_folder(directive)).as_uri()
                return directive
            reason = "offline and not cached" if self.offline else "no CI build source configured"
            raise UnresolvedCiError(directive.raw_text, reason)
        return self.ci_client.resolve(directive)

    def _resolve_latest(self, directive: Directive) -> Directive:
        manifests = self._manifests_for(directive)
        from_registries = reconcile_latest(manifests) if manifests else None
        from_cache = self._highest_cached(directive)

        version = from_registries
        if from_cache and compare_versions(from_cache, version) > 0:
            version = from_cache
        if not version:
            raise UnresolvedVersionError(directive.raw_text, "no versions available")

        logger.debug("Latest %s resolved to %s (registries %s, cache %s)", directive.package_id, version, from_registries, from_cache)
        return self._resolve_exact(directive, version)

    def _resolve_partial(self, directive: Directive) -> Directive:
        version_range = directive.version_literal
        manifests = self._manifests_for(directive)

        candidate: Optional[str] = None
        for manifest in manifests:
            if manifest.latest and highest_version([manifest.latest], version_range):
                candidate = manifest.latest
                break
        if candidate is None:
            candidate = highest_version((v for m in manifests for v in m.versions), version_range)

        from_cache = self._highest_cached(directive, version_range)
        if from_cache and compare_versions(from_cache, candidate) > 0:
            candidate = from_cache
        if not candidate:
            raise UnresolvedVersionError(directive.raw_text, f"no version matches {version_range}")
        return self._resolve_exact(directive, candidate)
