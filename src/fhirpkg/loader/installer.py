"""Loader/installer: resolve, install (with retries and a per-package lock) and load packages."""
from __future__ import annotations

import hashlib
import logging
import os
import random
import tarfile
import time
from typing import Callable, Optional, Sequence, Set

from fhirpkg.cache.disk import CONTENT_DIR, MANIFEST_FILE, DiskCache, read_manifest_file
from fhirpkg.cache.lock import PackageLock, lock_name
from fhirpkg.common.http_client import get_bytes
from fhirpkg.common.logging_utils import Timer, extra_context, is_debug_enabled
from fhirpkg.constants import Constants
from fhirpkg.exceptions import ArtifactParseError, MissingArtifactError, NetworkInstallError
from fhirpkg.registry.base import PackageSource
from fhirpkg.versioning.models import Directive, PackageManifest, VersionClass
from fhirpkg.versioning.parser import parse_directive
from fhirpkg.versioning.resolver import Resolver
from .artifacts import (
    ArtifactParser,
    DefinitionCollection,
    JsonArtifactParser,
    content_type_for,
    files_in_load_order,
    is_known_missing,
    read_package_index,
)

logger = logging.getLogger(__name__)

SnapshotGenerator = Callable[[DefinitionCollection], None]


class PackageLoader:
    """Installs directives into a DiskCache and hands their contents to a parser.

    Args:
        cache: opened DiskCache.
        resolver: Resolver sharing the same cache.
        sources: package sources tried in order on every install attempt.
            Defaults to the resolver's registries plus its CI client.
        parser: ArtifactParser; defaults to JsonArtifactParser.
        snapshot_generator: called once per load with the full collection.
        sleep: delay function between retry passes, in seconds.
    """

    def __init__(
        self,
        cache: DiskCache,
        resolver: Resolver,
        sources: Optional[Sequence[PackageSource]] = None,
        parser: Optional[ArtifactParser] = None,
        snapshot_generator: Optional[SnapshotGenerator] = None,
        lock: Optional[PackageLock] = None,
        retry_max: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cache = cache
        self.resolver = resolver
        if sources is None:
            sources = list(resolver.registries) + ([resolver.ci_client] if resolver.ci_client else [])
        self.sources = list(sources)
        self.parser = parser or JsonArtifactParser()
        self.snapshot_generator = snapshot_generator
        self.lock = lock or PackageLock(cache.root)
        self.retry_max = Constants.INSTALL_RETRY_MAX if retry_max is None else retry_max
        self._sleep = sleep

    @property
    def ci_client(self):
        return next((s for s in self.sources if s.supports_ci), None)

    # installation

    def directive_for(self, text: str) -> Directive:
        """Parse directive text; build-server URLs become CI directives.

        Raises:
            DirectiveParseError: the text is neither a URL we know nor a directive.
        """
        if text.startswith(("http://", "https://")) and self.ci_client is not None:
            directive = self.ci_client.directive_from_url(text)
            if directive is not None:
                return directive
        return parse_directive(text)

    def install(self, directive: Directive) -> str:
        """Resolve and install one directive; returns its cache moniker.

        Raises:
            UnresolvedVersionError, UnresolvedCiError: resolution failed.
            NetworkInstallError: every source failed on every attempt.
        """
        self.resolver.resolve(directive)
        moniker = directive.moniker

        with self.lock.hold(lock_name(moniker)):
            # another invocation may have finished while we waited
            if directive.is_ci:
                self._install_ci(directive)
            elif not self.cache.is_installed(moniker):
                self._install_from_sources(directive)
            else:
                logger.debug("%s is already cached", moniker)
        return moniker

    def _backoff(self, attempt: int) -> None:
        delay_ms = Constants.INSTALL_BACKOFF_BASE_MS + random.randint(0, Constants.INSTALL_BACKOFF_JITTER_MS)
        logger.info("Install attempt %d failed, retrying in %d ms", attempt, delay_ms)
        self._sleep(delay_ms / 1000.0)

    def _install_ci(self, directive: Directive) -> None:
        client = self.ci_client
        if client is None or self.resolver.offline:
            if self.cache.is_installed(directive):
                return
            raise NetworkInstallError(directive.moniker, 0, "no CI build source available")

        last_error: Optional[str] = None
        for attempt in range(1, self.retry_max + 1):
            try:
                client.install_or_update(directive, self.cache)
                return
            except NetworkInstallError as exc:
                last_error = exc.last_error
            if attempt < self.retry_max:
                self._backoff(attempt)
        raise NetworkInstallError(directive.moniker, self.retry_max, last_error)

    def _verify(self, directive: Directive, content: bytes) -> Optional[str]:
        if directive.checksum and hashlib.sha1(content).hexdigest() != directive.checksum.lower():
            return "checksum mismatch"
        return None

    def _try_install(self, directive: Directive, content: bytes) -> Optional[str]:
        error = self._verify(directive, content)
        if error:
            return error
        try:
            self.cache.install(directive, content)
        except (tarfile.TarError, OSError, EOFError) as exc:
            return f"extraction failed: {exc}"
        return None

    def _install_from_sources(self, directive: Directive) -> None:
        if self.resolver.offline:
            raise NetworkInstallError(directive.moniker, 0, "offline and not cached")

        sources = [s for s in self.sources if s.can_serve(directive)]
        publication = directive.publication_url if directive.version_class == VersionClass.EXACT else None
        last_error: Optional[str] = None

        for attempt in range(1, self.retry_max + 1):
            for source in sources:
                with Timer() as timer:
                    status, content, error = source.fetch_tarball(directive)
                if status == 200 and content:
                    error = self._try_install(directive, content)
                    if error is None:
                        logger.info("Installed %s from %s", directive.moniker, source.name)
                        if is_debug_enabled(logger):
                            logger.debug(
                                "Package installed",
                                extra=extra_context(
                                    event="install",
                                    component="loader",
                                    outcome="installed",
                                    moniker=directive.moniker,
                                    source=source.name,
                                    attempt=attempt,
                                    duration_ms=timer.duration_ms()
                                )
                            )
                        return
                last_error = error or f"HTTP {status} from {source.name}"

            if publication:
                status, content, error = get_bytes(publication)
                if status == 200 and content:
                    error = self._try_install(directive, content)
                    if error is None:
                        logger.info("Installed %s from %s", directive.moniker, publication)
                        return
                last_error = error or f"HTTP {status} from {publication}"

            if attempt < self.retry_max:
                self._backoff(attempt)

        raise NetworkInstallError(directive.moniker, self.retry_max, last_error)

    # loading

    def load(self, inputs: Sequence[str], name: Optional[str] = None) -> DefinitionCollection:
        """Install and parse every input plus its dependencies into one collection.

        Inputs are directive strings, build-server URLs or directories holding
        an already extracted package. The snapshot generator runs once, after
        everything is loaded.
        """
        collection = DefinitionCollection(name=name or "")
        loading: Set[str] = set()
        for text in inputs:
            if os.path.isdir(text):
                self._load_directory(text, collection, loading)
                continue
            directive = self.directive_for(text)
            if not collection.name:
                collection.name = directive.package_id
            self._load_directive(directive, collection, loading)

        if self.snapshot_generator is not None:
            with Timer() as timer:
                self.snapshot_generator(collection)
            collection.snapshots_generated = True
            logger.info("Generated snapshots for %s in %d ms", collection.name, timer.duration_ms())
        return collection

    def _load_directive(self, directive: Directive, collection: DefinitionCollection, loading: Set[str]) -> None:
        self.resolver.resolve(directive)
        moniker = directive.moniker
        if collection.is_loaded(moniker) or moniker in loading:
            return
        loading.add(moniker)
        self.install(directive)

        manifest = self.cache.read_manifest(moniker)
        if manifest is None:
            raise MissingArtifactError(moniker, f"{CONTENT_DIR}/{MANIFEST_FILE}")
        self._load_dependencies(manifest, collection, loading)
        self._load_contents(moniker, self.cache.content_folder(moniker), manifest, collection)

    def _load_directory(self, path: str, collection: DefinitionCollection, loading: Set[str]) -> None:
        content_dir = os.path.join(path, CONTENT_DIR)
        if not os.path.isdir(content_dir):
            content_dir = path
        manifest = read_manifest_file(os.path.join(content_dir, MANIFEST_FILE))
        if manifest is None:
            raise MissingArtifactError(path, MANIFEST_FILE)
        moniker = f"{manifest.name}#{manifest.version}" if manifest.name else os.path.abspath(path)
        if collection.is_loaded(moniker) or moniker in loading:
            return
        if not collection.name:
            collection.name = manifest.name
        loading.add(moniker)
        self._load_dependencies(manifest, collection, loading)
        self._load_contents(moniker, content_dir, manifest, collection)

    def _load_dependencies(self, manifest: PackageManifest, collection: DefinitionCollection, loading: Set[str]) -> None:
        for dep_id, dep_version in manifest.dependencies.items():
            dependency = parse_directive(f"{dep_id}#{dep_version}")
            self._load_directive(dependency, collection, loading)

    def _load_contents(
        self,
        moniker: str,
        content_dir: str,
        manifest: PackageManifest,
        collection: DefinitionCollection,
    ) -> None:
        files = read_package_index(content_dir)
        collection.add_manifest(moniker, manifest)
        collection.contents[moniker] = files

        loaded = 0
        for resource_type, package_file in files_in_load_order(files):
            path = os.path.join(content_dir, package_file.filename)
            if not os.path.isfile(path):
                if is_known_missing(package_file.filename):
                    logger.debug("Skipping known missing file %s:%s", moniker, package_file.filename)
                    continue
                raise MissingArtifactError(moniker, package_file.filename)
            with open(path, "rb") as fh:
                content = fh.read()
            artifact = self.parser.parse(content, content_type_for(package_file.filename), resource_type)
            if artifact is None:
                raise ArtifactParseError(moniker, package_file.filename, resource_type)
            collection.add(resource_type, artifact)
            loaded += 1
        logger.info("Loaded %d definitions from %s", loaded, moniker)

