"""Common interface for package sources (registries and the CI build server)."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Tuple

from fhirpkg.versioning.models import Directive, RegistryManifest

# (status_code, content, error); status 0 means the transport failed
TarballResult = Tuple[int, Optional[bytes], Optional[str]]


class PackageSource(ABC):
    """Capability set shared by every package source."""

    #: True for sources that can serve continuous-integration builds
    supports_ci = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier of the source, used as key in ``manifests_by_source``."""

    @abstractmethod
    def fetch_manifest(self, package_id: str) -> Optional[RegistryManifest]:
        """Return this source's manifest for a package, or None when unknown."""

    @abstractmethod
    def fetch_tarball(self, directive: Directive) -> TarballResult:
        """Download the package archive for a resolved directive."""

    def can_serve(self, directive: Directive) -> bool:
        """CI directives may only be served by CI-capable sources."""
        return directive.is_ci == self.supports_ci
