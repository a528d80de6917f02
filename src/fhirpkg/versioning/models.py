"""Data models for directives, registry manifests, CI builds and cache entries."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .compare import highest_version


class NameClass(Enum):
    """How a package id is named."""
    CORE_FULL = "CoreFull"
    CORE_PARTIAL = "CorePartial"
    GUIDE_WITH_SUFFIX = "GuideWithSuffix"
    GUIDE_WITHOUT_SUFFIX = "GuideWithoutSuffix"

    @property
    def is_core(self) -> bool:
        return self in (NameClass.CORE_FULL, NameClass.CORE_PARTIAL)


class VersionClass(Enum):
    """How a version literal is to be resolved."""
    EXACT = "Exact"
    PARTIAL = "Partial"
    LATEST = "Latest"
    LOCAL = "Local"
    CONTINUOUS_INTEGRATION = "ContinuousIntegration"
    NON_SEMVER = "NonSemVer"
    UNKNOWN = "Unknown"


CI_TAG = "current"
LOCAL_TAG = "dev"


@dataclass
class PackageVersionInfo:
    """One version entry of a registry manifest."""
    name: str
    version: str
    date: str = ""
    fhir_version: str = ""
    kind: str = ""
    description: str = ""
    dependencies: Dict[str, str] = field(default_factory=dict)
    tarball_url: str = ""
    checksum: str = ""

    @classmethod
    def from_json(cls, version: str, data: Dict[str, Any]) -> "PackageVersionInfo":
        dist = data.get("dist") or {}
        return cls(
            name=str(data.get("name") or ""),
            version=str(data.get("version") or version),
            date=str(data.get("date") or ""),
            fhir_version=str(data.get("fhirVersion") or ""),
            kind=str(data.get("kind") or ""),
            description=str(data.get("description") or ""),
            dependencies=dict(data.get("dependencies") or {}),
            tarball_url=str(dist.get("tarball") or ""),
            checksum=str(dist.get("shasum") or ""),
        )


@dataclass
class RegistryManifest:
    """One registry's view of a package."""
    id: str
    name: str
    description: str = ""
    dist_tags: Dict[str, str] = field(default_factory=dict)
    versions: Dict[str, PackageVersionInfo] = field(default_factory=dict)
    source: str = ""

    @property
    def latest(self) -> Optional[str]:
        return self.dist_tags.get("latest") or None

    def highest_version(self, version_range: str = "") -> Optional[str]:
        """Highest known version, optionally restricted to an x-range root."""
        return highest_version(self.versions.keys(), version_range)

    def copy(self) -> "RegistryManifest":
        """Deep copy, so directives never alias a client's manifest."""
        return copy.deepcopy(self)


@dataclass
class Directive:
    """A package request, mutated in place as resolution proceeds."""
    raw_text: str
    package_id: str
    name_class: NameClass
    version_literal: str
    version_class: VersionClass
    release: str = ""
    resolved_version: Optional[str] = None
    tarball_url: Optional[str] = None
    checksum: Optional[str] = None
    publication_url: Optional[str] = None
    ci_url: Optional[str] = None
    ci_org: Optional[str] = None
    ci_branch: Optional[str] = None
    build_date: Optional[datetime] = None
    manifests_by_source: Dict[str, RegistryManifest] = field(default_factory=dict)

    @property
    def is_ci(self) -> bool:
        return self.version_class == VersionClass.CONTINUOUS_INTEGRATION

    @property
    def is_resolved(self) -> bool:
        if not self.resolved_version:
            return False
        # local builds never carry a download location
        return self.version_class == VersionClass.LOCAL or bool(self.tarball_url)

    @property
    def ci_tag(self) -> str:
        """Tag form of a CI request: ``current`` or ``current$<branch>``."""
        return f"{CI_TAG}${self.ci_branch}" if self.ci_branch else CI_TAG

    @property
    def moniker(self) -> str:
        """Cache key for this directive.

        CI packages always live under their tag so repeated resolution
        converges on one directory per branch.
        """
        if self.is_ci:
            return f"{self.package_id}#{self.ci_tag}"
        return f"{self.package_id}#{self.resolved_version or self.version_literal or 'latest'}"

    def render(self) -> str:
        """Directive text for the current state (resolved version when known)."""
        if self.is_ci:
            return self.moniker
        version = self.resolved_version or self.version_literal
        return f"{self.package_id}#{version}" if version else self.package_id


@dataclass
class CiQaRecord:
    """One build-server announcement for a guide or core branch."""
    url: str = ""
    name: str = ""
    title: str = ""
    description: str = ""
    status: str = ""
    package_id: str = ""
    package_version: str = ""
    date: Optional[datetime] = None
    date_iso: Optional[datetime] = None
    fhir_version: str = ""
    tool: str = ""
    repo: str = ""
    errors: Optional[int] = None
    warnings: Optional[int] = None
    hints: Optional[int] = None

    @property
    def build_date(self) -> Optional[datetime]:
        """ISO8601 date when present, else the legacy date."""
        return self.date_iso or self.date

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CiQaRecord":
        return cls(
            url=str(data.get("url") or ""),
            name=str(data.get("name") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=str(data.get("status") or ""),
            package_id=str(data.get("package-id") or ""),
            package_version=str(data.get("ig-ver") or ""),
            date=parse_build_date(data.get("date")),
            date_iso=parse_build_date(data.get("dateISO8601")),
            fhir_version=str(data.get("version") or ""),
            tool=str(data.get("tool") or ""),
            repo=str(data.get("repo") or ""),
            errors=_opt_int(data.get("errs")),
            warnings=_opt_int(data.get("warnings")),
            hints=_opt_int(data.get("hints")),
        )


@dataclass
class PackageManifest:
    """The ``package/package.json`` of an installed package."""
    name: str
    version: str
    date: str = ""
    fhir_versions: List[str] = field(default_factory=list)
    package_type: str = ""
    canonical: str = ""
    title: str = ""
    description: str = ""
    dependencies: Dict[str, str] = field(default_factory=dict)

    @property
    def is_core(self) -> bool:
        return self.package_type.lower() in ("core", "fhir.core")

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PackageManifest":
        fhir_versions = data.get("fhirVersions") or data.get("fhir-version-list") or []
        if not fhir_versions and data.get("fhirVersion"):
            fhir_versions = [data["fhirVersion"]]
        return cls(
            name=str(data.get("name") or ""),
            version=str(data.get("version") or ""),
            date=str(data.get("date") or ""),
            fhir_versions=[str(v) for v in fhir_versions],
            package_type=str(data.get("type") or ""),
            canonical=str(data.get("canonical") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            dependencies={str(k): str(v) for k, v in (data.get("dependencies") or {}).items()},
        )


@dataclass
class CachedPackageEntry:
    """An installed package on disk."""
    moniker: str
    directory: str
    manifest: Optional[PackageManifest]
    size: int = 0
    install_date: str = ""

    @property
    def package_id(self) -> str:
        return self.moniker.split("#", 1)[0]

    @property
    def version(self) -> str:
        return self.moniker.split("#", 1)[1] if "#" in self.moniker else ""


_LEGACY_DATE_FORMATS = (
    "%a, %d %b, %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M:%S %z",
    "%Y%m%d%H%M%S",
)


def parse_build_date(value: Any) -> Optional[datetime]:
    """Parse an ISO8601 or legacy build date into an aware UTC datetime."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    parsed: Optional[datetime] = None
    if not text.isdigit():
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
    if parsed is None:
        for fmt in _LEGACY_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _opt_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
