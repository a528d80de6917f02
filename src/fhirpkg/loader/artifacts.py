"""Package contents: the artifact index, the fixed load order and the parsed collection."""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from fhirpkg.versioning.models import PackageManifest
from fhirpkg.versioning.releases import release_for

logger = logging.getLogger(__name__)

# terminology, then structure, then search/operations, then conformance metadata
LOAD_ORDER = (
    "CodeSystem",
    "ValueSet",
    "StructureDefinition",
    "SearchParameter",
    "OperationDefinition",
    "CapabilityStatement",
    "Conformance",
    "ImplementationGuide",
    "CompartmentDefinition",
)

INDEX_FILE = ".index.json"

CONTENT_TYPES = {
    ".json": "application/fhir+json",
    ".xml": "application/fhir+xml",
}

# IG publisher output that is listed in indexes but never shipped
_KNOWN_MISSING = (
    re.compile(r"^ig-r\d+[a-z]?\.json$", re.IGNORECASE),
    re.compile(r"-ig-r\d+[a-z]?\.json$", re.IGNORECASE),
)


def is_known_missing(filename: str) -> bool:
    return any(p.search(filename) for p in _KNOWN_MISSING)


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(filename)[1].lower(), "application/octet-stream")


@dataclass
class PackageFile:
    """One entry of a package's ``.index.json``."""
    filename: str
    resource_type: str
    id: str = ""
    url: str = ""
    version: str = ""
    kind: str = ""
    type: str = ""

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PackageFile":
        return cls(
            filename=str(data.get("filename") or ""),
            resource_type=str(data.get("resourceType") or ""),
            id=str(data.get("id") or ""),
            url=str(data.get("url") or ""),
            version=str(data.get("version") or ""),
            kind=str(data.get("kind") or ""),
            type=str(data.get("type") or ""),
        )


class ArtifactParser(Protocol):
    """Turns raw file bytes into a domain object; None means the file was rejected."""

    def parse(self, content: bytes, content_type: str, resource_type: str) -> Optional[Any]:
        ...


class JsonArtifactParser:
    """Default parser: JSON resources as plain dicts."""

    def parse(self, content: bytes, content_type: str, resource_type: str) -> Optional[Any]:
        if content_type != CONTENT_TYPES[".json"]:
            return None
        try:
            data = json.loads(content.decode("utf-8-sig"))
        except (UnicodeDecodeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        # CapabilityStatement files from DSTU2 packages are typed Conformance
        if data.get("resourceType") != resource_type and {data.get("resourceType"), resource_type} != {"CapabilityStatement", "Conformance"}:
            return None
        return data


def read_package_index(content_dir: str) -> List[PackageFile]:
    """List the artifacts of an installed package.

    Uses ``.index.json`` when present; otherwise scans every ``*.json`` file
    in the content folder for a ``resourceType``.
    """
    index_path = os.path.join(content_dir, INDEX_FILE)
    if os.path.isfile(index_path):
        with open(index_path, "r", encoding="utf-8-sig") as fh:
            data = json.load(fh)
        return [PackageFile.from_json(f) for f in data.get("files", []) if isinstance(f, dict) and f.get("filename")]

    files: List[PackageFile] = []
    for filename in sorted(os.listdir(content_dir)) if os.path.isdir(content_dir) else []:
        if not filename.endswith(".json") or filename in (INDEX_FILE, "package.json"):
            continue
        try:
            with open(os.path.join(content_dir, filename), "r", encoding="utf-8-sig") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            logger.debug("Skipping unreadable file %s", filename)
            continue
        if isinstance(data, dict) and data.get("resourceType"):
            files.append(PackageFile(
                filename=filename,
                resource_type=str(data["resourceType"]),
                id=str(data.get("id") or ""),
                url=str(data.get("url") or ""),
                version=str(data.get("version") or ""),
                kind=str(data.get("kind") or ""),
                type=str(data.get("type") or ""),
            ))
    return files


def files_in_load_order(files: List[PackageFile]) -> Iterator[Tuple[str, PackageFile]]:
    """Yield (resource type, file) grouped by LOAD_ORDER; other types are skipped."""
    by_type: Dict[str, List[PackageFile]] = {}
    for f in files:
        by_type.setdefault(f.resource_type, []).append(f)
    for resource_type in LOAD_ORDER:
        for f in by_type.get(resource_type, []):
            yield resource_type, f


@dataclass
class DefinitionCollection:
    """Accumulator for everything loaded in one load request."""
    name: str
    artifacts: Dict[str, List[Any]] = field(default_factory=dict)
    manifests: Dict[str, PackageManifest] = field(default_factory=dict)
    contents: Dict[str, List[PackageFile]] = field(default_factory=dict)
    main_package_id: str = ""
    main_package_version: str = ""
    main_package_canonical: str = ""
    fhir_release: str = ""
    has_core: bool = False
    snapshots_generated: bool = False

    def is_loaded(self, moniker: str) -> bool:
        return moniker in self.manifests

    def add_manifest(self, moniker: str, manifest: PackageManifest) -> None:
        self.manifests[moniker] = manifest
        if not self.main_package_id or self.name.lower() == manifest.name.lower():
            self.main_package_id = manifest.name
            self.main_package_version = manifest.version
            self.main_package_canonical = manifest.canonical
        if not self.fhir_release and manifest.fhir_versions:
            release = release_for(manifest.fhir_versions[0])
            self.fhir_release = release.value if release is not None else ""
        if manifest.is_core:
            self.has_core = True

    def add(self, resource_type: str, artifact: Any) -> None:
        self.artifacts.setdefault(resource_type, []).append(artifact)

    def count(self, resource_type: Optional[str] = None) -> int:
        if resource_type is not None:
            return len(self.artifacts.get(resource_type, []))
        return sum(len(v) for v in self.artifacts.values())
