"""Directive parsing: turn ``id[#|@version]`` text into a classified Directive."""
from __future__ import annotations

import re
from typing import List, Optional, Tuple

import semantic_version

from fhirpkg.constants import Constants
from fhirpkg.exceptions import DirectiveParseError
from .models import CI_TAG, LOCAL_TAG, Directive, NameClass, VersionClass
from .releases import release_for

SEPARATORS = ("#", "@")

CORE_FULL_RE = re.compile(r"^hl7\.fhir\.r\d+[a-z]?\.(core|expansions|examples|search|elements|corexml)$", re.IGNORECASE)
CORE_PARTIAL_RE = re.compile(r"^hl7\.fhir\.r\d+[a-z]?$", re.IGNORECASE)
RELEASE_SUFFIX_RE = re.compile(r"\.r\d+[a-z]?$", re.IGNORECASE)
PARTIAL_VERSION_RE = re.compile(r"^\d+\.\d+\.[xX]$")
TWO_PART_VERSION_RE = re.compile(r"^\d+\.\d+$")


def tokenize_directive(text: str) -> Tuple[str, Optional[str]]:
    """Split directive text into (package id, version literal or None).

    Raises:
        DirectiveParseError: more than one separator, or an empty id.
    """
    s = text.strip()
    count = sum(s.count(sep) for sep in SEPARATORS)
    if count > 1:
        raise DirectiveParseError(text, "more than one version separator")
    if count == 0:
        package_id, version = s, None
    else:
        sep = "#" if "#" in s else "@"
        package_id, version = (part.strip() for part in s.split(sep, 1))
    if not package_id:
        raise DirectiveParseError(text, "missing package id")
    return package_id, version


def classify_name(package_id: str) -> Tuple[NameClass, str]:
    """Return the name class of a package id and the release it implies."""
    segments = package_id.split(".")
    if CORE_FULL_RE.match(package_id):
        return NameClass.CORE_FULL, segments[2].upper()
    if CORE_PARTIAL_RE.match(package_id):
        return NameClass.CORE_PARTIAL, segments[-1].upper()
    if RELEASE_SUFFIX_RE.search(package_id):
        return NameClass.GUIDE_WITH_SUFFIX, segments[-1].upper()
    return NameClass.GUIDE_WITHOUT_SUFFIX, ""


def is_semver(literal: str) -> bool:
    return bool(semantic_version.validate(literal))


def classify_version(literal: Optional[str], name_class: NameClass) -> Tuple[VersionClass, Optional[str]]:
    """Classify a version literal; returns (version class, CI branch or None).

    Raises:
        DirectiveParseError: a core-family id with a literal outside the
        release numbering.
    """
    value = (literal or "").strip()
    lowered = value.lower()
    if not value or lowered == "latest":
        return VersionClass.LATEST, None
    if lowered == LOCAL_TAG:
        return VersionClass.LOCAL, None
    if lowered == CI_TAG:
        return VersionClass.CONTINUOUS_INTEGRATION, None
    if lowered.startswith(CI_TAG + "$"):
        branch = value[len(CI_TAG) + 1:]
        return VersionClass.CONTINUOUS_INTEGRATION, branch or None
    if PARTIAL_VERSION_RE.match(value):
        return VersionClass.PARTIAL, None
    if is_semver(value):
        return VersionClass.EXACT, None
    if name_class.is_core:
        if TWO_PART_VERSION_RE.match(value):
            return VersionClass.PARTIAL, None
        raise DirectiveParseError(value, "core packages require a release version (N.N.N or N.N.x)")
    return VersionClass.NON_SEMVER, None


def publication_url(package_id: str, name_class: NameClass, version: str) -> Optional[str]:
    """Fallback download location on the publication site for HL7 packages."""
    if not package_id.lower().startswith("hl7.fhir."):
        return None
    base = Constants.PUBLICATION_BASE_URL
    segments = package_id.split(".")
    if name_class.is_core:
        core_id = package_id + ".core" if name_class == NameClass.CORE_PARTIAL else package_id
        release = release_for(version)
        if release is not None and release.long_version == version:
            return f"{base}{release.value}/{core_id}.tgz"
        return f"{base}{version}/{core_id}.tgz"
    if name_class == NameClass.GUIDE_WITH_SUFFIX and len(segments) == 5:
        return f"{base}{segments[2]}/{segments[3]}/package.{segments[4]}.tgz"
    if name_class == NameClass.GUIDE_WITHOUT_SUFFIX and len(segments) == 4:
        return f"{base}{segments[2]}/{segments[3]}/package.tgz"
    return None


def parse_directive(text: str) -> Directive:
    """Parse directive text into a Directive.

    Raises:
        DirectiveParseError: the text is malformed.
    """
    package_id, literal = tokenize_directive(text)
    name_class, release = classify_name(package_id)
    try:
        version_class, branch = classify_version(literal, name_class)
    except DirectiveParseError as exc:
        raise DirectiveParseError(text, exc.reason) from exc

    directive = Directive(
        raw_text=text,
        package_id=package_id,
        name_class=name_class,
        version_literal=literal or "",
        version_class=version_class,
        release=release,
        ci_branch=branch,
    )
    if version_class == VersionClass.EXACT:
        directive.publication_url = publication_url(package_id, name_class, directive.version_literal)
    return directive


def try_parse_directive(text: str) -> Tuple[Optional[Directive], Optional[DirectiveParseError]]:
    """Parse without raising: returns (directive, None) or (None, error)."""
    try:
        return parse_directive(text), None
    except DirectiveParseError as exc:
        return None, exc


def sibling_id(directive: Directive) -> Optional[str]:
    """Alternate package id to retry when the primary id yields nothing."""
    if directive.name_class == NameClass.CORE_PARTIAL:
        return directive.package_id + ".core"
    if directive.name_class == NameClass.GUIDE_WITH_SUFFIX:
        return RELEASE_SUFFIX_RE.sub("", directive.package_id)
    return None


def cache_ids(directive: Directive) -> List[str]:
    """Package ids under which an installed copy of this directive may live."""
    ids = [directive.package_id]
    if directive.name_class == NameClass.CORE_PARTIAL:
        ids.append(directive.package_id + ".core")
    elif directive.name_class == NameClass.GUIDE_WITHOUT_SUFFIX and directive.release:
        ids.append(f"{directive.package_id}.{directive.release.lower()}")
    return ids
