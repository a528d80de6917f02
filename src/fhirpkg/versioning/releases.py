"""Specification release table: maps version literals to releases."""
from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class FhirRelease(Enum):
    """Published specification releases, valued by their R-literal."""
    R2 = "R2"
    R3 = "R3"
    R4 = "R4"
    R4B = "R4B"
    R5 = "R5"
    R6 = "R6"

    @property
    def long_version(self) -> str:
        """Canonical published version of the release (e.g. 4.0.1)."""
        return _LONG_VERSIONS[self]


_LONG_VERSIONS = {
    FhirRelease.R2: "1.0.2",
    FhirRelease.R3: "3.0.2",
    FhirRelease.R4: "4.0.1",
    FhirRelease.R4B: "4.3.0",
    FhirRelease.R5: "5.0.0",
    FhirRelease.R6: "6.0.0",
}

_RELEASE_BY_LITERAL: Dict[str, FhirRelease] = {}


def _register(release: FhirRelease, *literals: str) -> None:
    for literal in literals:
        _RELEASE_BY_LITERAL[literal.lower()] = release


_register(FhirRelease.R2, "R2", "DSTU2", "1.0", "1.0.1", "1.0.2", "hl7.fhir.r2", "hl7.fhir.r2.core")
_register(FhirRelease.R3, "R3", "STU3", "3.0", "3.0.0", "3.0.1", "3.0.2", "hl7.fhir.r3", "hl7.fhir.r3.core")
_register(
    FhirRelease.R4, "R4", "4", "3.2", "3.2.0", "3.3", "3.3.0", "3.5", "3.5.0", "3.5a", "3.5a.0",
    "4.0", "4.0.0", "4.0.1", "hl7.fhir.r4", "hl7.fhir.r4.core",
)
_register(FhirRelease.R4B, "R4B", "4B", "4.1", "4.1.0", "4.3", "4.3.0", "hl7.fhir.r4b", "hl7.fhir.r4b.core")
_register(
    FhirRelease.R5, "R5", "5", "4.2", "4.2.0", "4.4", "4.4.0", "4.5", "4.5.0", "4.6", "4.6.0",
    "5.0", "5.0.0", "hl7.fhir.r5", "hl7.fhir.r5.core",
)
_register(FhirRelease.R6, "R6", "6", "6.0", "6.0.0", "hl7.fhir.r6", "hl7.fhir.r6.core")


def release_for(literal: Optional[str]) -> Optional[FhirRelease]:
    """Look up the release for a version, R-literal or core package id.

    Tagged versions (``5.0.0-snapshot3``) fall back to their numeric part.
    """
    if not literal:
        return None
    key = literal.lower()
    if "#" in key:
        key = key.split("#", 1)[0]
    found = _RELEASE_BY_LITERAL.get(key)
    if found is None and "-" in key:
        found = _RELEASE_BY_LITERAL.get(key.split("-", 1)[0])
    return found

