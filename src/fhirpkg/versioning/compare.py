"""Version ordering for FHIR package versions.

Not semantic versioning: pre-release tags are ranked by named stage
(http://hl7.org/fhir/versions.html), and CI pseudo-versions rank below
every staged tag.

    no tag          release
    snapshotN       frozen release for connectathon or ballot dependencies
    ballotN         frozen release used in the ballot process
    draftN          frozen release for non-ballot review or QA
    draft-final     frozen release put out for final QA
    cibuild         non-stable build that changes with each commit
"""
from __future__ import annotations

from functools import cmp_to_key
from typing import Iterable, List, Optional

CIBUILD = "cibuild"


def _split(version: str):
    numeric, sep, tag = version.partition("-")
    return numeric.split("."), (tag if sep else None)


def _compare_component(a: str, b: str) -> int:
    if a.isdecimal() and b.isdecimal():
        ai, bi = int(a), int(b)
        return (ai > bi) - (ai < bi)
    return (a > b) - (a < b)


def tag_rank(tag: str) -> int:
    """Bucket value for a pre-release tag; unknown and cibuild tags rank 0."""
    if tag.startswith("snapshot"):
        rank = 200
    elif tag.startswith("ballot"):
        rank = 300
    elif tag.startswith("draft"):
        if "final" in tag:
            return 400
        rank = 100
    else:
        return 0
    if tag and tag[-1].isdecimal():
        rank += int(tag[-1])
    return rank


def compare_versions(a: Optional[str], b: Optional[str]) -> int:
    """Three-way comparison: 1 if a is higher, -1 if b is higher, 0 if equal.

    An empty version ranks below anything else.
    """
    if not a or not b:
        return (bool(a)) - (bool(b))

    components_a, tag_a = _split(a)
    components_b, tag_b = _split(b)

    for ca, cb in zip(components_a, components_b):
        diff = _compare_component(ca, cb)
        if diff:
            return diff

    if tag_a is None or tag_b is None:
        if tag_a is None and tag_b is None:
            # longer is more specific
            return (len(components_a) > len(components_b)) - (len(components_a) < len(components_b))
        return 1 if tag_a is None else -1

    ci_a = tag_a.startswith(CIBUILD)
    ci_b = tag_b.startswith(CIBUILD)
    if ci_a != ci_b:
        return -1 if ci_a else 1

    rank_a, rank_b = tag_rank(tag_a), tag_rank(tag_b)
    if rank_a != rank_b:
        return 1 if rank_a > rank_b else -1

    return (len(components_a) > len(components_b)) - (len(components_a) < len(components_b))


def is_first_higher(a: Optional[str], b: Optional[str]) -> bool:
    return compare_versions(a, b) > 0


def sort_versions(versions: Iterable[str], reverse: bool = False) -> List[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=reverse)


def _in_range(version: str, root: str) -> bool:
    # 1.1.x must not pick up 1.10.0
    return version == root or version.startswith(root + ".") or version.startswith(root + "-")


def highest_version(versions: Iterable[str], version_range: str = "") -> Optional[str]:
    """Highest version whose text starts with the range root (``4.0.x`` -> ``4.0``).

    Returns None when nothing matches.
    """
    root = version_range.lower().replace(".x", "") if version_range else ""
    highest: Optional[str] = None
    for version in versions:
        if root and not _in_range(version.lower(), root):
            continue
        if compare_versions(version, highest) > 0:
            highest = version
    return highest
