"""Tests for directive tokenizing and classification."""

import pytest

from fhirpkg.exceptions import DirectiveParseError
from fhirpkg.versioning.models import NameClass, VersionClass
from fhirpkg.versioning.parser import (
    cache_ids,
    classify_name,
    parse_directive,
    sibling_id,
    tokenize_directive,
    try_parse_directive,
)


class TestTokenize:
    def test_hash_separator(self):
        assert tokenize_directive("hl7.fhir.r4.core#4.0.1") == ("hl7.fhir.r4.core", "4.0.1")

    def test_at_separator(self):
        assert tokenize_directive("hl7.fhir.r4.core@4.0.1") == ("hl7.fhir.r4.core", "4.0.1")

    def test_no_separator(self):
        assert tokenize_directive("hl7.fhir.us.core") == ("hl7.fhir.us.core", None)

    @pytest.mark.parametrize("text", ["too#many#segments", "a@b#c", "#4.0.1"])
    def test_rejects_malformed(self, text):
        with pytest.raises(DirectiveParseError):
            tokenize_directive(text)


class TestClassifyName:
    @pytest.mark.parametrize("package_id,expected,release", [
        ("hl7.fhir.r4.core", NameClass.CORE_FULL, "R4"),
        ("hl7.fhir.r4b.expansions", NameClass.CORE_FULL, "R4B"),
        ("hl7.fhir.r5.search", NameClass.CORE_FULL, "R5"),
        ("hl7.fhir.r4", NameClass.CORE_PARTIAL, "R4"),
        ("hl7.fhir.uv.extensions.r4", NameClass.GUIDE_WITH_SUFFIX, "R4"),
        ("hl7.fhir.us.core", NameClass.GUIDE_WITHOUT_SUFFIX, ""),
        ("hl7.fhir.r4.notcore", NameClass.GUIDE_WITHOUT_SUFFIX, ""),
    ])
    def test_name_classes(self, package_id, expected, release):
        assert classify_name(package_id) == (expected, release)


class TestParseDirective:
    def test_core_exact(self):
        d = parse_directive("hl7.fhir.r4.core#4.0.1")
        assert d.name_class == NameClass.CORE_FULL
        assert d.version_class == VersionClass.EXACT
        assert d.release == "R4"
        assert d.publication_url == "http://hl7.org/fhir/R4/hl7.fhir.r4.core.tgz"

    def test_core_partial_range(self):
        d = parse_directive("hl7.fhir.r4#4.0.x")
        assert d.name_class == NameClass.CORE_PARTIAL
        assert d.version_class == VersionClass.PARTIAL

    def test_core_two_part_version_is_partial(self):
        assert parse_directive("hl7.fhir.r4.core#4.0").version_class == VersionClass.PARTIAL

    def test_core_rejects_single_number(self):
        with pytest.raises(DirectiveParseError) as excinfo:
            parse_directive("hl7.fhir.r4.core#4")
        assert excinfo.value.directive == "hl7.fhir.r4.core#4"

    def test_guide_accepts_non_semver(self):
        d = parse_directive("example.org.ig#notsemver")
        assert d.name_class == NameClass.GUIDE_WITHOUT_SUFFIX
        assert d.version_class == VersionClass.NON_SEMVER

    @pytest.mark.parametrize("text,expected", [
        ("hl7.fhir.us.core", VersionClass.LATEST),
        ("hl7.fhir.us.core#latest", VersionClass.LATEST),
        ("hl7.fhir.us.core#dev", VersionClass.LOCAL),
        ("hl7.fhir.us.core#current", VersionClass.CONTINUOUS_INTEGRATION),
        ("hl7.fhir.us.core#6.1.0-snapshot1", VersionClass.EXACT),
    ])
    def test_version_classes(self, text, expected):
        assert parse_directive(text).version_class == expected

    def test_ci_branch_is_captured(self):
        d = parse_directive("hl7.fhir.us.core#current$feature-x")
        assert d.is_ci
        assert d.ci_branch == "feature-x"
        assert d.moniker == "hl7.fhir.us.core#current$feature-x"

    def test_guide_publication_url(self):
        d = parse_directive("hl7.fhir.uv.ips#1.1.0")
        assert d.publication_url == "http://hl7.org/fhir/uv/ips/package.tgz"

    def test_non_hl7_has_no_publication_url(self):
        assert parse_directive("de.basisprofil.r4#1.4.0").publication_url is None

    @pytest.mark.parametrize("text", [
        "hl7.fhir.r4.core#4.0.1",
        "hl7.fhir.r4#4.0.x",
        "example.org.ig#notsemver",
        "hl7.fhir.us.core#current$main",
        "hl7.fhir.us.core",
    ])
    def test_render_reparses_to_same_classes(self, text):
        first = parse_directive(text)
        again = parse_directive(first.render())
        assert (again.name_class, again.version_class) == (first.name_class, first.version_class)

    def test_try_parse_returns_error(self):
        directive, error = try_parse_directive("too#many#segments")
        assert directive is None
        assert isinstance(error, DirectiveParseError)


class TestSiblings:
    def test_core_partial_sibling(self):
        d = parse_directive("hl7.fhir.r4#4.0.1")
        assert sibling_id(d) == "hl7.fhir.r4.core"
        assert cache_ids(d) == ["hl7.fhir.r4", "hl7.fhir.r4.core"]

    def test_suffixed_guide_sibling(self):
        assert sibling_id(parse_directive("hl7.fhir.uv.extensions.r4#1.0.0")) == "hl7.fhir.uv.extensions"

    def test_plain_guide_has_no_sibling(self):
        assert sibling_id(parse_directive("hl7.fhir.us.core#6.1.0")) is None
