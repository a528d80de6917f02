"""Tests for directive resolution across registries, the CI client and the cache."""

from unittest.mock import MagicMock, patch

import pytest

from fhirpkg.exceptions import UnresolvedCiError, UnresolvedVersionError
from fhirpkg.registry.client import RegistryClient
from fhirpkg.versioning.models import NameClass, RegistryManifest
from fhirpkg.versioning.parser import parse_directive
from fhirpkg.versioning.resolver import Resolver, reconcile_latest

REG_A = "https://a.example.org/"


def manifest_json(base, name, versions, latest):
    return {
        "_id": name,
        "name": name,
        "dist-tags": {"latest": latest},
        "versions": {
            v: {
                "name": name,
                "version": v,
                "fhirVersion": "4.0.1",
                "kind": "Core" if name.endswith(".core") else "IG",
                "dist": {"tarball": f"{base}{name}/{v}", "shasum": ""},
            }
            for v in versions
        },
    }


def serve(listings):
    """get_json stand-in serving {url: manifest json}; anything else is a 404."""
    def fake(url, **kwargs):
        if url in listings:
            return 200, {}, listings[url]
        return 404, {}, None
    return fake


@pytest.fixture
def registry_data():
    return {
        f"{REG_A}hl7.fhir.r4.core": manifest_json(REG_A, "hl7.fhir.r4.core", ["4.0.0", "4.0.1"], "4.0.1"),
        f"{REG_A}hl7.fhir.uv.subscriptions-backport": manifest_json(
            REG_A, "hl7.fhir.uv.subscriptions-backport", ["0.1.0", "1.0.0", "1.1.0"], "1.1.0"
        ),
        f"{REG_A}example.org.ig": manifest_json(REG_A, "example.org.ig", ["1.0.0"], "1.0.0"),
    }


@pytest.fixture
def resolver(cache):
    return Resolver([RegistryClient(REG_A)], cache=cache, offline=False)


class TestReconcileLatest:
    def _m(self, latest, versions):
        return RegistryManifest(id="x", name="x", dist_tags={"latest": latest} if latest else {},
                                versions={v: None for v in versions})

    def test_agreement(self):
        assert reconcile_latest([self._m("1.0.0", ["1.0.0"]), self._m("1.0.0", ["1.0.0"])]) == "1.0.0"

    def test_registry_ahead_wins(self):
        behind = self._m("1.0.0", ["1.0.0"])
        ahead = self._m("1.1.0", ["1.0.0", "1.1.0"])
        assert reconcile_latest([behind, ahead]) == "1.1.0"

    def test_first_tag_when_everyone_knows_everything(self):
        a = self._m("1.0.0", ["1.0.0", "1.1.0"])
        b = self._m("1.1.0", ["1.0.0", "1.1.0"])
        assert reconcile_latest([a, b]) == "1.0.0"

    def test_highest_when_untagged(self):
        assert reconcile_latest([self._m(None, ["1.0.0", "2.0.0"])]) == "2.0.0"


class TestLatest:
    def test_latest_core(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)):
            directive = resolver.resolve(parse_directive("hl7.fhir.r4.core#latest"))
        assert directive.resolved_version == "4.0.1"
        assert directive.tarball_url == f"{REG_A}hl7.fhir.r4.core/4.0.1"
        assert REG_A in directive.manifests_by_source

    def test_manifest_is_copied_into_directive(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)):
            first = resolver.resolve(parse_directive("hl7.fhir.r4.core"))
            second = resolver.resolve(parse_directive("hl7.fhir.r4.core"))
        assert first.manifests_by_source[REG_A] is not second.manifests_by_source[REG_A]

    def test_higher_cached_version_wins(self, resolver, registry_data, cache, make_package):
        cache.install("example.org.ig#2.0.0", make_package("example.org.ig", "2.0.0"))
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)):
            directive = resolver.resolve(parse_directive("example.org.ig"))
        assert directive.resolved_version == "2.0.0"

    def test_offline_uses_cache_only(self, cache, make_package):
        cache.install("example.org.ig#1.2.0", make_package("example.org.ig", "1.2.0"))
        resolver = Resolver([RegistryClient(REG_A)], cache=cache, offline=True)
        with patch("fhirpkg.registry.client.get_json") as mock_get_json:
            directive = resolver.resolve(parse_directive("example.org.ig#latest"))
        mock_get_json.assert_not_called()
        assert directive.resolved_version == "1.2.0"

    def test_nothing_anywhere(self, resolver):
        with patch("fhirpkg.registry.client.get_json", return_value=(404, {}, None)):
            with pytest.raises(UnresolvedVersionError):
                resolver.resolve(parse_directive("unknown.ig"))


class TestPartial:
    def test_x_range(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)):
            directive = resolver.resolve(parse_directive("hl7.fhir.uv.subscriptions-backport#1.1.x"))
        assert directive.resolved_version == "1.1.0"

    def test_x_range_below_latest(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)):
            directive = resolver.resolve(parse_directive("hl7.fhir.uv.subscriptions-backport#1.0.x"))
        assert directive.resolved_version == "1.0.0"

    def test_core_partial_queries_core_package(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)) as mock_get_json:
            directive = resolver.resolve(parse_directive("hl7.fhir.r4#4.0.x"))
        assert mock_get_json.call_args_list[0][0][0] == f"{REG_A}hl7.fhir.r4.core"
        assert directive.resolved_version == "4.0.1"
        assert directive.package_id == "hl7.fhir.r4.core"
        assert directive.name_class == NameClass.CORE_FULL

    def test_no_match(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)):
            with pytest.raises(UnresolvedVersionError):
                resolver.resolve(parse_directive("hl7.fhir.uv.subscriptions-backport#2.0.x"))


class TestExact:
    def test_single_fetch_for_repeated_resolution(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)) as mock_get_json:
            first = resolver.resolve(parse_directive("hl7.fhir.r4.core#4.0.1"))
            second = resolver.resolve(parse_directive("hl7.fhir.r4.core#4.0.1"))
        assert mock_get_json.call_count == 1
        assert first.tarball_url == second.tarball_url == f"{REG_A}hl7.fhir.r4.core/4.0.1"

    def test_resolved_directive_is_not_changed(self, resolver):
        directive = parse_directive("hl7.fhir.r4.core#4.0.1")
        directive.resolved_version = "4.0.1"
        directive.tarball_url = "https://pinned.example.org/r4.tgz"
        with patch("fhirpkg.registry.client.get_json") as mock_get_json:
            resolver.resolve(directive)
        mock_get_json.assert_not_called()
        assert directive.tarball_url == "https://pinned.example.org/r4.tgz"

    def test_cached_short_circuit(self, resolver, cache, make_package):
        cache.install("hl7.fhir.r4.core#4.0.1", make_package("hl7.fhir.r4.core", "4.0.1", package_type="Core"))
        with patch("fhirpkg.registry.client.get_json") as mock_get_json:
            directive = resolver.resolve(parse_directive("hl7.fhir.r4.core#4.0.1"))
        mock_get_json.assert_not_called()
        assert directive.is_resolved
        assert directive.tarball_url == f"{REG_A}hl7.fhir.r4.core/4.0.1"

    def test_publication_fallback(self, resolver):
        with patch("fhirpkg.registry.client.get_json", return_value=(404, {}, None)):
            directive = resolver.resolve(parse_directive("hl7.fhir.uv.ips#1.1.0"))
        assert directive.tarball_url == "http://hl7.org/fhir/uv/ips/package.tgz"

    def test_sibling_retry(self, resolver, registry_data):
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(registry_data)):
            directive = resolver.resolve(parse_directive("example.org.ig.r4#1.0.0"))
        assert directive.package_id == "example.org.ig"
        assert directive.raw_text == "example.org.ig.r4#1.0.0"
        assert directive.moniker == "example.org.ig#1.0.0"

    def test_non_semver_is_exact(self, resolver):
        data = {f"{REG_A}example.org.ig": manifest_json(REG_A, "example.org.ig", ["build-7"], "build-7")}
        with patch("fhirpkg.registry.client.get_json", side_effect=serve(data)):
            directive = resolver.resolve(parse_directive("example.org.ig#build-7"))
        assert directive.resolved_version == "build-7"


class TestLocalAndCi:
    def test_local_requires_cache(self, resolver):
        with pytest.raises(UnresolvedVersionError):
            resolver.resolve(parse_directive("example.org.ig#dev"))

    def test_local_from_cache(self, resolver, cache, make_package):
        cache.install("example.org.ig#dev", make_package("example.org.ig", "dev"))
        directive = resolver.resolve(parse_directive("example.org.ig#dev"))
        assert directive.is_resolved
        assert directive.moniker == "example.org.ig#dev"

    def test_ci_delegates_to_client(self, cache):
        ci_client = MagicMock()
        ci_client.supports_ci = True
        resolver = Resolver([], cache=cache, ci_client=ci_client, offline=False)
        directive = parse_directive("hl7.fhir.us.core#current")
        resolver.resolve(directive)
        ci_client.resolve.assert_called_once_with(directive)

    def test_ci_offline_without_cache_fails(self, cache):
        resolver = Resolver([], cache=cache, ci_client=MagicMock(), offline=True)
        with pytest.raises(UnresolvedCiError):
            resolver.resolve(parse_directive("hl7.fhir.us.core#current"))

    def test_ci_offline_with_cache(self, cache, make_package):
        cache.install("hl7.fhir.us.core#current", make_package("hl7.fhir.us.core", "7.0.0-cibuild"))
        resolver = Resolver([], cache=cache, ci_client=MagicMock(), offline=True)
        directive = resolver.resolve(parse_directive("hl7.fhir.us.core#current"))
        assert directive.resolved_version == "7.0.0-cibuild"
        assert directive.is_resolved
