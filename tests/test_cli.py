"""Tests for the fhirpkg command line."""

import pytest

from fhirpkg.args import parse_args
from fhirpkg.cache.disk import DiskCache
from fhirpkg.cli import main
from fhirpkg.common.logging_utils import LOG_LEVEL_ENV
from fhirpkg.constants import Constants, ExitCodes


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    monkeypatch.setattr(Constants, "CONFIG_LOCATIONS", [])
    monkeypatch.delenv(Constants.CONFIG_ENV, raising=False)
    monkeypatch.setenv(LOG_LEVEL_ENV, "INFO")


@pytest.fixture
def cache_dir(tmp_path, make_package):
    root = str(tmp_path / "packages")
    with DiskCache(root) as cache:
        cache.install("example.ig#1.0.0", make_package("example.ig", "1.0.0"))
    return root


def run(argv):
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


class TestArgs:
    def test_resolve_args(self):
        ns = parse_args(["resolve", "hl7.fhir.r4.core#4.0.1", "--registry", "https://a/", "--registry", "https://b/"])
        assert ns.COMMAND == "resolve"
        assert ns.DIRECTIVES == ["hl7.fhir.r4.core#4.0.1"]
        assert ns.REGISTRIES == ["https://a/", "https://b/"]
        assert ns.LOG_LEVEL == "INFO"
        assert ns.OFFLINE is False

    def test_install_args(self):
        ns = parse_args(["install", "a#1.0.0", "b", "--name", "bundle", "--offline", "--loglevel", "debug", "--ci-invalidation", "0"])
        assert ns.NAME == "bundle"
        assert ns.OFFLINE is True
        assert ns.LOG_LEVEL == "DEBUG"
        assert ns.CI_INVALIDATION == 0


class TestMain:
    def test_resolve_cached_offline(self, cache_dir, capsys):
        assert run(["resolve", "example.ig#1.0.0", "--cache-dir", cache_dir, "--offline"]) == ExitCodes.SUCCESS.value
        out = capsys.readouterr().out
        assert out.startswith("example.ig#1.0.0\t")

    def test_install_cached_offline(self, cache_dir, capsys):
        assert run(["install", "example.ig#1.0.0", "--cache-dir", cache_dir, "--offline"]) == ExitCodes.SUCCESS.value
        assert capsys.readouterr().out.splitlines() == ["example.ig#1.0.0"]

    def test_parse_error(self, cache_dir):
        assert run(["resolve", "a#1#2", "--cache-dir", cache_dir, "--offline"]) == ExitCodes.PARSE_ERROR.value

    def test_unresolved_offline(self, cache_dir):
        assert run(["resolve", "other.ig#1.0.0", "--cache-dir", cache_dir, "--offline"]) == ExitCodes.RESOLUTION_ERROR.value

    def test_bad_config(self, tmp_path, cache_dir):
        config = tmp_path / "bad.yml"
        config.write_text("registries: [unclosed\n")
        code = run(["resolve", "example.ig#1.0.0", "--cache-dir", cache_dir, "-c", str(config)])
        assert code == ExitCodes.FILE_ERROR.value

    def test_flags_override_config(self, tmp_path, cache_dir):
        config = tmp_path / "fhirpkg.yml"
        config.write_text("offline: false\ncache_dir: /nonexistent\nci:\n  invalidation_sec: 30\n")
        run(["resolve", "example.ig#1.0.0", "--cache-dir", cache_dir, "--offline", "--ci-invalidation", "5", "-c", str(config)])
        assert Constants.CACHE_DIR == cache_dir
        assert Constants.OFFLINE is True
        assert Constants.CI_INVALIDATION_SEC == 5
