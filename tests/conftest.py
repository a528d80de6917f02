"""Shared fixtures: isolated Constants, in-memory package archives, temp caches."""

import io
import json
import tarfile

import pytest

from fhirpkg.cache.disk import DiskCache
from fhirpkg.common import http_client
from fhirpkg.constants import Constants

_TUNABLES = [name for name in vars(Constants) if name.isupper()]


@pytest.fixture(autouse=True)
def isolated_constants():
    """Restore Constants and clear the HTTP cache around every test."""
    saved = {name: getattr(Constants, name) for name in _TUNABLES}
    http_client.clear_cache()
    yield
    for name, value in saved.items():
        setattr(Constants, name, value)
    http_client.clear_cache()


def build_package(name, version, files=None, dependencies=None, package_type="IG", fhir_versions=("4.0.1",), date=""):
    """Return gzipped tarball bytes laid out like a published package."""
    manifest = {
        "name": name,
        "version": version,
        "type": package_type,
        "fhirVersions": list(fhir_versions),
        "dependencies": dependencies or {},
        "canonical": f"http://example.org/{name}",
    }
    if date:
        manifest["date"] = date
    entries = {"package/package.json": json.dumps(manifest)}
    for filename, content in (files or {}).items():
        entries[f"package/{filename}"] = content if isinstance(content, str) else json.dumps(content)

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as archive:
        for path, text in entries.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(path)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def make_package():
    return build_package


@pytest.fixture
def cache(tmp_path):
    with DiskCache(str(tmp_path / "packages")) as disk:
        yield disk
