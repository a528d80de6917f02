"""Continuous-integration build client for build.fhir.org.

Guide builds are announced in one aggregate QA listing (``ig/qas.json``).
Core builds have no listing: each branch under ``branches/`` publishes a
``version.info`` file from which a synthetic QA record is derived.

Builds are exposed as pseudo-versions of the form
``<version>[-cibuild][.b-<branch>]+<yyyyMMdd-HHmmssZ | repo>`` and as the
tags ``current`` and ``current$<branch>``.
"""
from __future__ import annotations

import logging
import re
import tarfile
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from fhirpkg.common.http_client import get_bytes, get_json, get_text
from fhirpkg.common.logging_utils import extra_context, is_debug_enabled, safe_url
from fhirpkg.constants import Constants
from fhirpkg.exceptions import NetworkInstallError, UnresolvedCiError
from fhirpkg.versioning.models import (
    CI_TAG,
    CiQaRecord,
    Directive,
    PackageVersionInfo,
    RegistryManifest,
    parse_build_date,
)
from fhirpkg.versioning.parser import parse_directive
from fhirpkg.versioning.releases import release_for
from .base import PackageSource, TarballResult

logger = logging.getLogger(__name__)

CI_VERSION_DATE_FORMAT = "%Y%m%d-%H%M%SZ"
CI_BRANCH_DELIMITER = ".b-"
CORE_REPO_PREFIX = "HL7/fhir/"

_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")
_IG_URL_RE = re.compile(
    r"^https?://build\.fhir\.org/ig/(?P<org>[^/\s]+)/(?P<repo>[^/\s]+)(?:/branches/(?P<branch>[^/\s]+))?(?:/.*)?$"
)
_CORE_URL_RE = re.compile(r"^https?://build\.fhir\.org(?:/branches/(?P<branch>[^/\s]+))?(?:/[^/\s]*)?$")


def clean_for_semver(value: str) -> str:
    """Replace every character that is not a letter or digit with '-'."""
    return _NON_ALNUM.sub("-", value)


def branch_from_repo(repo: Optional[str], default_branches: Iterable[str] = Constants.DEFAULT_BRANCHES) -> Tuple[Optional[str], bool]:
    """Extract (branch name, is default branch) from a QA repository path."""
    if not repo:
        return None, False
    for marker in ("branches/", "tree/"):
        start = repo.find(marker)
        if start != -1:
            start += len(marker)
            end = repo.find("/", start)
            branch = repo[start:] if end == -1 else repo[start:end]
            if not branch:
                return None, False
            defaults = {b.lower() for b in default_branches}
            return branch, branch.lower() in defaults
    return None, False


def parse_version_info(contents: str) -> Dict[str, str]:
    """Read the ``key=value`` lines of a core branch ``version.info`` file."""
    values: Dict[str, str] = {}
    for line in contents.splitlines():
        key, sep, value = line.partition("=")
        if not sep or "=" in value:
            continue
        values[key.strip()] = value.strip()
    return values


def _truncate(value: Optional[datetime]) -> Optional[datetime]:
    return value.replace(microsecond=0) if value is not None else None


class CiBuildClient(PackageSource):
    """Source for in-progress builds published on the CI build server."""

    supports_ci = True

    def __init__(
        self,
        invalidation_sec: Optional[int] = None,
        base_url: Optional[str] = None,
        default_branches: Optional[Iterable[str]] = None,
    ):
        self.invalidation_sec = Constants.CI_INVALIDATION_SEC if invalidation_sec is None else invalidation_sec
        self.base_url = (base_url or Constants.CI_BASE_URL).rstrip("/") + "/"
        self.qas_url = self.base_url + "ig/qas.json" if base_url else Constants.CI_QAS_URL
        self.branches_url = self.base_url + "branches/" if base_url else Constants.CI_BRANCHES_URL
        self.default_branches = tuple(default_branches or Constants.DEFAULT_BRANCHES)
        self._by_package: Dict[str, List[CiQaRecord]] = {}
        self._last_updated = 0.0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.base_url

    def __repr__(self) -> str:
        return f"CiBuildClient({self.base_url!r})"

    # listing cache

    def refresh(self) -> None:
        """Refetch the build listings regardless of the invalidation window."""
        self._get_records(force=True)

    def _get_records(self, force: bool = False) -> Dict[str, List[CiQaRecord]]:
        with self._lock:
            if not force and self._by_package:
                if self.invalidation_sec < 0:
                    return self._by_package
                if self.invalidation_sec > 0 and time.monotonic() - self._last_updated < self.invalidation_sec:
                    return self._by_package

            records = self._download_core_records() + self._download_guide_records()
            if not records:
                return self._by_package

            by_package: Dict[str, List[CiQaRecord]] = {}
            for record in records:
                if record.package_id:
                    by_package.setdefault(record.package_id, []).append(record)

            if force or self.invalidation_sec != 0:
                self._by_package = by_package
                self._last_updated = time.monotonic()
            return by_package

    def _download_guide_records(self) -> List[CiQaRecord]:
        status, _, data = get_json(self.qas_url, use_cache=False)
        if status != 200 or not isinstance(data, list):
            logger.warning("CI guide listing unavailable from %s (status %s)", safe_url(self.qas_url), status)
            return []
        return [CiQaRecord.from_json(item) for item in data if isinstance(item, dict)]

    def _download_core_records(self) -> List[CiQaRecord]:
        status, _, branches = get_json(self.branches_url, use_cache=False)
        if status != 200 or not isinstance(branches, list):
            logger.warning("CI core branch listing unavailable from %s (status %s)", safe_url(self.branches_url), status)
            return []

        records: List[CiQaRecord] = []
        for branch in branches:
            if not isinstance(branch, dict) or not branch.get("name") or not branch.get("url"):
                continue
            branch_name = str(branch["name"]).rstrip("/")
            info_url = self.branches_url + str(branch["url"]).lstrip("/")
            if not info_url.endswith("/"):
                info_url += "/"
            record = self._core_record(branch_name, info_url + "version.info")
            if record is not None:
                records.append(record)
        return records

    def _core_record(self, branch_name: str, info_url: str) -> Optional[CiQaRecord]:
        status, contents = get_text(info_url, use_cache=False)
        if status != 200 or contents is None:
            if is_debug_enabled(logger):
                logger.debug(
                    "Skipping core branch without version.info",
                    extra=extra_context(
                        event="ci_core_branch",
                        component="ci",
                        outcome="missing_version_info",
                        status_code=status,
                        branch=branch_name,
                        target=safe_url(info_url)
                    )
                )
            return None

        info = parse_version_info(contents)
        fhir_version = info.get("FhirVersion", "")
        if not fhir_version:
            return None
        build_date = parse_build_date(info.get("date"))
        major = fhir_version.split(".")[0]
        is_main = branch_name == "master"
        return CiQaRecord(
            url=self.base_url.rstrip("/") if is_main else f"{self.branches_url}{branch_name}",
            name=f"FHIR Core {fhir_version}" + ("" if is_main else f" branch: {branch_name}"),
            title="FHIR Core build",
            status="draft",
            package_id=f"hl7.fhir.r{major}.core",
            package_version=info.get("version", ""),
            date=build_date,
            date_iso=build_date,
            fhir_version=fhir_version,
            repo=f"{CORE_REPO_PREFIX}branches/{branch_name}/qa.json",
        )

    def records_for(self, package_id: str) -> List[CiQaRecord]:
        return list(self._get_records().get(package_id, []))

    # version synthesis

    def pseudo_version(self, qa: CiQaRecord) -> str:
        """Synthesize the version literal that identifies one build."""
        prerelease = "" if "-" in qa.package_version else "-cibuild"
        build_date = qa.date_iso or qa.date
        if build_date is not None:
            meta = build_date.astimezone(timezone.utc).strftime(CI_VERSION_DATE_FORMAT)
        else:
            branch, is_default = branch_from_repo(qa.repo, self.default_branches)
            if branch and not is_default:
                prerelease = f"{prerelease}{CI_BRANCH_DELIMITER}{clean_for_semver(branch)}"
            parts = qa.repo.split("/") if qa.repo else []
            meta = f"{parts[0]}.{parts[1]}" if len(parts) > 2 else "ci"
        return f"{qa.package_version or '0.0.0'}{prerelease}+{clean_for_semver(meta)}"

    def package_url(self, qa: CiQaRecord) -> str:
        """Download URL for the archive of one build."""
        if qa.repo.lower().startswith(CORE_REPO_PREFIX.lower()) and qa.url.startswith("http"):
            # core builds publish <package-id>.tgz beside the build index
            return f"{qa.url.rstrip('/')}/{qa.package_id}.tgz"
        url = qa.repo
        index = url.find("/qa.json")
        if index != -1:
            url = url[:index]
        url += "package.tgz" if url.endswith("/") else "/package.tgz"
        if not url.startswith("http"):
            if url.lower().startswith(CORE_REPO_PREFIX.lower()):
                url = self.base_url + url
            else:
                url = self.base_url + "ig/" + url
        return url

    def listing(self, package_id: str, records: Optional[List[CiQaRecord]] = None) -> Optional[RegistryManifest]:
        """Registry-shaped listing built from a package's QA records."""
        records = self.records_for(package_id) if records is None else records
        if not records:
            return None

        manifest: Optional[RegistryManifest] = None
        for qa in sorted(records, key=lambda r: r.status):
            if manifest is None:
                manifest = RegistryManifest(
                    id=qa.package_id,
                    name=qa.package_id,
                    description=f"CI Build of {qa.package_id}",
                    source=self.name,
                )
            version = self.pseudo_version(qa)
            if version in manifest.versions:
                continue
            site = qa.url.split("/ImplementationGuide/", 1)[0]
            manifest.versions[version] = PackageVersionInfo(
                name=qa.package_id,
                version=version,
                date=qa.build_date.isoformat() if qa.build_date else "",
                fhir_version=qa.fhir_version,
                kind="IG" if not qa.package_id.endswith(".core") else "Core",
                description=qa.description or qa.title or qa.repo,
                tarball_url=self.package_url(qa),
            )
            if is_debug_enabled(logger):
                logger.debug(
                    "CI listing entry",
                    extra=extra_context(event="ci_listing", component="ci", package=qa.package_id, version=version, site=site)
                )

        if manifest is None or not manifest.versions:
            return None

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        for qa in sorted(records, key=lambda r: r.build_date or oldest):
            branch, is_default = branch_from_repo(qa.repo, self.default_branches)
            tag = CI_TAG if branch is None else f"{CI_TAG}${branch}"
            version = self.pseudo_version(qa)
            manifest.dist_tags.setdefault(tag, version)
            if is_default:
                manifest.dist_tags.setdefault(CI_TAG, version)
        return manifest

    def fetch_manifest(self, package_id: str) -> Optional[RegistryManifest]:
        return self.listing(package_id)

    # resolution

    def resolve_qa_record(self, name: str, discriminator: Optional[str] = None) -> Optional[CiQaRecord]:
        """Find the QA record for a tag, branch name or pseudo-version."""
        if not name:
            return None
        records = self.records_for(name)
        if not records:
            return None

        requested = discriminator or CI_TAG
        if "+" not in requested:
            listing = self.listing(name, records)
            if listing is not None:
                for tag in (requested, f"{CI_TAG}${requested}"):
                    version = listing.dist_tags.get(tag)
                    if version and version in listing.versions:
                        requested = version
                        break

        _, sep, meta = requested.rpartition("+")
        if not sep:
            return None
        try:
            wanted = datetime.strptime(meta, CI_VERSION_DATE_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            # pseudo-versions without a build date are matched literally
            for qa in records:
                if self.pseudo_version(qa) == requested:
                    return qa
            return None
        for qa in records:
            if _truncate(qa.date_iso) == wanted or _truncate(qa.date) == wanted:
                return qa
        return None

    def tag_for(self, qa: CiQaRecord, discriminator: Optional[str] = None) -> str:
        """Tag under which a build is installed: ``current`` or ``current$<branch>``."""
        branch, is_default = branch_from_repo(qa.repo, self.default_branches)
        if branch is None or (is_default and branch not in (discriminator or "")):
            return CI_TAG
        return f"{CI_TAG}${branch}"

    def resolve(self, directive: Directive) -> Directive:
        """Fill in the pseudo-version, download URL and build info of a CI directive.

        Raises:
            UnresolvedCiError: the tag or branch is not in the listings.
        """
        discriminator = directive.version_literal or CI_TAG
        qa = self.resolve_qa_record(directive.package_id, discriminator)
        if qa is None:
            raise UnresolvedCiError(directive.raw_text)

        tag = self.tag_for(qa, discriminator)
        directive.ci_branch = tag.split("$", 1)[1] if "$" in tag else None
        directive.resolved_version = self.pseudo_version(qa)
        directive.tarball_url = self.package_url(qa)
        directive.build_date = qa.build_date
        directive.ci_url = qa.url.split("/ImplementationGuide/", 1)[0] or None
        directive.ci_org = qa.repo.split("/", 1)[0] if qa.repo else None
        if not directive.release and qa.fhir_version:
            release = release_for(qa.fhir_version)
            directive.release = release.value if release is not None else ""
        listing = self.listing(directive.package_id)
        if listing is not None:
            directive.manifests_by_source[self.name] = listing
        return directive

    def fetch_tarball(self, directive: Directive) -> TarballResult:
        if not directive.tarball_url:
            try:
                self.resolve(directive)
            except UnresolvedCiError as exc:
                return 404, None, str(exc)
        return get_bytes(directive.tarball_url or "")

    # cache integration

    def is_outdated(self, directive: Directive, cache) -> Optional[bool]:
        """True when the server build is newer than the installed copy.

        None when the build cannot be located on the server.
        """
        discriminator = directive.version_literal or CI_TAG
        qa = self.resolve_qa_record(directive.package_id, discriminator)
        if qa is None:
            return None
        moniker = f"{qa.package_id or directive.package_id}#{self.tag_for(qa, discriminator)}"
        if not cache.is_installed(moniker):
            return True
        manifest = cache.read_manifest(moniker)
        if manifest is None:
            return True
        installed = parse_build_date(manifest.date)
        if installed is None:
            return True
        if qa.build_date is None:
            return False
        return installed < _truncate(qa.build_date)

    def install_or_update(self, directive: Directive, cache) -> bool:
        """Download a CI build when the server copy is newer; returns True if installed.

        The new build replaces the previous copy under the tag-based moniker;
        a corrupt archive leaves the previous copy in place.

        Raises:
            UnresolvedCiError: the build is not on the server.
            NetworkInstallError: the archive could not be downloaded or extracted.
        """
        outdated = self.is_outdated(directive, cache)
        if outdated is None:
            raise UnresolvedCiError(directive.raw_text)
        if not directive.tarball_url:
            self.resolve(directive)
        if not outdated:
            logger.info("CI build %s is up to date", directive.moniker)
            return False

        status, content, error = get_bytes(directive.tarball_url or "")
        if status != 200 or content is None:
            raise NetworkInstallError(directive.moniker, 1, error or f"HTTP {status}")

        # install swaps the new folder in place of the previous copy
        try:
            cache.install(directive.moniker, content)
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise NetworkInstallError(directive.moniker, 1, f"extraction failed: {exc}") from exc
        logger.info("Installed CI build %s as %s", directive.resolved_version, directive.moniker)
        return True

    # URL inputs

    def directive_from_url(self, url: str) -> Optional[Directive]:
        """Map a build-server page URL to a CI directive, or None."""
        match = _IG_URL_RE.match(url.strip())
        if match:
            return self._guide_directive(match.group("org"), match.group("repo"), match.group("branch"))
        match = _CORE_URL_RE.match(url.strip())
        if match:
            return self._core_directive(match.group("branch"))
        return None

    def _guide_directive(self, org: str, repo: str, branch: Optional[str]) -> Optional[Directive]:
        prefix = f"{org}/{repo}/".lower()
        for records in self._get_records().values():
            for qa in records:
                if not qa.repo.lower().startswith(prefix):
                    continue
                qa_branch, is_default = branch_from_repo(qa.repo, self.default_branches)
                if branch is None and (is_default or qa_branch is None):
                    return parse_directive(f"{qa.package_id}#{CI_TAG}")
                if branch is not None and qa_branch is not None and qa_branch.lower() == branch.lower():
                    return parse_directive(f"{qa.package_id}#{CI_TAG}${qa_branch}")
        return None

    def _core_directive(self, branch: Optional[str]) -> Optional[Directive]:
        info_url = f"{self.branches_url}{branch}/version.info" if branch else f"{self.base_url}version.info"
        status, contents = get_text(info_url, use_cache=False)
        if status != 200 or contents is None:
            return None
        fhir_version = parse_version_info(contents).get("FhirVersion", "")
        if not fhir_version:
            return None
        package_id = f"hl7.fhir.r{fhir_version.split('.')[0]}.core"
        tag = f"{CI_TAG}${branch}" if branch and branch.lower() not in {b.lower() for b in self.default_branches} else CI_TAG
        return parse_directive(f"{package_id}#{tag}")
