"""Command-line entry point: ``fhirpkg resolve`` and ``fhirpkg install``."""
from __future__ import annotations

import logging
import os
import sys

import yaml
from filelock import Timeout

from fhirpkg.args import parse_args
from fhirpkg.cache.disk import DiskCache
from fhirpkg.common.logging_utils import LOG_LEVEL_ENV, configure_logging, extra_context, is_debug_enabled
from fhirpkg.constants import Constants, ExitCodes, _load_yaml_config, apply_config
from fhirpkg.exceptions import (
    ArtifactParseError,
    DirectiveParseError,
    MissingArtifactError,
    NetworkInstallError,
    UnresolvedCiError,
    UnresolvedVersionError,
)
from fhirpkg.loader.installer import PackageLoader
from fhirpkg.registry.ci import CiBuildClient
from fhirpkg.registry.client import RegistryClient
from fhirpkg.versioning.resolver import Resolver

logger = logging.getLogger(__name__)


def _apply_overrides(args) -> None:
    """CLI flags win over the YAML configuration."""
    if args.CACHE_DIR:
        Constants.CACHE_DIR = args.CACHE_DIR
    if args.REGISTRIES:
        Constants.REGISTRY_URLS = list(args.REGISTRIES)
    if args.OFFLINE:
        Constants.OFFLINE = True
    if args.CI_INVALIDATION is not None:
        Constants.CI_INVALIDATION_SEC = args.CI_INVALIDATION


def _exit_code_for(exc: Exception) -> ExitCodes:
    if isinstance(exc, DirectiveParseError):
        return ExitCodes.PARSE_ERROR
    if isinstance(exc, (UnresolvedVersionError, UnresolvedCiError)):
        return ExitCodes.RESOLUTION_ERROR
    if isinstance(exc, (NetworkInstallError, Timeout)):
        return ExitCodes.CONNECTION_ERROR
    return ExitCodes.FILE_ERROR


def run_resolve(loader: PackageLoader, directives) -> None:
    for text in directives:
        directive = loader.directive_for(text)
        loader.resolver.resolve(directive)
        print(f"{directive.moniker}\t{directive.tarball_url or ''}")


def run_install(loader: PackageLoader, inputs, name=None) -> None:
    collection = loader.load(inputs, name=name)
    for moniker in collection.manifests:
        print(moniker)
    logger.info(
        "Loaded %d packages (%d definitions) for %s",
        len(collection.manifests),
        collection.count(),
        collection.main_package_id or collection.name,
    )


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    os.environ[LOG_LEVEL_ENV] = args.LOG_LEVEL
    configure_logging()

    try:
        apply_config(_load_yaml_config(args.CONFIG))
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Could not read configuration: %s", exc)
        sys.exit(ExitCodes.FILE_ERROR.value)
    _apply_overrides(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(
                event="function_entry",
                component="cli",
                action=args.COMMAND,
                count=len(args.DIRECTIVES),
                offline=Constants.OFFLINE
            )
        )

    registries = [RegistryClient(url) for url in Constants.REGISTRY_URLS]
    ci_client = CiBuildClient()
    try:
        with DiskCache(Constants.CACHE_DIR) as cache:
            resolver = Resolver(registries, cache=cache, ci_client=ci_client)
            loader = PackageLoader(cache, resolver)
            if args.COMMAND == "resolve":
                run_resolve(loader, args.DIRECTIVES)
            else:
                run_install(loader, args.DIRECTIVES, name=args.NAME)
    except (
        DirectiveParseError,
        UnresolvedVersionError,
        UnresolvedCiError,
        NetworkInstallError,
        MissingArtifactError,
        ArtifactParseError,
        Timeout,
        OSError,
    ) as exc:
        logger.error("%s", exc)
        sys.exit(_exit_code_for(exc).value)

    sys.exit(ExitCodes.SUCCESS.value)


if __name__ == "__main__":
    main()
