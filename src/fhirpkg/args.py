"""Argument parsing for the fhirpkg command."""

import argparse

from fhirpkg import __version__


def _add_common(parser):
    parser.add_argument("--cache-dir",
                        dest="CACHE_DIR",
                        help="Package cache directory (default: ~/.fhir/packages)",
                        action="store",
                        type=str)
    parser.add_argument("--registry",
                        dest="REGISTRIES",
                        help="Registry endpoint; repeat to list several (replaces the defaults)",
                        action="append",
                        type=str,
                        default=[])
    parser.add_argument("--offline",
                        dest="OFFLINE",
                        help="Use only the package cache, never the network.",
                        action="store_true")
    parser.add_argument("--ci-invalidation",
                        dest="CI_INVALIDATION",
                        help="Seconds before CI build listings are refetched (0: always, -1: never)",
                        action="store",
                        type=int)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to a YAML configuration file",
                        action="store",
                        type=str)
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str.upper,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')


def build_parser():
    """Build the top-level parser with its resolve and install subcommands."""
    parser = argparse.ArgumentParser(
        prog="fhirpkg",
        description="Resolve, download and load FHIR packages into a local cache.",
        add_help=True,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="COMMAND", required=True)

    resolve = subparsers.add_parser("resolve", help="Resolve directives to exact versions and download URLs.")
    resolve.add_argument("DIRECTIVES",
                         help="Package directives (id[#version]) or build server URLs",
                         nargs="+")
    _add_common(resolve)

    install = subparsers.add_parser("install", help="Install and load packages with their dependencies.")
    install.add_argument("DIRECTIVES",
                         help="Package directives, build server URLs or package directories",
                         nargs="+")
    install.add_argument("--name",
                         dest="NAME",
                         help="Name of the loaded collection (default: the first package id)",
                         action="store",
                         type=str)
    _add_common(install)

    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
