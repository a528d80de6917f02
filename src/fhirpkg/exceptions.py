"""Error taxonomy for directive resolution, installation and loading."""
from __future__ import annotations

from typing import Optional


class PackageError(Exception):
    """Base class for all package cache errors."""


class DirectiveParseError(PackageError):
    """Raised when a directive string is malformed."""

    def __init__(self, directive: str, reason: str):
        super().__init__(f"Invalid package directive '{directive}': {reason}")
        self.directive = directive
        self.reason = reason


class UnresolvedVersionError(PackageError):
    """No candidate version matched a Latest/Partial/Local request anywhere."""

    def __init__(self, directive: str, reason: str = "no matching version found"):
        super().__init__(f"Could not resolve '{directive}': {reason}")
        self.directive = directive
        self.reason = reason


class UnresolvedCiError(PackageError):
    """A CI tag, branch or pseudo-version is not present in the build listings."""

    def __init__(self, directive: str, reason: str = "not found on the build server"):
        super().__init__(f"Could not resolve CI build for '{directive}': {reason}")
        self.directive = directive
        self.reason = reason


class NetworkInstallError(PackageError):
    """Every source failed across the whole retry budget."""

    def __init__(self, moniker: str, attempts: int, last_error: Optional[str] = None):
        message = f"Failed to install '{moniker}' after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.moniker = moniker
        self.attempts = attempts
        self.last_error = last_error


class MissingArtifactError(PackageError):
    """A file listed in a package index does not exist on disk."""

    def __init__(self, moniker: str, filename: str):
        super().__init__(f"Listed file {moniker}:{filename} does not exist")
        self.moniker = moniker
        self.filename = filename


class ArtifactParseError(PackageError):
    """The artifact parser rejected a file."""

    def __init__(self, moniker: str, filename: str, resource_type: str):
        super().__init__(f"Failed to parse {resource_type} file {moniker}:{filename}")
        self.moniker = moniker
        self.filename = filename
        self.resource_type = resource_type
