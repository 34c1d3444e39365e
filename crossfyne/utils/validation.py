#!/usr/bin/env python3
"""
crossfyne - Validation Utilities

Error hierarchy surfaced by the driver and the request validators that run
before any container is started.

Key Responsibilities:
- Error kinds shared by every component
- Application identity, name and build number checks
- Package and keystore path containment checks
- Environment / metadata pair parsing
"""

import os
import re
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Any, Tuple, Union

from crossfyne.utils.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# EXCEPTION CLASSES
# ============================================================================

class CrossBuildError(Exception):
    """Base exception for every error surfaced by the driver"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(CrossBuildError):
    """Request validation error; raised before any container starts"""
    pass


class UnsupportedTargetError(ValidationError):
    """Unknown OS or architecture, or a combination the host cannot build"""
    pass


class MissingRequirementError(ValidationError):
    """A mandatory input is missing or points outside the project"""
    pass


class InvalidVersionError(ValidationError):
    """Version string is not dotted numeric or has too many components"""
    pass


class BackendUnavailableError(CrossBuildError):
    """No usable container engine or cluster configuration"""
    pass


class ContainerExecError(CrossBuildError):
    """A command inside the container exited non-zero"""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 returncode: Optional[int] = None, stderr: str = "",
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.update({"command": command or [], "returncode": returncode})
        if stderr:
            details["stderr"] = stderr
        super().__init__(message, details)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class RemotePodFailedError(CrossBuildError):
    """The remote pod failed or terminated before it was used"""
    pass


class ObjectStoreError(CrossBuildError):
    """Object store transfer failure"""
    pass


class PackagingFailedError(CrossBuildError):
    """The framework packaging tool failed or produced no artifact"""
    pass


class IOFailureError(CrossBuildError):
    """Filesystem I/O failure at the host boundary"""
    pass


class BuildInterruptedError(CrossBuildError):
    """The run was stopped by SIGINT or SIGTERM"""
    pass


# ============================================================================
# CONSTANTS
# ============================================================================

APP_ID_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_\-]*(\.[A-Za-z0-9_\-]+)+$')
ENV_KEY_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


# ============================================================================
# REQUEST VALIDATORS
# ============================================================================

def validate_name(name: str) -> str:
    """The artifact name is used as a file name on every OS"""
    if not name:
        raise MissingRequirementError("name is required")
    if "/" in name or "\\" in name:
        raise ValidationError(f"name cannot contain path separators: {name}",
                              {"name": name})
    return name


def validate_app_build(app_build: int) -> int:
    if app_build is None or int(app_build) <= 0:
        raise ValidationError("app build number should be greater than zero",
                              {"app_build": app_build})
    return int(app_build)


def validate_app_id(app_id: Optional[str], required: bool, target: str = "") -> Optional[str]:
    """
    Validate the reverse-DNS application identity.

    Args:
        app_id: Identity supplied by the user or FyneApp.toml
        required: Whether the selected target needs an identity (mobile, darwin)
        target: Target name for the error message

    Returns:
        The identity, unchanged
    """
    if not app_id:
        if required:
            raise MissingRequirementError(
                f"appID is mandatory for {target}" if target else "appID is mandatory",
                {"target": target}
            )
        return app_id

    if not APP_ID_PATTERN.match(app_id):
        logger.warning(f"appID '{app_id}' does not look like a reverse domain name")
    return app_id


def resolve_package_path(root: Union[str, Path], package: str) -> str:
    """
    Normalise the package sub-path against the project root.

    Relative paths are kept as given; absolute paths must be below the root and
    are converted to a ``./`` relative path.
    """
    if not package:
        return "."

    if not os.path.isabs(package):
        return package

    root_path = Path(root).resolve()
    package_path = Path(package).resolve()
    try:
        relative = package_path.relative_to(root_path)
    except ValueError:
        raise ValidationError(
            "package options when specified as absolute path must be relative to the project root directory",
            {"root": str(root_path), "package": package}
        )
    return "./" + relative.as_posix() if relative.parts else "."


def validate_keystore(root: Union[str, Path], keystore: str) -> PurePosixPath:
    """
    Check the Android keystore lives inside the project.

    Returns:
        The keystore path relative to the project root, as a posix path
    """
    if not keystore:
        raise MissingRequirementError("keystore is required for android release builds")

    if os.path.isabs(keystore):
        raise MissingRequirementError(
            "keystore location must be relative to the project root",
            {"keystore": keystore}
        )

    root_path = Path(root).resolve()
    keystore_path = (root_path / keystore).resolve()
    try:
        relative = keystore_path.relative_to(root_path)
    except ValueError:
        raise MissingRequirementError(
            "keystore location must be within the project root",
            {"keystore": keystore, "root": str(root_path)}
        )

    if not keystore_path.is_file():
        raise MissingRequirementError(f"keystore not found: {keystore_path}",
                                      {"keystore": str(keystore_path)})
    return PurePosixPath(relative.as_posix())


def parse_pairs(values: Union[str, List[str], None], what: str = "env") -> Dict[str, str]:
    """
    Parse ``K=V`` pairs, comma separated or repeated.

    The value may itself contain ``=``; the split is on the first one.
    """
    if not values:
        return {}
    if isinstance(values, str):
        values = [values]

    pairs: Dict[str, str] = {}
    for value in values:
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            key, sep, val = item.partition("=")
            if not sep or not key:
                raise ValidationError(f"invalid {what} variable: {item!r}, expected KEY=VALUE",
                                      {what: item})
            if what == "env" and not ENV_KEY_PATTERN.match(key):
                raise ValidationError(f"invalid {what} variable name: {key!r}", {what: item})
            pairs[key] = val
    return pairs


def split_list(value: Union[str, List[str], Tuple[str, ...], None]) -> List[str]:
    """Split comma separated option values, dropping empties"""
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    result = []
    for item in value:
        result.extend(part.strip() for part in item.split(",") if part.strip())
    return result
