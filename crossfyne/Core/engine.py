#!/usr/bin/env python3
"""
crossfyne - Engine Selector

Chooses the container backend: a local docker or podman binary, or a
Kubernetes cluster reached with the user's kube config or in-cluster
credentials.
"""

import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from packaging import version

from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import BackendUnavailableError

logger = get_logger(__name__)


# ============================================================================
# ENUMS AND CONSTANTS
# ============================================================================

class EngineKind(Enum):
    AUTODETECT = ""
    DOCKER = "docker"
    PODMAN = "podman"
    KUBERNETES = "kubernetes"


SUPPORTED_ENGINES = [kind.value for kind in EngineKind if kind is not EngineKind.AUTODETECT]

MIN_DOCKER_VERSION = "19.03"

# Engine environment forwarded to the remote helper
S3_ENV_KEYS = ("AWS_S3_ENDPOINT", "AWS_S3_REGION", "AWS_S3_BUCKET")

KUBE_CONFIG_PATH = Path.home() / ".kube" / "config"


# ============================================================================
# ENGINE
# ============================================================================

@dataclass
class Engine:
    """An opaque handle on the selected backend"""
    kind: EngineKind
    binary: str = ""
    kube_config: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def is_docker(self) -> bool:
        return self.kind is EngineKind.DOCKER

    @property
    def is_podman(self) -> bool:
        return self.kind is EngineKind.PODMAN

    @property
    def is_kubernetes(self) -> bool:
        return self.kind is EngineKind.KUBERNETES

    def __str__(self) -> str:
        return self.name


def make_engine(selector: str = "") -> Engine:
    """
    Select a backend.

    Args:
        selector: "", "docker", "podman" or "kubernetes"

    Returns:
        Engine: The detected backend

    Raises:
        BackendUnavailableError: no binary found, or no cluster configuration
    """
    selector = (selector or "").strip().lower()

    if selector in (EngineKind.DOCKER.value, EngineKind.PODMAN.value):
        binary = shutil.which(selector)
        if not binary:
            raise BackendUnavailableError(f"{selector} binary not found in PATH",
                                          {"engine": selector})
        kind = EngineKind(selector)
        if kind is EngineKind.DOCKER:
            _check_docker_version(binary)
        return Engine(kind=kind, binary=binary)

    if selector == EngineKind.KUBERNETES.value:
        return _make_kubernetes_engine()

    if selector == EngineKind.AUTODETECT.value:
        return _detect_local_engine()

    raise BackendUnavailableError(
        f"unsupported container engine: {selector}. Supported engines: {', '.join(SUPPORTED_ENGINES)}",
        {"engine": selector}
    )


def _detect_local_engine() -> Engine:
    """docker first; a 'docker' that reports podman is treated as podman"""
    binary = shutil.which(EngineKind.DOCKER.value)
    if not binary:
        binary = shutil.which(EngineKind.PODMAN.value)
        if not binary:
            raise BackendUnavailableError("engine binary not found in PATH")
        return Engine(kind=EngineKind.PODMAN, binary=binary)

    try:
        out = subprocess.run([binary, "--version"], capture_output=True, text=True, check=True).stdout
    except (OSError, subprocess.CalledProcessError) as e:
        raise BackendUnavailableError(f"could not detect engine version: {e}",
                                      {"binary": binary}) from e

    lowered = out.lower()
    if "docker" in lowered:
        _check_docker_version(binary, lowered)
        return Engine(kind=EngineKind.DOCKER, binary=binary)
    if "podman" in lowered:
        return Engine(kind=EngineKind.PODMAN, binary=binary)

    raise BackendUnavailableError(f"unsupported container engine found: {out.strip()}",
                                  {"binary": binary})


def _check_docker_version(binary: str, version_output: Optional[str] = None):
    """Warns on client versions older than MIN_DOCKER_VERSION"""
    if version_output is None:
        try:
            version_output = subprocess.run([binary, "--version"], capture_output=True,
                                            text=True, check=False).stdout
        except OSError:
            return

    match = re.search(r'(\d+\.\d+(?:\.\d+)?)', version_output or "")
    if not match:
        return
    try:
        if version.parse(match.group(1)) < version.parse(MIN_DOCKER_VERSION):
            logger.warning(f"docker {match.group(1)} is older than {MIN_DOCKER_VERSION}, builds may fail")
    except version.InvalidVersion:
        logger.debug(f"could not parse docker version {match.group(1)}")


def _make_kubernetes_engine() -> Engine:
    """The cluster is reachable from the user's kube config or from inside a pod"""
    kube_config = os.environ.get("KUBECONFIG") or str(KUBE_CONFIG_PATH)
    env = {key: os.environ[key] for key in S3_ENV_KEYS if os.environ.get(key)}

    if Path(kube_config).is_file():
        return Engine(kind=EngineKind.KUBERNETES, kube_config=kube_config, env=env)

    if os.environ.get("KUBERNETES_SERVICE_HOST"):
        return Engine(kind=EngineKind.KUBERNETES, kube_config=None, env=env)

    raise BackendUnavailableError(
        "kubernetes configuration not found: neither a kube config file nor an in-cluster environment",
        {"kube_config": kube_config}
    )
