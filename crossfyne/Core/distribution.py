#!/usr/bin/env python3
"""
crossfyne - Distribution Writer

Moves packaged bundles into ``<dist>/<targetId>/`` and describes the result.
"""

import os
import shutil
from dataclasses import dataclass
from typing import Optional

from crossfyne.Core.container import PackageOutput
from crossfyne.Core.volume import Volume, join_path_host
from crossfyne.utils.helpers import calculate_file_checksum, ensure_directory, remove_path
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import IOFailureError


@dataclass
class BuildArtifact:
    """A deposited bundle; ``host_path`` is None when it stayed in the object store"""
    target_id: str
    file_name: str
    host_path: Optional[str] = None
    remote_key: Optional[str] = None
    size_bytes: Optional[int] = None
    sha256: Optional[str] = None

    @property
    def is_downloaded(self) -> bool:
        return self.host_path is not None


def describe(target_id: str, file_name: str, host_path: Optional[str],
             remote_key: Optional[str] = None) -> BuildArtifact:
    """Builds the artifact record, with size and digest for plain files"""
    artifact = BuildArtifact(target_id, file_name, host_path, remote_key)
    if host_path and os.path.isfile(host_path):
        artifact.size_bytes = os.path.getsize(host_path)
        artifact.sha256 = calculate_file_checksum(host_path)
    elif host_path and os.path.isdir(host_path):
        artifact.size_bytes = sum(
            os.path.getsize(os.path.join(root, f))
            for root, _dirs, files in os.walk(host_path) for f in files
            if not os.path.islink(os.path.join(root, f))
        )
    return artifact


class DistributionWriter:
    def __init__(self, volume: Volume):
        self.logger = get_logger(__name__)
        self.volume = volume

    def destination(self, target_id: str, output: PackageOutput) -> str:
        return join_path_host(self.volume.dist_dir_host, target_id, output.name)

    def deposit(self, target_id: str, output: PackageOutput) -> BuildArtifact:
        """
        Moves a bundle that is visible on the host into the distribution dir.

        Any previous artifact at the destination is removed first so a failed
        move never leaves a half-overwritten bundle behind.

        Raises:
            IOFailureError: the bundle is missing or cannot be moved
        """
        source = self.volume.to_host_path(output.container_path)
        if source is None or not os.path.exists(source):
            raise IOFailureError(f"packaged bundle not found: {output.container_path}",
                                 {"target": target_id, "path": output.container_path})

        dest = self.destination(target_id, output)
        if os.path.abspath(source) != os.path.abspath(dest):
            remove_path(dest)
            ensure_directory(os.path.dirname(dest))
            try:
                shutil.move(source, dest)
            except OSError as e:
                raise IOFailureError(f"could not move {source} to {dest}: {e}",
                                     {"target": target_id}) from e

        self.logger.success(f"Package: {dest}")
        return describe(target_id, output.name, dest)
