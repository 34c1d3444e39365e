#!/usr/bin/env python3
"""
crossfyne - Host Runner

Image variant for targets whose tooling only exists on a matching host
(iOS, Darwin and Windows release builds). Commands run directly on the host;
container paths below /app and /go are mapped onto the host layout.
"""

import os
import subprocess
from typing import List, Optional

from crossfyne.Core.container import ImageState, PackageOutput, RunOptions
from crossfyne.Core.target_manager import Target
from crossfyne.Core.volume import Volume
from crossfyne.utils.helpers import check_command_exists, ensure_directory
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import ContainerExecError, IOFailureError, MissingRequirementError

# compiler settings a host build takes from the host environment
HOST_UNSET_ENV = ("CC", "CGO_CFLAGS", "CGO_LDFLAGS")


class HostImage:
    kind = "host"

    def __init__(self, target: Target, volume: Volume, required_tools: Optional[List[str]] = None):
        self.logger = get_logger(__name__)
        self.state = ImageState.for_target(target)
        self.required_tools = required_tools or []
        self.state.set_mount("project", volume.work_dir_host, volume.work_dir_container)
        for key in HOST_UNSET_ENV:
            self.state.unset_env(key)
        self.state.set_env("GOCACHE", os.path.join(volume.cache_dir_host, "go-build"))

    @property
    def id(self) -> str:
        return self.state.target.id

    @property
    def target(self) -> Target:
        return self.state.target

    @property
    def shares_host_fs(self) -> bool:
        return True

    def prepare(self):
        """Checks the host carries the tools the target needs"""
        for tool in self.required_tools:
            if not check_command_exists(tool):
                raise MissingRequirementError(
                    f"{tool} was not found in PATH, it is required to build {self.id} on the host",
                    {"tool": tool, "target": self.id}
                )

    def map_path(self, volume: Volume, value: str) -> str:
        if value.startswith("/app") or value.startswith("/go"):
            mapped = volume.to_host_path(value)
            if mapped is not None:
                return mapped
        return value

    def run(self, volume: Volume, options: RunOptions, command: List[str]):
        work_dir = self.map_path(volume, options.work_dir or volume.work_dir_container)
        args = [self.map_path(volume, arg) for arg in command]

        env = dict(os.environ)
        env.update(self.state.env)
        env.update(options.env)

        if options.debug:
            self.logger.debug(f"(host, cwd={work_dir}) {' '.join(args)}")

        try:
            returncode = subprocess.call(args, cwd=work_dir, env=env)
        except OSError as e:
            raise ContainerExecError(f"could not run {args[0]}: {e}", command=args) from e
        if returncode != 0:
            raise ContainerExecError(
                f"command exited with code {returncode}: {' '.join(args)}",
                command=args, returncode=returncode, details={"target": self.id}
            )

    def write_file(self, volume: Volume, container_path: str, data: bytes):
        host_path = self.map_path(volume, container_path)
        try:
            ensure_directory(os.path.dirname(host_path))
            with open(host_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise IOFailureError(f"could not write {host_path}: {e}", {"path": host_path}) from e

    def finalize(self, volume: Volume, output: PackageOutput) -> Optional[str]:
        return None

    def close(self):
        pass
