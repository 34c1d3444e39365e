#!/usr/bin/env python3
"""
crossfyne - Local Container Backend

Runs toolchain commands with the local docker or podman binary. The project
and the toolchain cache are bind mounted, so every output lands directly on
the host filesystem.

Image pulls go through the docker SDK when the engine is docker; podman is
driven through its CLI for both pulls and runs.
"""

import os
import subprocess
import threading
from typing import List, Optional

import docker
from docker.errors import APIError, DockerException

from crossfyne.Core.container import ImageState, PackageOutput, RunOptions
from crossfyne.Core.engine import Engine
from crossfyne.Core.target_manager import Target
from crossfyne.Core.volume import Volume
from crossfyne.utils.helpers import current_user_ids, ensure_directory
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import ContainerExecError, IOFailureError

PROJECT_MOUNT = "project"
CACHE_MOUNT = "cache"


class LocalContainerImage:
    """
    A toolchain image executed through ``<engine> run --rm``.

    Each ``run`` spawns a fresh container; there is no long-lived container to
    tear down, so ``close`` only interrupts a command still running.
    """

    kind = "local"

    def __init__(self, engine: Engine, target: Target, volume: Volume,
                 cache_enabled: bool = True, pull: bool = False,
                 docker_client: Optional[docker.DockerClient] = None):
        self.logger = get_logger(__name__)
        self.engine = engine
        self.state = ImageState.for_target(target)
        self.cache_enabled = cache_enabled
        self.pull = pull
        self._docker_client = docker_client
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

        self.state.set_mount(PROJECT_MOUNT, volume.work_dir_host, volume.work_dir_container)
        if cache_enabled:
            self.state.set_mount(CACHE_MOUNT, volume.cache_dir_host, volume.cache_dir_container)

    @property
    def id(self) -> str:
        return self.state.target.id

    @property
    def target(self) -> Target:
        return self.state.target

    @property
    def shares_host_fs(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare(self):
        """Pulls the image when requested; a failed pull is not fatal"""
        if not self.pull:
            return

        self.logger.info(f"Pulling image {self.state.image} ...")
        try:
            if self.engine.is_docker:
                self._pull_with_sdk()
            else:
                self._pull_with_cli()
            self.logger.success(f"Image pulled: {self.state.image}")
        except (DockerException, OSError, subprocess.CalledProcessError) as e:
            self.logger.warning(f"Could not pull image {self.state.image}, using the local copy: {e}")

    def _pull_with_sdk(self):
        client = self._docker_client or docker.from_env()
        repository, tag = split_image_tag(self.state.image)
        try:
            client.images.pull(repository, tag=tag)
        except APIError:
            # offline or rate limited; fine when the image is already present
            client.images.get(self.state.image)

    def _pull_with_cli(self):
        subprocess.run([self.engine.binary, "pull", self.state.image], check=True)

    def finalize(self, volume: Volume, output: PackageOutput) -> Optional[str]:
        """Outputs are already on the host through the bind mount"""
        return None

    def close(self):
        with self._lock:
            if self._process and self._process.poll() is None:
                self.logger.debug(f"Interrupting container process for {self.id}")
                self._process.terminate()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def build_run_args(self, volume: Volume, options: RunOptions, command: List[str],
                       host_is_windows: Optional[bool] = None,
                       uid: Optional[int] = None) -> List[str]:
        """
        Assemble the engine argument vector.

        A pure function of the image, the volume, the options and the command;
        ``host_is_windows`` and ``uid`` default to the running host.
        """
        if host_is_windows is None:
            host_is_windows = os.name == "nt"
        if uid is None and not host_is_windows:
            uid = current_user_ids()[0]

        work_dir = options.work_dir or volume.work_dir_container

        args = [self.engine.binary, "run", "--rm", "-t", "-w", work_dir]

        for m in self.state.mounts:
            args.extend(["-v", f"{m.local_host}:{m.in_container}:z"])

        if self.engine.is_podman:
            args.extend(["--userns", "keep-id", "-e", "use_podman=1"])

        args.extend(["-e", "CGO_ENABLED=1"])
        if self.cache_enabled:
            args.extend(["-e", f"GOCACHE={volume.go_cache_dir_container}"])

        for key, value in self.state.env.items():
            args.extend(["-e", f"{key}={value}"])
        for key, value in self.engine.env.items():
            args.extend(["-e", f"{key}={value}"])
        for key, value in options.env.items():
            args.extend(["-e", f"{key}={value}"])

        if not host_is_windows and not self.engine.is_podman and uid is not None:
            args.extend(["-e", f"fyne_uid={uid}"])

        args.append(self.state.image)
        args.extend(command)
        return args

    def run(self, volume: Volume, options: RunOptions, command: List[str]):
        """
        Run ``command`` in a throw-away container.

        Raises:
            ContainerExecError: the container exited non-zero
        """
        args = self.build_run_args(volume, options, command)
        if options.debug:
            self.logger.debug(" ".join(args))

        try:
            with self._lock:
                self._process = subprocess.Popen(args)
            returncode = self._process.wait()
        except OSError as e:
            raise ContainerExecError(f"could not start {self.engine.name}: {e}", command=args) from e
        finally:
            with self._lock:
                self._process = None

        if returncode != 0:
            raise ContainerExecError(
                f"command exited with code {returncode}: {' '.join(command)}",
                command=args,
                returncode=returncode,
                details={"target": self.id},
            )

    def write_file(self, volume: Volume, container_path: str, data: bytes):
        """Writes through the bind mount on the host side"""
        host_path = volume.to_host_path(container_path)
        if host_path is None:
            raise IOFailureError(f"{container_path} is not below a bind mount",
                                 {"path": container_path})
        try:
            ensure_directory(os.path.dirname(host_path))
            with open(host_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise IOFailureError(f"could not write {host_path}: {e}", {"path": host_path}) from e


def split_image_tag(image: str):
    """``repo:tag`` -> (repo, tag); a port in the registry host is not a tag"""
    last = image.rsplit("/", 1)[-1]
    if ":" in last:
        repository, tag = image.rsplit(":", 1)
        return repository, tag
    return image, "latest"


def run_sdk_extractor(engine: Engine, image: str, sdk_dir_host: str, dmg_name: str,
                      pull: bool = True):
    """
    Runs the Darwin SDK extractor image with ``sdk_dir_host`` mounted at /mnt.

    Used by the ``darwin-sdk-extract`` command.
    """
    logger = get_logger(__name__)
    if pull:
        try:
            subprocess.run([engine.binary, "pull", image], check=True)
        except (OSError, subprocess.CalledProcessError) as e:
            logger.warning(f"Could not pull {image}: {e}")

    args = [engine.binary, "run", "--rm", "-t", "-w", "/mnt",
            "-v", f"{sdk_dir_host}:/mnt:z"]
    if engine.is_podman:
        args.extend(["--userns", "keep-id", "-e", "use_podman=1"])
    elif os.name != "nt":
        args.extend(["-e", f"fyne_uid={current_user_ids()[0]}"])
    args.extend([image, "darwin-sdk-extractor.sh", dmg_name])

    returncode = subprocess.call(args)
    if returncode != 0:
        raise ContainerExecError(f"SDK extraction failed with code {returncode}",
                                 command=args, returncode=returncode)
