#!/usr/bin/env python3
"""
crossfyne - Build Engine

Runs the per-target pipeline against a prepared container image:

    prepare -> clean -> go.mod -> icon -> [windows resources] -> compile
            -> package -> deposit -> finalize

Targets are built one after the other; the image is always closed, even when
a step fails.
"""

import io
import os
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from PIL import Image, ImageDraw

from crossfyne.Core.container import ContainerImage, PackageOutput, RunOptions
from crossfyne.Core.distribution import BuildArtifact, DistributionWriter, describe
from crossfyne.Core.packaging import GO_MOD, binary_name, package_step
from crossfyne.Core.volume import DEFAULT_ICON_NAME, Volume, join_path_container, join_path_host
from crossfyne.Core.windows_resource import WindowsResource
from crossfyne.utils.helpers import ensure_directory, remove_path
from crossfyne.utils.logging import get_logger, log_exceptions, log_performance
from crossfyne.utils.validation import (
    ContainerExecError, CrossBuildError, IOFailureError, MissingRequirementError
)

# ============================================================================
# ENUMS AND CONSTANTS
# ============================================================================

class BuildStatus(Enum):
    QUEUED = "queued"
    PREPARING = "preparing"
    CLEANING = "cleaning"
    BUILDING = "building"
    PACKAGING = "packaging"
    DEPOSITING = "depositing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STRIP_DEBUG_LDFLAGS = ["-w", "-s"]
PLACEHOLDER_ICON_SIZE = 512


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class BuildConfiguration:
    """Validated build request shared by every target of a run"""
    work_dir: str
    targets: List[str]
    name: str
    package: str = "."
    cache_dir: Optional[str] = None
    app_id: Optional[str] = None
    app_version: str = "1.0.0"
    app_build: int = 1
    icon: str = DEFAULT_ICON_NAME
    env: Dict[str, str] = field(default_factory=dict)
    ldflags: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    strip_debug: bool = True
    console: bool = False
    release: bool = False
    debug: bool = False

    # release signing
    certificate: Optional[str] = None
    developer: Optional[str] = None
    password: Optional[str] = None
    profile: Optional[str] = None
    keystore: Optional[str] = None
    keystore_pass: Optional[str] = None
    key_pass: Optional[str] = None
    category: Optional[str] = None

    # engine and images
    engine: str = ""
    image: Optional[str] = None
    docker_registry: str = "docker.io"
    pull: bool = False
    cache_enabled: bool = True

    # kubernetes
    namespace: str = "default"
    s3_path: str = "/"
    size_limit: str = "2Gi"
    upload_project: bool = True
    download_result: bool = True
    strict_cache: bool = False
    pod_ready_timeout: int = 600


@dataclass
class BuildProgress:
    """Tracks the state of a single target"""
    target_id: str
    status: BuildStatus
    current_stage: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)
    artifact: Optional[BuildArtifact] = None

    def advance(self, status: BuildStatus, stage: str):
        self.status = status
        self.current_stage = stage


# ============================================================================
# PLACEHOLDER ICON
# ============================================================================

def placeholder_icon(size: int = PLACEHOLDER_ICON_SIZE) -> bytes:
    """A plain PNG used when the project ships no icon"""
    img = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    margin = size // 16
    draw.rounded_rectangle([margin, margin, size - margin, size - margin],
                           radius=size // 5, fill=(0, 112, 214, 255))
    bar = size // 8
    left = size // 3
    top = size // 4
    draw.rectangle([left, top, left + bar, size - top], fill=(255, 255, 255, 255))
    draw.rectangle([left, top, size - left + bar // 2, top + bar], fill=(255, 255, 255, 255))
    draw.rectangle([left, size // 2 - bar // 2, size - left, size // 2 + bar // 2],
                   fill=(255, 255, 255, 255))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


# ============================================================================
# BUILD ENGINE
# ============================================================================

class BuildEngine:
    """
    Drives one image through the pipeline.

    The engine never starts containers itself; every command goes through the
    image so local, remote and host backends share the same steps.
    """

    def __init__(self, config: BuildConfiguration, volume: Volume,
                 writer: Optional[DistributionWriter] = None):
        self.logger = get_logger(__name__)
        self.config = config
        self.volume = volume
        self.writer = writer or DistributionWriter(volume)
        self._builds: Dict[str, BuildProgress] = {}

    def get_build_status(self, target_id: str) -> Optional[BuildProgress]:
        return self._builds.get(target_id)

    def list_builds(self) -> List[BuildProgress]:
        return list(self._builds.values())

    def cancel_build(self, target_id: str) -> bool:
        progress = self._builds.get(target_id)
        if not progress or progress.status in (BuildStatus.COMPLETED, BuildStatus.FAILED,
                                               BuildStatus.CANCELLED):
            return False
        progress.advance(BuildStatus.CANCELLED, "Cancelled")
        progress.end_time = datetime.now()
        return True

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @log_exceptions(__name__, expected=(CrossBuildError,))
    def build(self, image: ContainerImage) -> BuildArtifact:
        """
        Builds one target.

        Returns:
            BuildArtifact: The deposited bundle

        Raises:
            CrossBuildError: any step failure; the image is closed regardless
        """
        progress = BuildProgress(image.id, BuildStatus.QUEUED, "Initializing", start_time=datetime.now())
        self._builds[image.id] = progress
        self.logger.info(f"Target: {image.target.os}/{image.target.arch or '-'} ({image.id})")

        step = package_step(image, self.config.release)
        created_go_mod = False
        try:
            progress.advance(BuildStatus.PREPARING, "Preparing image")
            image.prepare()

            progress.advance(BuildStatus.CLEANING, "Cleaning target directories")
            self.clean(image)

            created_go_mod = self.ensure_go_mod(image)
            icon_png = self.prepare_icon(image)

            if step.compiles:
                progress.advance(BuildStatus.BUILDING, "Compiling")
                self.compile(image, icon_png)

            progress.advance(BuildStatus.PACKAGING, "Packaging")
            self.logger.info("Packaging app...")
            output = step.package(self.config, self.volume, image)

            progress.advance(BuildStatus.DEPOSITING, "Depositing")
            artifact = self.deposit(image, output)

            progress.advance(BuildStatus.COMPLETED, "Completed")
            progress.artifact = artifact
            return artifact
        except CrossBuildError as e:
            if progress.status is not BuildStatus.CANCELLED:
                progress.advance(BuildStatus.FAILED, progress.current_stage)
            progress.errors.append(e.message)
            self.logger.error(f"{image.id}: {e.message}")
            raise
        finally:
            progress.end_time = datetime.now()
            if created_go_mod and image.shares_host_fs:
                remove_path(join_path_host(self.volume.work_dir_host, GO_MOD))
            image.close()

    def clean(self, image):
        """Empties bin, dist and tmp for the target and recreates bin and tmp"""
        self.logger.info("Cleaning target directories...")
        for root in (self.volume.bin_dir_host, self.volume.dist_dir_host, self.volume.tmp_dir_host):
            remove_path(join_path_host(root, image.id))
        ensure_directory(join_path_host(self.volume.bin_dir_host, image.id))
        ensure_directory(join_path_host(self.volume.tmp_dir_host, image.id))

        if not image.shares_host_fs:
            dirs = [join_path_container(root, image.id) for root in (
                self.volume.bin_dir_container, self.volume.dist_dir_container,
                self.volume.tmp_dir_container)]
            keep = [dirs[0], dirs[2]]
            script = f"rm -rf {' '.join(shlex.quote(d) for d in dirs)} && " \
                     f"mkdir -p {' '.join(shlex.quote(d) for d in keep)}"
            image.run(self.volume, RunOptions(debug=self.config.debug), ["sh", "-c", script])

    def ensure_go_mod(self, image) -> bool:
        """Creates a temporary go.mod named after the app; True when one was created"""
        go_mod = join_path_host(self.volume.work_dir_host, GO_MOD)
        if os.path.isfile(go_mod):
            self.logger.debug("go.mod found")
            return False

        self.logger.info("go.mod not found, creating a temporary one...")
        try:
            image.run(self.volume, RunOptions(debug=self.config.debug),
                      ["go", "mod", "init", self.config.name])
        except ContainerExecError as e:
            raise ContainerExecError(f"could not generate the temporary go module: {e.message}",
                                     command=e.command, returncode=e.returncode) from e
        self.logger.success("go.mod created")
        return True

    def icon_host_path(self) -> str:
        icon = self.config.icon
        if os.path.isabs(icon):
            return icon
        return join_path_host(self.volume.work_dir_host, icon)

    def prepare_icon(self, image) -> bytes:
        """
        Copies the icon to ``<tmp>/<id>/Icon.png``.

        A missing default icon is replaced by a generated placeholder written
        into the project; any other missing icon is an error.
        """
        path = self.icon_host_path()
        if not os.path.isfile(path):
            if self.config.icon != DEFAULT_ICON_NAME:
                raise MissingRequirementError(f"icon not found at {self.config.icon!r}",
                                              {"icon": self.config.icon})
            self.logger.warning(f"Default icon not found at {self.config.icon!r}")
            try:
                with open(path, "wb") as f:
                    f.write(placeholder_icon())
            except OSError as e:
                raise IOFailureError(f"could not create the placeholder icon: {e}", {"path": path}) from e
            self.logger.success("Created a placeholder icon for testing purposes")

        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise IOFailureError(f"could not read icon {path}: {e}", {"path": path}) from e

        dest = join_path_container(self.volume.tmp_dir_container, image.id, DEFAULT_ICON_NAME)
        image.write_file(self.volume, dest, data)
        return data

    def go_build_command(self, image, output: str) -> List[str]:
        ldflags = list(image.target.ldflags)
        if self.config.strip_debug:
            ldflags.extend(f for f in STRIP_DEBUG_LDFLAGS if f not in ldflags)

        args = ["go", "build", "-trimpath"]
        if ldflags:
            args.extend(["-ldflags", " ".join(ldflags)])
        if image.state.tags:
            args.extend(["-tags", ",".join(image.state.tags)])
        args.extend(["-o", output])
        if self.config.debug:
            args.append("-v")
        args.append(self.config.package)
        return args

    @log_performance(__name__)
    def compile(self, image, icon_png: bytes):
        """go build into ``<bin>/<id>``; Windows links a generated .syso"""
        exe = binary_name(self.config, image, self.volume.work_dir_host)
        output = join_path_container(self.volume.bin_dir_container, image.id, exe)

        resource = None
        if image.target.os == "windows":
            resource = WindowsResource(self.config.name, self.config.app_version,
                                       self.config.app_build, self.config.package,
                                       debug=self.config.debug)
        try:
            if resource is not None:
                self.logger.info("Generating Windows resources...")
                resource.generate(image, self.volume, icon_png)

            self.logger.info("Building binary...")
            image.run(self.volume, RunOptions(debug=self.config.debug),
                      self.go_build_command(image, output))
            self.logger.success(f"Binary: {output}")
        finally:
            if resource is not None:
                self._remove_resource(image, resource.syso_path(self.volume))

    def _remove_resource(self, image, syso: str):
        if image.shares_host_fs:
            remove_path(self.volume.to_host_path(syso))
        else:
            image.run(self.volume, RunOptions(debug=self.config.debug), ["rm", "-f", syso])

    def deposit(self, image, output: PackageOutput) -> BuildArtifact:
        """Moves the bundle into dist, or lets a remote image bring it back"""
        if image.shares_host_fs:
            artifact = self.writer.deposit(image.id, output)
            image.finalize(self.volume, output)
            return artifact

        dest = image.finalize(self.volume, output)
        remote_key = image.artifact_key(output) if hasattr(image, "artifact_key") else None
        if dest is not None:
            self.logger.success(f"Package: {dest}")
        return describe(image.id, output.name, dest, remote_key)
