#!/usr/bin/env python3
"""
crossfyne - Packaging

Builds the packaging tool invocations for every target OS and locates the
bundle each one produces.

Desktop targets (linux, freebsd, darwin) are compiled by the pipeline and the
tool only wraps the executable; mobile and web targets are compiled by the
tool itself. Host-only builds (ios, darwin and windows releases) call the
``fyne`` binary found on the host.
"""

import glob
import os
import posixpath
import re
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from crossfyne.Core.container import PackageOutput, RunOptions
from crossfyne.Core.volume import DEFAULT_ICON_NAME, Volume, join_path_container
from crossfyne.utils.helpers import zip_file
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import (
    ContainerExecError, MissingRequirementError, PackagingFailedError
)

if TYPE_CHECKING:
    from crossfyne.Core.builder import BuildConfiguration

logger = get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

FYNE_BIN_CONTAINER = "/usr/local/bin/fyne"
FYNE_BIN_HOST = "fyne"

GO_MOD = "go.mod"
_MODULE_LINE = re.compile(r'^\s*module\s+("?)([^\s"]+)\1\s*$', re.MULTILINE)


@dataclass
class PackageStep:
    """How a target OS is compiled and bundled"""
    compiles: bool
    package: Callable[["BuildConfiguration", Volume, object], PackageOutput]


# ============================================================================
# HELPERS
# ============================================================================

def module_name(work_dir_host: str, fallback: str) -> str:
    """Last element of the module path declared in go.mod"""
    path = os.path.join(work_dir_host, GO_MOD)
    try:
        with open(path, "r", encoding="utf-8") as f:
            match = _MODULE_LINE.search(f.read())
    except OSError:
        return fallback
    if not match:
        return fallback
    return posixpath.basename(match.group(2).rstrip("/")) or fallback


def binary_name(config: "BuildConfiguration", image, work_dir_host: str) -> str:
    """Name of the executable the compile step writes to ``<bin>/<id>``"""
    target = image.target
    if target.os == "darwin":
        return module_name(work_dir_host, config.name)
    return config.name + target.binary_suffix


def package_dir_container(config: "BuildConfiguration", volume: Volume) -> str:
    return join_path_container(volume.work_dir_container, config.package)


def icon_container_path(volume: Volume, image) -> str:
    return join_path_container(volume.tmp_dir_container, image.id, DEFAULT_ICON_NAME)


def goflags_for(ldflags: List[str]) -> Optional[str]:
    """GOFLAGS value carrying linker flags for tool-compiled targets"""
    fields = []
    for flag in ldflags:
        fields.extend(shlex.split(flag))
    if not fields:
        return None
    return " ".join(f"-ldflags={f}" for f in fields)


def fyne_command(subcommand: str, config: "BuildConfiguration", volume: Volume, image) -> List[str]:
    """Arguments shared by ``fyne package`` and ``fyne release``"""
    binary = FYNE_BIN_HOST if image.kind == "host" else FYNE_BIN_CONTAINER
    args = [
        binary, subcommand,
        "-os", image.target.name,
        "-name", config.name,
        "-icon", icon_container_path(volume, image),
        "-appBuild", str(config.app_build),
        "-appVersion", config.app_version,
    ]
    if config.app_id:
        args.extend(["-appID", config.app_id])
    if image.state.tags:
        args.extend(["-tags", ",".join(image.state.tags)])
    for key, value in config.metadata.items():
        args.extend(["-metadata", f"{key}={value}"])
    return args


def run_tool(image, volume: Volume, config: "BuildConfiguration", work_dir: str,
             command: List[str], env: Optional[Dict[str, str]] = None):
    if config.debug:
        logger.debug(f"Packaging {image.id} in {work_dir}")
    try:
        image.run(volume, RunOptions(work_dir=work_dir, env=env or {}, debug=config.debug), command)
    except ContainerExecError as e:
        raise PackagingFailedError(f"could not package the app for {image.id}: {e.message}",
                                   {"target": image.id, "returncode": e.returncode}) from e


def newest_match(directory_host: str, pattern: str) -> str:
    """Newest entry of ``directory_host`` matching ``pattern``"""
    matches = glob.glob(os.path.join(directory_host, pattern))
    if not matches:
        raise PackagingFailedError(f"could not find any file matching {pattern!r} in {directory_host}")
    return max(matches, key=os.path.getmtime)


def _with_src(args: List[str], config: "BuildConfiguration") -> List[str]:
    if config.package not in (".", "./"):
        args.extend(["-src", config.package])
    return args


def _host_output(image, volume: Volume, work_dir: str, pattern: str, is_dir: bool) -> PackageOutput:
    host_dir = image.map_path(volume, work_dir)
    found = newest_match(host_dir, pattern)
    name = os.path.basename(found)
    return PackageOutput(name, join_path_container(work_dir, name), is_dir=is_dir)


# ============================================================================
# DESKTOP
# ============================================================================

def _package_executable(config, volume: Volume, image, suffix: str, is_dir: bool) -> PackageOutput:
    """fyne package wrapping an already compiled executable"""
    tmp_dir = join_path_container(volume.tmp_dir_container, image.id)
    exe = join_path_container(volume.bin_dir_container, image.id,
                              binary_name(config, image, volume.work_dir_host))
    args = fyne_command("package", config, volume, image)
    args.extend(["-executable", exe])
    if config.release:
        args.append("-release")

    run_tool(image, volume, config, tmp_dir, args)
    name = f"{config.name}{suffix}"
    return PackageOutput(name, join_path_container(tmp_dir, name), is_dir=is_dir)


def package_unix(config, volume: Volume, image) -> PackageOutput:
    """linux and freebsd: a tar.xz with the executable and desktop metadata"""
    return _package_executable(config, volume, image, ".tar.xz", is_dir=False)


def package_darwin(config, volume: Volume, image) -> PackageOutput:
    if not config.release:
        return _package_executable(config, volume, image, ".app", is_dir=True)

    work_dir = volume.work_dir_container
    args = fyne_command("release", config, volume, image)
    if config.category:
        args.extend(["-category", config.category])
    if config.certificate:
        args.extend(["-certificate", config.certificate])
    if config.profile:
        args.extend(["-profile", config.profile])
    run_tool(image, volume, config, work_dir, _with_src(args, config))
    return _host_output(image, volume, work_dir, "*.pkg", is_dir=False)


def package_windows(config, volume: Volume, image) -> PackageOutput:
    if config.release:
        work_dir = volume.work_dir_container
        args = fyne_command("release", config, volume, image)
        for flag, value in (("-certificate", config.certificate),
                            ("-developer", config.developer),
                            ("-password", config.password)):
            if value:
                args.extend([flag, value])
        run_tool(image, volume, config, work_dir, _with_src(args, config))
        return _host_output(image, volume, work_dir, "*.appx", is_dir=False)

    exe_name = binary_name(config, image, volume.work_dir_host)
    exe = join_path_container(volume.bin_dir_container, image.id, exe_name)
    name = f"{config.name}.zip"
    archive = join_path_container(volume.tmp_dir_container, image.id, name)

    logger.info(f"Creating {name} ...")
    if image.shares_host_fs:
        try:
            zip_file(volume.to_host_path(exe), volume.to_host_path(archive))
        except OSError as e:
            raise PackagingFailedError(f"could not create {name}: {e}", {"target": image.id}) from e
    else:
        run_tool(image, volume, config, volume.work_dir_container, ["zip", "-j", archive, exe])
    return PackageOutput(name, archive)


# ============================================================================
# MOBILE
# ============================================================================

def package_android(config, volume: Volume, image) -> PackageOutput:
    work_dir = package_dir_container(config, volume)
    subcommand = "release" if config.release else "package"
    args = fyne_command(subcommand, config, volume, image)

    if config.release:
        if not config.keystore:
            raise MissingRequirementError("a keystore is required for android release builds",
                                          {"target": image.id})
        args.extend(["-keyStore", join_path_container(volume.work_dir_container, config.keystore)])
        if config.keystore_pass:
            args.extend(["-keyStorePass", config.keystore_pass])
        if config.key_pass:
            args.extend(["-keyPass", config.key_pass])

    run_tool(image, volume, config, work_dir, args, env=_goflags_env(image))
    return collect_apk(config, volume, image, work_dir)


def collect_apk(config, volume: Volume, image, work_dir: str) -> PackageOutput:
    """
    Locates the single APK the tool wrote into the package directory.

    The tool sanitizes the file name, so the APK is matched by extension and
    renamed to ``<name>.apk`` on deposit.
    """
    name = f"{config.name}.apk"

    if image.shares_host_fs:
        pattern = os.path.join(volume.to_host_path(work_dir), "*.apk")
        apks = sorted(glob.glob(pattern))
        if not apks:
            raise PackagingFailedError(f"could not find any apk file matching {pattern}",
                                       {"target": image.id})
        if len(apks) > 1:
            raise PackagingFailedError(
                f"multiple apk files matching {pattern}: {apks}. Please remove and build again",
                {"target": image.id}
            )
        return PackageOutput(name, join_path_container(work_dir, os.path.basename(apks[0])))

    # the pod filesystem is not visible from here: match and move remotely
    dest = join_path_container(volume.tmp_dir_container, image.id, name)
    script = (
        f"cd {shlex.quote(work_dir)} && set -- *.apk && "
        f"if [ $# -ne 1 ] || [ ! -f \"$1\" ]; then echo \"expected exactly one apk, found: $*\" >&2; exit 1; fi && "
        f"mv \"$1\" {shlex.quote(dest)}"
    )
    run_tool(image, volume, config, volume.work_dir_container, ["sh", "-c", script])
    return PackageOutput(name, dest)


def package_ios(config, volume: Volume, image) -> PackageOutput:
    work_dir = package_dir_container(config, volume)
    subcommand = "release" if config.release else "package"
    args = fyne_command(subcommand, config, volume, image)
    if config.certificate:
        args.extend(["-certificate", config.certificate])
    if config.profile:
        args.extend(["-profile", config.profile])

    run_tool(image, volume, config, work_dir, args, env=_goflags_env(image))
    if config.release:
        return _host_output(image, volume, work_dir, "*.ipa", is_dir=False)
    return _host_output(image, volume, work_dir, "*.app", is_dir=True)


def _goflags_env(image) -> Dict[str, str]:
    goflags = goflags_for(image.target.ldflags)
    if not goflags:
        return {}
    existing = image.state.env.get("GOFLAGS")
    return {"GOFLAGS": f"{existing} {goflags}" if existing else goflags}


# ============================================================================
# WEB
# ============================================================================

def package_web(config, volume: Volume, image) -> PackageOutput:
    work_dir = package_dir_container(config, volume)
    subcommand = "release" if config.release else "package"
    run_tool(image, volume, config, work_dir, fyne_command(subcommand, config, volume, image),
             env=_goflags_env(image))
    return PackageOutput(config.name, join_path_container(work_dir, "web"), is_dir=True)


# ============================================================================
# REGISTRY
# ============================================================================

def package_step(image, release: bool) -> PackageStep:
    """Selects how ``image``'s target is compiled and bundled"""
    target = image.target
    packagers = {
        "linux": package_unix,
        "freebsd": package_unix,
        "darwin": package_darwin,
        "windows": package_windows,
        "android": package_android,
        "ios": package_ios,
        "web": package_web,
    }
    try:
        package = packagers[target.os]
    except KeyError:
        raise PackagingFailedError(f"no packaging step for {target.os}", {"target": image.id})

    # a host release lets the tool compile
    compiles = not target.delegates_compile and not (release and target.host_only)
    return PackageStep(compiles=compiles, package=package)

