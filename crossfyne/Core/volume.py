#!/usr/bin/env python3
"""
crossfyne - Volume Layout

Host <-> container path mapping for a project.

The container side is fixed: the project is always mounted at /app and the
toolchain cache at /go. Host paths are derived from the project root and the
user cache directory.
"""

import os
import posixpath
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from crossfyne.utils.helpers import ensure_directory
from crossfyne.utils.validation import IOFailureError


# ============================================================================
# CONSTANTS
# ============================================================================

PRODUCT_PREFIX = "crossfyne"

BIN_RELATIVE_PATH = f"{PRODUCT_PREFIX}/bin"
DIST_RELATIVE_PATH = f"{PRODUCT_PREFIX}/dist"
TMP_RELATIVE_PATH = f"{PRODUCT_PREFIX}/tmp"

WORK_DIR_CONTAINER = "/app"
BIN_DIR_CONTAINER = "/app/" + BIN_RELATIVE_PATH
DIST_DIR_CONTAINER = "/app/" + DIST_RELATIVE_PATH
TMP_DIR_CONTAINER = "/app/" + TMP_RELATIVE_PATH
CACHE_DIR_CONTAINER = "/go"
GO_CACHE_DIR_CONTAINER = "/go/go-build"

DEFAULT_ICON_NAME = "Icon.png"


# ============================================================================
# PATH HELPERS
# ============================================================================

def join_path_container(*parts: str) -> str:
    """Joins and cleans a path using '/' regardless of the host OS"""
    return posixpath.normpath(posixpath.join(*[str(p) for p in parts]))


def join_path_host(*parts: Union[str, Path]) -> str:
    """Joins and cleans a path using the host separator"""
    return os.path.normpath(os.path.join(*[str(p) for p in parts]))


def default_cache_dir_host() -> str:
    """Default toolchain cache directory below the user cache dir"""
    if os.name == "nt":
        base = os.environ.get("LOCALAPPDATA")
    elif sys.platform == "darwin":
        home = os.path.expanduser("~")
        base = os.path.join(home, "Library", "Caches") if home != "~" else None
    else:
        base = os.environ.get("XDG_CACHE_HOME")
        if not base:
            home = os.path.expanduser("~")
            base = os.path.join(home, ".cache") if home != "~" else None

    if not base:
        raise IOFailureError("cannot get the path for the user cache directory")
    return join_path_host(base, PRODUCT_PREFIX)


def default_work_dir_host() -> str:
    try:
        return os.getcwd()
    except OSError as e:
        raise IOFailureError(f"cannot get the path for current directory: {e}") from e


# ============================================================================
# VOLUME
# ============================================================================

@dataclass(frozen=True)
class Volume:
    """Host side of the project layout; the container side is constant"""
    work_dir_host: str
    cache_dir_host: str

    # -- host paths --------------------------------------------------------

    @property
    def bin_dir_host(self) -> str:
        return join_path_host(self.work_dir_host, BIN_RELATIVE_PATH)

    @property
    def dist_dir_host(self) -> str:
        return join_path_host(self.work_dir_host, DIST_RELATIVE_PATH)

    @property
    def tmp_dir_host(self) -> str:
        return join_path_host(self.work_dir_host, TMP_RELATIVE_PATH)

    # -- container paths ---------------------------------------------------

    @property
    def work_dir_container(self) -> str:
        return WORK_DIR_CONTAINER

    @property
    def bin_dir_container(self) -> str:
        return BIN_DIR_CONTAINER

    @property
    def dist_dir_container(self) -> str:
        return DIST_DIR_CONTAINER

    @property
    def tmp_dir_container(self) -> str:
        return TMP_DIR_CONTAINER

    @property
    def cache_dir_container(self) -> str:
        return CACHE_DIR_CONTAINER

    @property
    def go_cache_dir_container(self) -> str:
        return GO_CACHE_DIR_CONTAINER

    def create_host_dirs(self):
        """Creates the bin, cache, dist and tmp directories on the host"""
        for path in (self.bin_dir_host, self.cache_dir_host, self.dist_dir_host, self.tmp_dir_host):
            ensure_directory(path, mode=0o755)

    def to_host_path(self, container_path: str) -> Optional[str]:
        """Maps a path below /app or /go back to the host, None otherwise"""
        container_path = posixpath.normpath(container_path)
        for root, host in ((WORK_DIR_CONTAINER, self.work_dir_host),
                           (CACHE_DIR_CONTAINER, self.cache_dir_host)):
            if container_path == root:
                return host
            if container_path.startswith(root + "/"):
                relative = container_path[len(root) + 1:]
                return join_path_host(host, *relative.split("/"))
        return None


def mount(work_dir_host: Optional[str] = None, cache_dir_host: Optional[str] = None) -> Volume:
    """
    Mounts the project layout and creates the host directories.

    Args:
        work_dir_host: Project root; defaults to the current directory
        cache_dir_host: Toolchain cache; defaults to <user cache>/crossfyne

    Returns:
        Volume: The mounted layout
    """
    work_dir_host = work_dir_host or default_work_dir_host()
    cache_dir_host = cache_dir_host or default_cache_dir_host()

    volume = Volume(
        work_dir_host=os.path.abspath(work_dir_host),
        cache_dir_host=os.path.abspath(cache_dir_host),
    )
    volume.create_host_dirs()
    return volume
