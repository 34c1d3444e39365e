#!/usr/bin/env python3
"""
crossfyne - Helper Utilities

Small filesystem and process helpers shared by the engine backends and the
packaging steps.
"""

import os
import shutil
import hashlib
import platform
import zipfile
from pathlib import Path
from typing import Optional, Tuple, Union

from crossfyne.utils.validation import IOFailureError


def ensure_directory(path: Union[str, Path], mode: int = 0o755) -> Path:
    """Creates directory if not exists."""
    p = Path(path)
    try:
        if not p.exists():
            p.mkdir(parents=True, exist_ok=True)
            p.chmod(mode)
    except OSError as e:
        raise IOFailureError(f"could not create directory {p}: {e}", {"path": str(p)}) from e
    return p


def remove_path(path: Union[str, Path]):
    """Removes a file or a directory tree; missing paths are ignored."""
    p = Path(path)
    try:
        if p.is_dir() and not p.is_symlink():
            shutil.rmtree(p)
        elif p.exists() or p.is_symlink():
            p.unlink()
    except OSError as e:
        raise IOFailureError(f"could not remove {p}: {e}", {"path": str(p)}) from e


def check_command_exists(cmd: str) -> bool:
    """Checks if a binary is in PATH."""
    return shutil.which(cmd) is not None


def host_os() -> str:
    """Host OS in toolchain naming (linux, darwin, windows, freebsd)."""
    return platform.system().lower()


def zip_file(source: Union[str, Path], archive: Union[str, Path]) -> Path:
    """Creates a deflate zip archive holding the single file ``source``."""
    source, archive = Path(source), Path(archive)
    try:
        ensure_directory(archive.parent)
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.write(source, arcname=source.name)
    except OSError as e:
        raise IOFailureError(f"could not create zip archive {archive}: {e}",
                             {"source": str(source), "archive": str(archive)}) from e
    return archive


def calculate_file_checksum(path: Path, algorithm="sha256") -> str:
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def current_user_ids() -> Tuple[Optional[int], Optional[int]]:
    """Real uid/gid of the driver process; (None, None) on Windows."""
    if os.name == "nt":
        return None, None
    return os.getuid(), os.getgid()
