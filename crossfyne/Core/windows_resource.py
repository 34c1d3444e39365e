#!/usr/bin/env python3
"""
crossfyne - Windows Resource Generation

Produces the ``<name>.syso`` object the Go linker picks up from the package
directory. It embeds the application icon, a side-by-side manifest and a
VERSIONINFO record derived from the app version and build number.

The resource script is rendered here and compiled by the mingw ``windres``
shipped in the Windows toolchain image.
"""

import io
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple
from xml.sax.saxutils import quoteattr

from PIL import Image, UnidentifiedImageError

from crossfyne.Core.container import RunOptions
from crossfyne.Core.volume import Volume, join_path_container
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import InvalidVersionError, PackagingFailedError

logger = get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

ICO_NAME = "icon.ico"
RC_NAME = "main.rc"
ICO_SIZES = [(16, 16), (24, 24), (32, 32), (48, 48), (64, 64), (128, 128), (256, 256)]

# arch -> (windres binary, BFD target)
WINDRES_TARGETS: Dict[str, Tuple[str, str]] = {
    "amd64": ("x86_64-w64-mingw32-windres", "pe-x86-64"),
    "386": ("x86_64-w64-mingw32-windres", "pe-i386"),
    "arm64": ("aarch64-w64-mingw32-windres", "pe-aarch64-little"),
}

_NUMERIC = re.compile(r'^\d+$')


# ============================================================================
# VERSION INFO
# ============================================================================

def parse_version(value: str) -> Tuple[int, int, int]:
    """
    Splits ``major[.minor[.patch]]`` into three integers.

    Raises:
        InvalidVersionError: more than three components, or a non-numeric one
    """
    parts = (value or "").split(".")
    if len(parts) > 3:
        raise InvalidVersionError(
            f"invalid version {value!r}: at most three components (major.minor.patch) are allowed",
            {"version": value}
        )
    for part in parts:
        if not _NUMERIC.match(part):
            raise InvalidVersionError(
                f"invalid version {value!r}: {part!r} is not a non-negative integer",
                {"version": value}
            )
    numbers = [int(p) for p in parts] + [0] * (3 - len(parts))
    return numbers[0], numbers[1], numbers[2]


@dataclass
class VersionInfo:
    """Fixed and string file info of the VERSIONINFO resource"""
    major: int
    minor: int
    patch: int
    build: int
    name: str

    @classmethod
    def build_from(cls, name: str, version: str, build: int) -> "VersionInfo":
        major, minor, patch = parse_version(version)
        if build < 0 or build > 0xFFFF:
            raise InvalidVersionError(f"build number {build} does not fit a version field",
                                      {"build": build})
        for number in (major, minor, patch):
            if number > 0xFFFF:
                raise InvalidVersionError(f"version component {number} does not fit a version field",
                                          {"version": version})
        return cls(major, minor, patch, build, name)

    @property
    def file_version(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}.{self.build}"

    @property
    def product_version(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def fixed(self) -> str:
        return f"{self.major},{self.minor},{self.patch},{self.build}"

    def string_file_info(self) -> Dict[str, str]:
        return {
            "FileDescription": self.name,
            "FileVersion": self.file_version,
            "InternalName": self.name,
            "OriginalFilename": f"{self.name}.exe",
            "ProductName": self.name,
            "ProductVersion": self.product_version,
        }


# ============================================================================
# RENDERING
# ============================================================================

def _rc_string(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def render_manifest(info: VersionInfo) -> str:
    return f"""<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<assembly xmlns="urn:schemas-microsoft-com:asm.v1" manifestVersion="1.0">
  <assemblyIdentity version="{info.file_version}" processorArchitecture="*" name={quoteattr(info.name)} type="win32"/>
  <dependency>
    <dependentAssembly>
      <assemblyIdentity type="win32" name="Microsoft.Windows.Common-Controls" version="6.0.0.0" processorArchitecture="*" publicKeyToken="6595b64144ccf1df" language="*"/>
    </dependentAssembly>
  </dependency>
  <application xmlns="urn:schemas-microsoft-com:asm.v3">
    <windowsSettings>
      <dpiAware xmlns="http://schemas.microsoft.com/SMI/2005/WindowsSettings">true</dpiAware>
    </windowsSettings>
  </application>
</assembly>
"""


def render_rc(info: VersionInfo, manifest_name: str, icon_name: str = ICO_NAME) -> str:
    strings = "\n".join(
        f"            VALUE {_rc_string(key)}, {_rc_string(value)}"
        for key, value in info.string_file_info().items()
    )
    return f"""1 ICON {_rc_string(icon_name)}
1 24 {_rc_string(manifest_name)}

1 VERSIONINFO
FILEVERSION {info.fixed}
PRODUCTVERSION {info.fixed}
FILEFLAGSMASK 0x3fL
FILEFLAGS 0x0L
FILEOS 0x40004L
FILETYPE 0x1L
FILESUBTYPE 0x0L
BEGIN
    BLOCK "StringFileInfo"
    BEGIN
        BLOCK "040904b0"
        BEGIN
{strings}
        END
    END
    BLOCK "VarFileInfo"
    BEGIN
        VALUE "Translation", 0x409, 1200
    END
END
"""


def png_to_ico(png_data: bytes) -> bytes:
    """Encodes a PNG as a multi-size ICO"""
    try:
        with Image.open(io.BytesIO(png_data)) as img:
            img = img.convert("RGBA")
            sizes = [s for s in ICO_SIZES if s[0] <= max(img.size)] or [ICO_SIZES[0]]
            out = io.BytesIO()
            img.save(out, format="ICO", sizes=sizes)
    except (UnidentifiedImageError, OSError) as e:
        raise PackagingFailedError(f"could not convert icon to ICO: {e}") from e
    return out.getvalue()


def windres_command(arch: str, rc_name: str, output: str) -> List[str]:
    try:
        binary, bfd_target = WINDRES_TARGETS[arch]
    except KeyError:
        raise PackagingFailedError(f"no resource compiler for windows/{arch}", {"arch": arch})
    return [binary, "-F", bfd_target, "-o", output, rc_name]


# ============================================================================
# PIPELINE STEP
# ============================================================================

class WindowsResource:
    """Generates and later removes ``<package>/<name>.syso`` for one image"""

    def __init__(self, name: str, version: str, build: int, package: str, debug: bool = False):
        self.name = name
        self.info = VersionInfo.build_from(name, version, build)
        self.package = package
        self.debug = debug

    def syso_path(self, volume: Volume) -> str:
        return join_path_container(volume.work_dir_container, self.package, f"{self.name}.syso")

    def generate(self, image, volume: Volume, icon_png: bytes) -> str:
        """
        Writes icon.ico, the manifest and main.rc into ``<tmp>/<id>`` and runs
        windres inside the image.

        Returns:
            The in-container path of the .syso object
        """
        tmp_dir = join_path_container(volume.tmp_dir_container, image.id)
        manifest_name = f"{self.name}.manifest"

        image.write_file(volume, join_path_container(tmp_dir, ICO_NAME), png_to_ico(icon_png))
        image.write_file(volume, join_path_container(tmp_dir, manifest_name),
                         render_manifest(self.info).encode("utf-8"))
        image.write_file(volume, join_path_container(tmp_dir, RC_NAME),
                         render_rc(self.info, manifest_name).encode("utf-8"))

        syso = self.syso_path(volume)
        logger.debug(f"Compiling Windows resources for {image.id} into {syso}")
        image.run(volume, RunOptions(work_dir=tmp_dir, debug=self.debug),
                  windres_command(image.target.arch, RC_NAME, syso))
        return syso
