#!/usr/bin/env python3
"""
crossfyne - Container Image

The interface shared by the local and the Kubernetes image backends, plus the
state both carry (target, image reference, environment, tags, mounts).

Backends hold an ``ImageState`` and expose it as ``state``; the
``ContainerImage`` protocol is what the pipeline programs against.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, runtime_checkable

from crossfyne.Core.target_manager import Target
from crossfyne.Core.volume import Volume


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass(frozen=True)
class MountPoint:
    """A logical name bound to a host path and an in-container path"""
    name: str
    local_host: str
    in_container: str


@dataclass
class RunOptions:
    """Per-invocation options for ContainerImage.run"""
    work_dir: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    debug: bool = False


@dataclass(frozen=True)
class PackageOutput:
    """A packaged bundle as seen from inside the container"""
    name: str
    container_path: str
    is_dir: bool = False


@dataclass
class ImageState:
    """Mutable image state shared by every backend"""
    target: Target
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    mounts: List[MountPoint] = field(default_factory=list)

    @classmethod
    def for_target(cls, target: Target) -> "ImageState":
        return cls(target=target, image=target.image, env=dict(target.env), tags=list(target.tags))

    def set_env(self, key: str, value: str):
        self.env[key] = value

    def unset_env(self, key: str):
        self.env.pop(key, None)

    def append_tag(self, tag: str):
        if tag not in self.tags:
            self.tags.append(tag)

    def set_mount(self, name: str, local_host: str, in_container: str):
        """Adds a mount; a mount with the same name is replaced"""
        self.mounts = [m for m in self.mounts if m.name != name]
        self.mounts.append(MountPoint(name, local_host, in_container))

    def get_mount(self, name: str) -> Optional[MountPoint]:
        for m in self.mounts:
            if m.name == name:
                return m
        return None


# ============================================================================
# INTERFACE
# ============================================================================

@runtime_checkable
class ContainerImage(Protocol):
    """A prepared execution environment for one target"""

    kind: str
    state: ImageState

    @property
    def id(self) -> str: ...

    @property
    def target(self) -> Target: ...

    @property
    def shares_host_fs(self) -> bool:
        """True when the container sees the project through host bind mounts"""
        ...

    def prepare(self): ...

    def run(self, volume: Volume, options: RunOptions, command: List[str]): ...

    def write_file(self, volume: Volume, container_path: str, data: bytes): ...

    def finalize(self, volume: Volume, output: PackageOutput) -> Optional[str]:
        """Collects the bundle; returns its host path when the backend deposited it"""
        ...

    def close(self): ...
