#!/usr/bin/env python3
"""
crossfyne - Target Manager

Loads the per-OS build plans (target_plans.yml) and turns a user target list
such as ``linux/*,windows/amd64,android`` into resolved targets carrying the
image, environment, linker flags, build tags and packaging format.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml

from crossfyne.utils.helpers import host_os
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import UnsupportedTargetError, split_list

PLANS_FILE = Path(__file__).with_name("target_plans.yml")

WILDCARD = "*"
ARCH_MULTIPLE = "multiple"
DEFAULT_REGISTRY = "docker.io"


class PlatformKind(Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    WEB = "web"


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class ArchPlan:
    arch: str
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    ldflags: List[str] = field(default_factory=list)


@dataclass
class PlatformPlan:
    """Build plan of one OS as declared in target_plans.yml"""
    os: str
    description: str
    kind: PlatformKind
    packaging: str
    architectures: Dict[str, ArchPlan]
    default_arch: str = ""
    release_packaging: Optional[str] = None
    app_id_required: bool = False
    single_id: bool = False
    host: Optional[str] = None
    release_host: Optional[str] = None
    binary_suffix: str = ""

    @property
    def arch_names(self) -> List[str]:
        return list(self.architectures.keys())

    @property
    def delegates_compile(self) -> bool:
        """Mobile and web binaries are compiled by the packaging tool"""
        return self.kind is not PlatformKind.DESKTOP

    def expand(self, arch: str) -> List[str]:
        if arch == WILDCARD:
            if self.single_id:
                return [self.default_arch]
            return self.arch_names
        return [arch]


@dataclass
class PlanOptions:
    """Request-level inputs that shape the resolved targets"""
    registry: str = DEFAULT_REGISTRY
    image: Optional[str] = None
    image_overrides: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    ldflags: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    console: bool = False
    release: bool = False
    host: str = field(default_factory=host_os)


@dataclass
class Target:
    """A resolved OS/arch pair ready to be turned into a container image"""
    os: str
    arch: str
    id: str
    image: str
    env: Dict[str, str]
    ldflags: List[str]
    tags: List[str]
    packaging: str
    kind: PlatformKind
    binary_suffix: str = ""
    delegates_compile: bool = False
    host_only: bool = False

    @property
    def name(self) -> str:
        """Value handed to the packaging tool's -os option"""
        if self.os == "android" and self.arch and self.arch != ARCH_MULTIPLE:
            return f"android/{self.arch}"
        return self.os


def make_target_id(os_name: str, arch: str, single_id: bool = False) -> str:
    """``os`` for single-id platforms and multi-arch builds, ``os-arch`` otherwise"""
    if single_id or not arch or arch == ARCH_MULTIPLE:
        return os_name
    return f"{os_name}-{arch}"


def image_reference(image: str, registry: Optional[str]) -> str:
    if not registry:
        return image
    first = image.split("/", 1)[0]
    if "/" in image and ("." in first or ":" in first or first == "localhost"):
        # already carries a registry host
        return image
    return f"{registry.rstrip('/')}/{image}"


# ============================================================================
# TARGET MANAGER
# ============================================================================

class TargetManager:
    def __init__(self, plans_file: Optional[Path] = None):
        self.logger = get_logger(__name__)
        self.plans_file = Path(plans_file) if plans_file else PLANS_FILE
        self._plans: Dict[str, PlatformPlan] = {}
        self._initialized = False

    def initialize(self):
        """Loads every platform plan from the YAML registry"""
        with open(self.plans_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        self._plans = {}
        for os_name, raw in data.items():
            self._plans[os_name] = self._parse_plan(os_name, raw)
            self.logger.debug(f"Loaded plan: {os_name} ({', '.join(a or '-' for a in self._plans[os_name].arch_names)})")

        self._initialized = True

    @staticmethod
    def _parse_plan(os_name: str, raw: dict) -> PlatformPlan:
        architectures = {}
        for arch, arch_raw in (raw.get("architectures") or {}).items():
            arch = str(arch)
            arch_raw = arch_raw or {}
            architectures[arch] = ArchPlan(
                arch=arch,
                image=arch_raw["image"],
                env={k: str(v) for k, v in (arch_raw.get("env") or {}).items()},
                tags=list(arch_raw.get("tags") or []),
                ldflags=list(arch_raw.get("ldflags") or []),
            )

        return PlatformPlan(
            os=os_name,
            description=raw.get("description", ""),
            kind=PlatformKind(raw.get("kind", "desktop")),
            packaging=raw["packaging"],
            architectures=architectures,
            default_arch=str(raw.get("default_arch", "")),
            release_packaging=raw.get("release_packaging"),
            app_id_required=bool(raw.get("app_id_required", False)),
            single_id=bool(raw.get("single_id", False)),
            host=raw.get("host"),
            release_host=raw.get("release_host"),
            binary_suffix=raw.get("binary_suffix", ""),
        )

    def get_plan(self, os_name: str) -> PlatformPlan:
        if not self._initialized:
            self.initialize()
        plan = self._plans.get(os_name)
        if plan is None:
            raise UnsupportedTargetError(
                f"unsupported target operating system: {os_name}. Supported: {', '.join(self._plans)}",
                {"os": os_name}
            )
        return plan

    def list_plans(self) -> List[PlatformPlan]:
        if not self._initialized:
            self.initialize()
        return list(self._plans.values())

    # ------------------------------------------------------------------
    # Target list parsing
    # ------------------------------------------------------------------

    def parse_targets(self, value: Union[str, List[str]],
                      default_os: Optional[str] = None) -> List[Tuple[str, str]]:
        """
        Parse a target list into (os, arch) pairs.

        Entries are ``os``, ``os/arch`` or ``os/*``. A bare architecture is
        accepted when ``default_os`` is given, as the per-OS commands do.
        Duplicates are dropped; declared order is kept.

        Raises:
            UnsupportedTargetError: unknown OS or architecture
        """
        pairs: List[Tuple[str, str]] = []
        for entry in split_list(value):
            if "/" in entry:
                os_name, arch = entry.split("/", 1)
            elif default_os:
                os_name, arch = default_os, entry
            else:
                os_name, arch = entry, None

            plan = self.get_plan(os_name)
            if arch is None:
                arch = plan.default_arch

            for expanded in plan.expand(arch):
                if expanded not in plan.architectures:
                    raise UnsupportedTargetError(
                        f"arch '{expanded}' is not supported for {os_name}. "
                        f"Supported: {', '.join(a for a in plan.arch_names if a) or 'none'}",
                        {"os": os_name, "arch": expanded}
                    )
                if (os_name, expanded) not in pairs:
                    pairs.append((os_name, expanded))
        return pairs

    @staticmethod
    def format_targets(pairs: List[Tuple[str, str]]) -> str:
        return ",".join(f"{os_name}/{arch}" if arch else os_name for os_name, arch in pairs)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, pairs: List[Tuple[str, str]], options: PlanOptions) -> List[Target]:
        """Resolves parsed pairs into targets with their effective settings"""
        targets = []
        for os_name, arch in pairs:
            plan = self.get_plan(os_name)
            arch_plan = plan.architectures[arch]
            self._check_host(plan, options)

            target_id = make_target_id(os_name, arch, plan.single_id)
            image = options.image or options.image_overrides.get(target_id) \
                or image_reference(arch_plan.image, options.registry)

            env = dict(arch_plan.env)
            env.update(options.env)

            ldflags = list(arch_plan.ldflags)
            if os_name == "windows" and not options.console:
                ldflags.append("-H=windowsgui")
            ldflags.extend(options.ldflags)

            tags = list(arch_plan.tags)
            tags.extend(t for t in options.tags if t not in tags)

            packaging = plan.release_packaging if options.release and plan.release_packaging \
                else plan.packaging
            host_only = plan.host is not None or \
                (options.release and plan.release_host is not None)

            targets.append(Target(
                os=os_name,
                arch=arch,
                id=target_id,
                image=image,
                env=env,
                ldflags=ldflags,
                tags=tags,
                packaging=packaging,
                kind=plan.kind,
                binary_suffix=plan.binary_suffix,
                delegates_compile=plan.delegates_compile,
                host_only=host_only,
            ))
            self.logger.debug(f"Planned {target_id}: image={image} tags={tags} ldflags={ldflags}")
        return targets

    @staticmethod
    def _check_host(plan: PlatformPlan, options: PlanOptions):
        required = plan.host or (plan.release_host if options.release else None)
        if required and options.host != required:
            mode = "release builds" if plan.host is None else "builds"
            raise UnsupportedTargetError(
                f"{plan.os} {mode} are supported only on {required} hosts",
                {"os": plan.os, "host": options.host}
            )

    def requires_app_id(self, pairs: List[Tuple[str, str]]) -> List[str]:
        """OS names in ``pairs`` that need an application identity"""
        names = []
        for os_name, _ in pairs:
            if self.get_plan(os_name).app_id_required and os_name not in names:
                names.append(os_name)
        return names
