#!/usr/bin/env python3
"""
crossfyne - Configuration Manager

Layered driver configuration: built-in defaults, an optional YAML file,
environment variables and finally command line values. Also reads the
``[Details]`` table of a project's FyneApp.toml for application defaults.
"""

import os
import re
import threading
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import ValidationError

DEFAULT_CONFIG_NAME = "crossfyne.yml"
APP_METADATA_FILE = "FyneApp.toml"


# ============================================================================
# ENUMS AND CONSTANTS
# ============================================================================

class ConfigScope(Enum):
    """Configuration sources, lowest priority first"""
    DEFAULT = 0
    FILE = 1
    ENVIRONMENT = 2
    RUNTIME = 3


ENV_OVERRIDES = {
    "CROSSFYNE_ENGINE": "engine",
    "CROSSFYNE_REGISTRY": "docker_registry",
    "CROSSFYNE_NAMESPACE": "namespace",
    "CROSSFYNE_S3_PATH": "s3_path",
    "CROSSFYNE_SIZE_LIMIT": "size_limit",
}


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class ConfigSchema:
    """Configuration schema definition"""
    field_name: str
    field_type: type
    default_value: Any = None
    description: str = ""
    validation_rules: List[str] = field(default_factory=list)

    def coerce(self, value: Any) -> Any:
        if value is None or isinstance(value, self.field_type):
            return value
        try:
            if self.field_type == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            if self.field_type in (int, float, str):
                return self.field_type(value)
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid type for {self.field_name}: expected {self.field_type.__name__}",
                                  {"field": self.field_name, "value": value})
        return value

    def validate_value(self, value: Any) -> Tuple[bool, List[str]]:
        errors = []
        for rule in self.validation_rules:
            if not self._apply_validation_rule(value, rule):
                errors.append(f"Validation rule failed for {self.field_name}: {rule}")
        return len(errors) == 0, errors

    @staticmethod
    def _apply_validation_rule(value: Any, rule: str) -> bool:
        try:
            if rule.startswith("min:"):
                return value >= float(rule.split(":", 1)[1])
            elif rule.startswith("max:"):
                return value <= float(rule.split(":", 1)[1])
            elif rule.startswith("regex:"):
                return bool(re.match(rule.split(":", 1)[1], str(value)))
            elif rule == "non_empty":
                return bool(value and str(value).strip())
        except TypeError:
            return False
        return True


@dataclass
class ConfigValue:
    key: str
    value: Any
    scope: ConfigScope
    source_path: Optional[str] = None


@dataclass
class AppMetadata:
    """Defaults read from FyneApp.toml [Details]"""
    icon: Optional[str] = None
    name: Optional[str] = None
    app_id: Optional[str] = None
    version: Optional[str] = None
    build: Optional[int] = None


# ============================================================================
# CONFIGURATION MANAGER CLASS
# ============================================================================

class ConfigManager:
    def __init__(self):
        self.logger = get_logger(__name__)
        self._lock = threading.RLock()
        self.config_values: Dict[str, ConfigValue] = {}
        self.config_schemas: Dict[str, ConfigSchema] = {}
        self.images: Dict[str, str] = {}

        self._initialize_core_schemas()
        self._load_default_configuration()

    def _initialize_core_schemas(self):
        core_schemas = [
            ConfigSchema("engine", str, "", "Container engine (docker, podman, kubernetes)",
                         ["regex:^(|docker|podman|kubernetes)$"]),
            ConfigSchema("docker_registry", str, "docker.io", "Registry prefixed to toolchain images"),
            ConfigSchema("pull", bool, False, "Pull images before building"),
            ConfigSchema("cache_enabled", bool, True, "Mount the toolchain cache"),
            ConfigSchema("namespace", str, "default", "Kubernetes namespace",
                         ["regex:^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"]),
            ConfigSchema("s3_path", str, "/", "Object store prefix for remote builds"),
            ConfigSchema("size_limit", str, "2Gi", "Size of each pod scratch volume",
                         ["regex:^[0-9]+(\\.[0-9]+)?([EPTGMK]i?|[mk])?$"]),
            ConfigSchema("pod_ready_timeout", int, 600, "Seconds to wait for a pod", ["min:1"]),
            ConfigSchema("strict_cache", bool, False, "Fail when the remote cache cannot be saved"),
            ConfigSchema("log_level", str, "info", "Verbosity", ["regex:^(silent|info|debug)$"]),
        ]
        for schema in core_schemas:
            self.config_schemas[schema.field_name] = schema

    def _load_default_configuration(self):
        for name, schema in self.config_schemas.items():
            self.config_values[name] = ConfigValue(name, schema.default_value, ConfigScope.DEFAULT)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_configuration(self, config_file: Optional[Path] = None,
                           project_root: Optional[Path] = None,
                           environ: Optional[Mapping[str, str]] = None):
        """
        Loads the YAML file and environment overrides.

        ``config_file`` wins over ``<project_root>/crossfyne.yml``.
        """
        path = Path(config_file) if config_file else None
        if path is None and project_root is not None:
            candidate = Path(project_root) / DEFAULT_CONFIG_NAME
            if candidate.is_file():
                path = candidate

        if path is not None:
            self._load_file(path)
        self._load_environment(os.environ if environ is None else environ)

    def _load_file(self, path: Path):
        if not path.is_file():
            raise ValidationError(f"configuration file not found: {path}", {"path": str(path)})
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid configuration file {path}: {e}", {"path": str(path)}) from e

        if not isinstance(data, dict):
            raise ValidationError(f"configuration file {path} must contain a mapping", {"path": str(path)})

        self.images.update({str(k): str(v) for k, v in (data.pop("images", None) or {}).items()})
        # read by the logging manager
        data.pop("logging", None)

        for key, value in data.items():
            if key not in self.config_schemas:
                self.logger.warning(f"Unknown configuration key '{key}' in {path}")
                continue
            self.set(key, value, ConfigScope.FILE, str(path))
        self.logger.debug(f"Loaded configuration from {path}")

    def _load_environment(self, environ: Mapping[str, str]):
        for env_key, key in ENV_OVERRIDES.items():
            if environ.get(env_key):
                self.set(key, environ[env_key], ConfigScope.ENVIRONMENT, env_key)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, scope: ConfigScope = ConfigScope.RUNTIME,
            source_path: Optional[str] = None):
        """Sets ``key`` unless a higher priority source already set it"""
        with self._lock:
            schema = self.config_schemas.get(key)
            if schema is not None:
                value = schema.coerce(value)
                valid, errors = schema.validate_value(value)
                if not valid:
                    raise ValidationError("; ".join(errors), {"field": key, "value": value})

            current = self.config_values.get(key)
            if current is not None and current.scope.value > scope.value:
                return
            self.config_values[key] = ConfigValue(key, value, scope, source_path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self.config_values.get(key)
            return value.value if value is not None else default

    def source_of(self, key: str) -> Optional[ConfigScope]:
        value = self.config_values.get(key)
        return value.scope if value else None


def load_app_metadata(project_root: Path) -> AppMetadata:
    """Reads FyneApp.toml; a missing file yields empty metadata"""
    path = Path(project_root) / APP_METADATA_FILE
    if not path.is_file():
        return AppMetadata()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValidationError(f"invalid {APP_METADATA_FILE}: {e}", {"path": str(path)}) from e

    details = data.get("Details", {}) or {}
    build = details.get("Build")
    return AppMetadata(
        icon=details.get("Icon") or None,
        name=details.get("Name") or None,
        app_id=details.get("ID") or None,
        version=details.get("Version") or None,
        build=int(build) if build else None,
    )
