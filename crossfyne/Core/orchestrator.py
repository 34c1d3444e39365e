#!/usr/bin/env python3
"""
crossfyne - Core Orchestrator

Turns a build request into targets and images, then runs them through the
build engine one target at a time. Owns request validation, engine
selection and the SIGINT/SIGTERM teardown.
"""

import os
import signal
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from crossfyne.Core.builder import BuildConfiguration, BuildEngine
from crossfyne.Core.container import ContainerImage
from crossfyne.Core.distribution import BuildArtifact
from crossfyne.Core.docker_manager import LocalContainerImage
from crossfyne.Core.engine import Engine, EngineKind, make_engine
from crossfyne.Core.host_runner import HostImage
from crossfyne.Core.kubernetes_manager import (
    DEFAULT_NAMESPACE, KubernetesContainerImage, get_kubernetes_client, validate_size_limit
)
from crossfyne.Core.object_store import ObjectStoreConfig, ObjectStoreSession
from crossfyne.Core.target_manager import PlanOptions, Target, TargetManager
from crossfyne.Core.volume import Volume, mount
from crossfyne.Core.windows_resource import VersionInfo
from crossfyne.utils.helpers import host_os
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import (
    BuildInterruptedError, CrossBuildError, validate_app_build, validate_app_id,
    validate_keystore, validate_name, resolve_package_path
)

# ============================================================================
# ENUMS AND CONSTANTS
# ============================================================================

class OrchestrationStatus(Enum):
    QUEUED = "queued"
    PREPARING = "preparing"
    BUILDING = "building"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


# tools a host-only build needs on PATH
HOST_TOOLS = {
    "ios": ["fyne", "go", "xcrun"],
    "darwin": ["fyne", "go"],
    "windows": ["fyne", "go"],
}

INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class RunReport:
    """Outcome of one driver invocation"""
    run_id: str
    status: OrchestrationStatus
    targets: List[str] = field(default_factory=list)
    artifacts: List[BuildArtifact] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class CrossOrchestrator:
    def __init__(self, target_manager: Optional[TargetManager] = None,
                 engine_factory: Callable[[str], Engine] = make_engine,
                 image_overrides: Optional[dict] = None):
        self.logger = get_logger(__name__)
        self.target_manager = target_manager or TargetManager()
        self.engine_factory = engine_factory
        self.image_overrides = dict(image_overrides or {})
        self._lock = threading.Lock()
        self._current_image = None

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def validate(self, config: BuildConfiguration, default_os: Optional[str] = None) -> List[Target]:
        """
        Validates the request and resolves its targets.

        Runs before any container or pod exists. Normalises ``config.package``
        and ``config.keystore`` in place.

        Raises:
            ValidationError: any invalid or missing input
        """
        self.target_manager.initialize()

        validate_name(config.name)
        config.app_build = validate_app_build(config.app_build)
        config.package = resolve_package_path(config.work_dir, config.package)

        pairs = self.target_manager.parse_targets(config.targets, default_os=default_os)
        needs_id = self.target_manager.requires_app_id(pairs)
        for os_name in needs_id:
            validate_app_id(config.app_id, required=True, target=os_name)
        if not needs_id:
            validate_app_id(config.app_id, required=False)

        oses = {os_name for os_name, _ in pairs}
        if "windows" in oses:
            VersionInfo.build_from(config.name, config.app_version, config.app_build)
        if "android" in oses and (config.release or config.keystore):
            config.keystore = validate_keystore(config.work_dir, config.keystore).as_posix()

        options = PlanOptions(
            registry=config.docker_registry,
            image=config.image,
            image_overrides=self.image_overrides,
            env=config.env,
            ldflags=config.ldflags,
            tags=config.tags,
            console=config.console,
            release=config.release,
            host=host_os(),
        )
        targets = self.target_manager.resolve(pairs, options)
        self.logger.debug(f"Targets: {self.target_manager.format_targets(pairs)}")
        return targets

    def select_engine(self, config: BuildConfiguration, targets: List[Target]) -> Optional[Engine]:
        """None when every target runs on the host"""
        if all(t.host_only for t in targets):
            return None

        selector = config.engine
        if not selector and config.namespace and config.namespace != DEFAULT_NAMESPACE:
            selector = EngineKind.KUBERNETES.value
        engine = self.engine_factory(selector)
        self.logger.info(f"Container engine: {engine.name}")
        return engine

    def make_images(self, config: BuildConfiguration, engine: Optional[Engine],
                    targets: List[Target], volume: Volume) -> List[ContainerImage]:
        images = []
        api = store = None
        if engine is not None and engine.is_kubernetes:
            validate_size_limit(config.size_limit)
            api = get_kubernetes_client(engine)
            store = ObjectStoreSession(ObjectStoreConfig.from_env(os.environ))

        upload_project = config.upload_project
        for target in targets:
            if target.host_only:
                images.append(HostImage(target, volume, HOST_TOOLS.get(target.os, ["fyne"])))
            elif engine.is_kubernetes:
                images.append(KubernetesContainerImage(
                    engine, target, volume, api, store,
                    namespace=config.namespace,
                    s3_path=config.s3_path,
                    size_limit=config.size_limit,
                    upload_project=upload_project,
                    download_result=config.download_result,
                    cache_enabled=config.cache_enabled,
                    strict_cache=config.strict_cache,
                    ready_timeout=config.pod_ready_timeout,
                    debug=config.debug,
                ))
                # the project tree is shipped once per run
                upload_project = False
            else:
                images.append(LocalContainerImage(engine, target, volume,
                                                  cache_enabled=config.cache_enabled,
                                                  pull=config.pull))
        return images

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, config: BuildConfiguration, default_os: Optional[str] = None) -> RunReport:
        """
        Builds every requested target in order.

        The first failing target stops the run; artifacts of targets built
        before it stay in place.

        Raises:
            CrossBuildError: validation, backend or pipeline failure
        """
        report = RunReport(run_id=f"run_{uuid.uuid4().hex[:8]}", status=OrchestrationStatus.QUEUED,
                           start_time=datetime.now())

        targets = self.validate(config, default_os)
        report.targets = [t.id for t in targets]

        report.status = OrchestrationStatus.PREPARING
        volume = mount(config.work_dir, config.cache_dir)
        engine = self.select_engine(config, targets)
        images = self.make_images(config, engine, targets, volume)
        builder = BuildEngine(config, volume)

        report.status = OrchestrationStatus.BUILDING
        previous = self._install_signal_handlers()
        try:
            for image in images:
                with self._lock:
                    self._current_image = image
                report.artifacts.append(builder.build(image))
            report.status = OrchestrationStatus.COMPLETED
        except BuildInterruptedError as e:
            report.status = OrchestrationStatus.CANCELLED
            report.error = e.message
            if self._current_image is not None:
                builder.cancel_build(self._current_image.id)
            raise
        except CrossBuildError as e:
            report.status = OrchestrationStatus.ERROR
            report.error = e.message
            raise
        finally:
            with self._lock:
                self._current_image = None
            self._restore_signal_handlers(previous)
            report.end_time = datetime.now()
        return report

    def _install_signal_handlers(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for sig in INTERRUPT_SIGNALS:
            previous[sig] = signal.signal(sig, self._on_signal)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict):
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    def _on_signal(self, signum, _frame):
        name = signal.Signals(signum).name
        # the image is closed by the pipeline while the exception unwinds
        self.logger.warning(f"Received {name}, tearing down...")
        raise BuildInterruptedError(f"interrupted by {name}", {"signal": name})
