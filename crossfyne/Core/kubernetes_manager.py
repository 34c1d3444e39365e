#!/usr/bin/env python3
"""
crossfyne - Kubernetes Container Backend

Builds a target inside a short-lived pod. The project tree travels through S3:
it is uploaded from the host on Prepare, pulled into the pod's scratch volumes
by the images' ``fyne-cross-s3`` helper, and the packaged bundle comes back
the same way on Finalize.

Pod lifecycle:
1. create (keep-alive command, emptyDir per mount, hostname anti-affinity)
2. wait until Running (polling once per second)
3. check for the S3 helper, download mounts, restore the per-target cache
4. exec build commands
5. upload artifact and cache, delete the pod (foreground propagation)
"""

import os
import secrets
import shlex
import sys
import tempfile
import threading
import time
from typing import Dict, List, Optional

from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream
from kubernetes.utils import parse_quantity

from crossfyne.Core.container import ImageState, PackageOutput, RunOptions
from crossfyne.Core.engine import Engine
from crossfyne.Core.object_store import ObjectStoreSession, join_key
from crossfyne.Core.target_manager import Target
from crossfyne.Core.volume import Volume, join_path_container, join_path_host
from crossfyne.utils.helpers import ensure_directory, remove_path
from crossfyne.utils.logging import get_logger
from crossfyne.utils.validation import (
    BackendUnavailableError, ContainerExecError, ObjectStoreError, RemotePodFailedError,
    ValidationError
)


# ============================================================================
# CONSTANTS
# ============================================================================

POD_LABEL = {"app": "crossfyne"}
CONTAINER_NAME = "crossfyne"
KEEP_ALIVE_COMMAND = ["/bin/bash", "-c", "trap : TERM INT; sleep 1800 & wait"]
S3_HELPER = "fyne-cross-s3"
S3_HELPER_SECRET_FLAGS = ("--aws-AKID", "--aws-secret")

DEFAULT_NAMESPACE = "default"
DEFAULT_SIZE_LIMIT = "2Gi"
POD_READY_TIMEOUT = 600
POD_POLL_INTERVAL = 1.0

PROJECT_MOUNT = "project"
CACHE_MOUNT = "cache"

DIRECTORY_ARCHIVE_EXT = ".tar.xz"
MOUNT_ARCHIVE_EXT = ".tar.zstd"


def get_kubernetes_client(engine: Engine) -> k8s.CoreV1Api:
    """Loads the kube config (or in-cluster credentials) selected by the engine"""
    try:
        if engine.kube_config:
            k8s_config.load_kube_config(config_file=engine.kube_config)
        else:
            k8s_config.load_incluster_config()
    except (ConfigException, OSError) as e:
        raise BackendUnavailableError(f"could not load kubernetes configuration: {e}",
                                      {"kube_config": engine.kube_config}) from e
    return k8s.CoreV1Api()


def validate_size_limit(size_limit: str) -> str:
    try:
        parse_quantity(size_limit)
    except ValueError as e:
        raise ValidationError(f"invalid size limit {size_limit!r}: {e}",
                              {"size_limit": size_limit}) from e
    return size_limit


def shell_command(work_dir: str, command: List[str]) -> List[str]:
    """Wraps ``command`` so it runs from ``work_dir``; arguments are quoted"""
    quoted = " ".join(shlex.quote(arg) for arg in command)
    return ["sh", "-c", f"cd {shlex.quote(work_dir)} && {quoted}"]


def redact_command(command: List[str]) -> List[str]:
    """Masks the credential values passed to the S3 helper"""
    shown = list(command)
    for i, arg in enumerate(shown[:-1]):
        if arg in S3_HELPER_SECRET_FLAGS:
            shown[i + 1] = "***"
    return shown


# ============================================================================
# POD
# ============================================================================

class Pod:
    """A keep-alive pod that build commands are executed in"""

    def __init__(self, api: k8s.CoreV1Api, namespace: str, name: str):
        self.logger = get_logger(__name__)
        self.api = api
        self.namespace = namespace
        self.name = name

    @staticmethod
    def make_name(target_id: str) -> str:
        return f"crossfyne-{target_id}-{secrets.token_hex(6)}"

    @staticmethod
    def build_manifest(name: str, image: str, mounts, env: Dict[str, str],
                       size_limit: str, work_dir: str) -> k8s.V1Pod:
        volumes = []
        volume_mounts = []
        for m in mounts:
            volumes.append(k8s.V1Volume(
                name=m.name,
                empty_dir=k8s.V1EmptyDirVolumeSource(size_limit=size_limit),
            ))
            volume_mounts.append(k8s.V1VolumeMount(name=m.name, mount_path=m.in_container))

        affinity = k8s.V1Affinity(pod_anti_affinity=k8s.V1PodAntiAffinity(
            preferred_during_scheduling_ignored_during_execution=[
                k8s.V1WeightedPodAffinityTerm(
                    weight=100,
                    pod_affinity_term=k8s.V1PodAffinityTerm(
                        label_selector=k8s.V1LabelSelector(match_labels=dict(POD_LABEL)),
                        topology_key="kubernetes.io/hostname",
                    ),
                )
            ]
        ))

        container = k8s.V1Container(
            name=CONTAINER_NAME,
            image=image,
            image_pull_policy="Always",
            command=list(KEEP_ALIVE_COMMAND),
            working_dir=work_dir,
            env=[k8s.V1EnvVar(name=k, value=v) for k, v in env.items()],
            volume_mounts=volume_mounts,
        )

        return k8s.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=k8s.V1ObjectMeta(name=name, labels=dict(POD_LABEL)),
            spec=k8s.V1PodSpec(
                containers=[container],
                volumes=volumes,
                restart_policy="Never",
                affinity=affinity,
            ),
        )

    def create(self, manifest: k8s.V1Pod):
        try:
            self.api.create_namespaced_pod(namespace=self.namespace, body=manifest)
        except ApiException as e:
            raise RemotePodFailedError(f"could not create pod {self.name}: {e.reason}",
                                       {"pod": self.name, "status": e.status}) from e

    def wait_ready(self, timeout: float = POD_READY_TIMEOUT, interval: float = POD_POLL_INTERVAL,
                   sleep=time.sleep):
        """Polls the pod phase until Running; Failed or Succeeded is fatal"""
        deadline = time.monotonic() + timeout
        while True:
            try:
                pod = self.api.read_namespaced_pod(name=self.name, namespace=self.namespace)
            except ApiException as e:
                raise RemotePodFailedError(f"could not read pod {self.name}: {e.reason}",
                                           {"pod": self.name, "status": e.status}) from e

            phase = pod.status.phase if pod.status else None
            if phase == "Running":
                return
            if phase in ("Failed", "Succeeded"):
                raise RemotePodFailedError(f"pod {self.name} terminated ({phase})",
                                           {"pod": self.name, "phase": phase})

            if time.monotonic() >= deadline:
                raise RemotePodFailedError(f"pod {self.name} not ready after {timeout:.0f}s",
                                           {"pod": self.name, "phase": phase})
            sleep(interval)

    def exec(self, command: List[str]) -> int:
        """Runs ``command`` in the pod, forwarding its output; returns the exit code"""
        try:
            resp = stream(
                self.api.connect_get_namespaced_pod_exec,
                self.name,
                self.namespace,
                container=CONTAINER_NAME,
                command=command,
                stderr=True, stdin=False, stdout=True, tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise RemotePodFailedError(f"could not exec in pod {self.name}: {e.reason}",
                                       {"pod": self.name}) from e

        try:
            while resp.is_open():
                resp.update(timeout=1)
                if resp.peek_stdout():
                    sys.stdout.write(resp.read_stdout())
                    sys.stdout.flush()
                if resp.peek_stderr():
                    sys.stderr.write(resp.read_stderr())
                    sys.stderr.flush()
            returncode = resp.returncode
        finally:
            resp.close()

        return returncode or 0

    def delete(self):
        try:
            self.api.delete_namespaced_pod(
                name=self.name,
                namespace=self.namespace,
                body=k8s.V1DeleteOptions(propagation_policy="Foreground"),
            )
        except ApiException as e:
            if e.status != 404:
                raise RemotePodFailedError(f"could not delete pod {self.name}: {e.reason}",
                                           {"pod": self.name, "status": e.status}) from e


# ============================================================================
# CONTAINER IMAGE
# ============================================================================

class KubernetesContainerImage:
    """
    A toolchain image executed in a pod.

    ``upload_project`` is cleared after the first target by the orchestrator so
    the project tree is shipped once per run.
    """

    kind = "kubernetes"

    def __init__(self, engine: Engine, target: Target, volume: Volume,
                 api: k8s.CoreV1Api, store: ObjectStoreSession,
                 namespace: str = DEFAULT_NAMESPACE, s3_path: str = "/",
                 size_limit: str = DEFAULT_SIZE_LIMIT, upload_project: bool = True,
                 download_result: bool = True, cache_enabled: bool = True,
                 strict_cache: bool = False, ready_timeout: float = POD_READY_TIMEOUT,
                 debug: bool = False):
        self.logger = get_logger(__name__)
        self.engine = engine
        self.state = ImageState.for_target(target)
        self.api = api
        self.store = store
        self.namespace = namespace
        self.s3_path = s3_path
        self.size_limit = validate_size_limit(size_limit)
        self.upload_project = upload_project
        self.download_result = download_result
        self.cache_enabled = cache_enabled
        self.strict_cache = strict_cache
        self.ready_timeout = ready_timeout
        self.debug = debug
        self.pod: Optional[Pod] = None
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
        return False

    # -- keys ----------------------------------------------------------

    def mount_key(self, mount_name: str) -> str:
        return join_key(self.s3_path, mount_name + MOUNT_ARCHIVE_EXT)

    def cache_key(self) -> str:
        return join_key(self.s3_path, f"{CACHE_MOUNT}-{self.id}{MOUNT_ARCHIVE_EXT}")

    def artifact_key(self, output: PackageOutput) -> str:
        key = join_key(self.s3_path, self.id, output.name)
        return key + DIRECTORY_ARCHIVE_EXT if output.is_dir else key

    def _pod_env(self) -> Dict[str, str]:
        env = dict(self.engine.env)
        for key in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY"):
            value = os.environ.get(key)
            if value:
                env[key] = value
        env["CGO_ENABLED"] = "1"
        if self.cache_enabled:
            env["GOCACHE"] = join_path_container(self.state.get_mount(CACHE_MOUNT).in_container, "go-build")
        env.update(self.state.env)
        return env

    def _helper(self, *args: str) -> List[str]:
        """
        Command line for the S3 helper shipped in the build images. Connection
        settings are global flags placed before the subcommand.
        """
        config = self.store.config
        command = [S3_HELPER]
        for flag, value in (("--aws-endpoint", config.endpoint),
                            ("--aws-region", config.region),
                            ("--aws-bucket", config.bucket),
                            ("--aws-AKID", config.access_key),
                            ("--aws-secret", config.secret_key)):
            if value:
                command.extend([flag, value])
        command.extend(args)
        return command

    def _check_helper(self):
        try:
            self._exec(["sh", "-c", f"command -v {S3_HELPER}"])
        except ContainerExecError as e:
            raise BackendUnavailableError(
                f"{S3_HELPER} not found in image {self.state.image}; "
                f"Kubernetes builds need a fyne-cross image that ships it",
                {"target": self.id, "image": self.state.image}
            ) from e

    # -- lifecycle -----------------------------------------------------

    def prepare(self):
        project = self.state.get_mount(PROJECT_MOUNT)
        if self.upload_project:
            self.logger.info(f"Uploading project {project.local_host} ...")
            self.store.upload_compressed_directory(project.local_host, self.mount_key(PROJECT_MOUNT))

        name = Pod.make_name(self.id)
        manifest = Pod.build_manifest(name, self.state.image, self.state.mounts, self._pod_env(),
                                      self.size_limit, project.in_container)
        with self._lock:
            self.pod = Pod(self.api, self.namespace, name)

        self.logger.info(f"Creating pod {name} in namespace {self.namespace} ...")
        self.pod.create(manifest)
        self.pod.wait_ready(timeout=self.ready_timeout)
        self.logger.success(f"Pod {name} is running")

        self._check_helper()
        self._exec(self._helper("download-directory", self.mount_key(PROJECT_MOUNT),
                                project.in_container))

        if self.cache_enabled:
            cache = self.state.get_mount(CACHE_MOUNT)
            try:
                self._exec(self._helper("download-directory", self.cache_key(), cache.in_container))
            except ContainerExecError:
                self.logger.info(f"No cache restored for {self.id}")

    def run(self, volume: Volume, options: RunOptions, command: List[str]):
        if self.pod is None:
            raise RemotePodFailedError(f"pod for {self.id} is not prepared")

        env_prefix = [f"{k}={v}" for k, v in options.env.items()]
        if env_prefix:
            command = ["env"] + env_prefix + list(command)

        work_dir = options.work_dir or volume.work_dir_container
        if work_dir != volume.work_dir_container:
            command = shell_command(work_dir, command)

        if options.debug:
            self.logger.debug(f"(pod {self.pod.name}) {' '.join(command)}")

        returncode = self.pod.exec(command)
        if returncode != 0:
            raise ContainerExecError(
                f"command exited with code {returncode}: {' '.join(command)}",
                command=command, returncode=returncode, details={"target": self.id, "pod": self.pod.name}
            )

    def _exec(self, command: List[str]):
        if self.pod is None:
            raise RemotePodFailedError(f"pod for {self.id} is not prepared")
        shown = redact_command(command)
        if self.debug:
            self.logger.debug(f"(pod {self.pod.name}) {' '.join(shown)}")
        returncode = self.pod.exec(command)
        if returncode != 0:
            raise ContainerExecError(
                f"{command[0]} exited with code {returncode}",
                command=shown, returncode=returncode, details={"target": self.id}
            )

    def write_file(self, volume: Volume, container_path: str, data: bytes):
        """Ships ``data`` through the object store into the pod"""
        key = join_key(self.s3_path, self.id, "inputs", os.path.basename(container_path))
        fd, tmp = tempfile.mkstemp(prefix="crossfyne-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            self.store.upload_file(tmp, key)
        finally:
            os.unlink(tmp)
        self._exec(self._helper("download-file", key, container_path))

    def finalize(self, volume: Volume, output: PackageOutput) -> Optional[str]:
        """
        Upload the bundle from the pod, save the cache, and bring the bundle
        back into the host distribution directory.
        """
        key = self.artifact_key(output)
        command = "upload-directory" if output.is_dir else "upload-file"
        self.logger.info(f"Uploading {output.name} from pod ...")
        self._exec(self._helper(command, output.container_path, key))

        if self.cache_enabled:
            self._upload_cache()

        if not self.download_result:
            self.logger.info(f"Result left in object store: {key}")
            return None

        dest = join_path_host(volume.dist_dir_host, self.id, output.name)
        remove_path(dest)
        ensure_directory(os.path.dirname(dest))
        if output.is_dir:
            self.store.download_compressed_directory(key, dest)
        else:
            self.store.download_file(key, dest)
        return dest

    def _upload_cache(self):
        cache = self.state.get_mount(CACHE_MOUNT)
        try:
            self._exec(self._helper("upload-directory", cache.in_container, self.cache_key()))
        except (ContainerExecError, ObjectStoreError) as e:
            if self.strict_cache:
                raise ObjectStoreError(f"could not upload cache for {self.id}: {e}",
                                       {"target": self.id}) from e
            self.logger.warning(f"Could not upload cache for {self.id}: {e}")

    def close(self):
        """Cancels any transfer and deletes the pod"""
        self.store.cancel()
        with self._lock:
            pod, self.pod = self.pod, None
        if pod is not None:
            self.logger.debug(f"Deleting pod {pod.name}")
            pod.delete()
