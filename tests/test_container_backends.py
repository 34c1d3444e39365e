#!/usr/bin/env python3
"""
Unit tests for the local, Kubernetes and host image backends. No engine,
cluster or bucket is contacted: processes, the API and the store are faked.
"""

import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.append(str(Path(__file__).parent.parent))

from crossfyne.Core import docker_manager
from crossfyne.Core.container import ImageState, PackageOutput, RunOptions
from crossfyne.Core.docker_manager import LocalContainerImage, split_image_tag
from crossfyne.Core.engine import Engine, EngineKind
from crossfyne.Core.host_runner import HostImage
from crossfyne.Core.kubernetes_manager import (
    KubernetesContainerImage, Pod, redact_command, shell_command, validate_size_limit
)
from crossfyne.Core.object_store import ObjectStoreConfig
from crossfyne.utils.validation import (
    BackendUnavailableError, ContainerExecError, IOFailureError, MissingRequirementError, ObjectStoreError,
    RemotePodFailedError, ValidationError
)


# ============================================================================
# LOCAL ENGINE
# ============================================================================

class TestLocalContainerImage:

    def test_run_args_docker(self, make_target, volume):
        engine = Engine(EngineKind.DOCKER, binary="docker", env={"AWS_S3_BUCKET": "b"})
        image = LocalContainerImage(engine, make_target("linux/arm64"), volume)
        args = image.build_run_args(volume, RunOptions(work_dir="/app/cmd", env={"EXTRA": "1"}),
                                    ["go", "version"], host_is_windows=False, uid=1000)

        assert args[:6] == ["docker", "run", "--rm", "-t", "-w", "/app/cmd"]
        assert args[6:10] == ["-v", f"{volume.work_dir_host}:/app:z", "-v", f"{volume.cache_dir_host}:/go:z"]
        assert args[10:14] == ["-e", "CGO_ENABLED=1", "-e", "GOCACHE=/go/go-build"]
        assert "GOARCH=arm64" in args
        assert args.index("CC=aarch64-linux-gnu-gcc") < args.index("AWS_S3_BUCKET=b") < args.index("EXTRA=1")
        assert args[-5:] == ["-e", "fyne_uid=1000", "docker.io/fyneio/fyne-cross:1.3-linux-arm64", "go", "version"]
        assert "--userns" not in args

    def test_run_args_podman(self, make_target, volume):
        engine = Engine(EngineKind.PODMAN, binary="podman")
        image = LocalContainerImage(engine, make_target("linux/amd64"), volume)
        args = image.build_run_args(volume, RunOptions(), ["true"], host_is_windows=False, uid=1000)

        assert args[5] == "/app"
        assert args[args.index("--userns") + 1] == "keep-id"
        assert "use_podman=1" in args
        assert not any(a.startswith("fyne_uid=") for a in args)

    def test_run_args_without_cache(self, make_target, volume):
        engine = Engine(EngineKind.DOCKER, binary="docker")
        image = LocalContainerImage(engine, make_target("linux/amd64"), volume, cache_enabled=False)
        args = image.build_run_args(volume, RunOptions(), ["true"], host_is_windows=True)

        assert f"{volume.cache_dir_host}:/go:z" not in args
        assert not any(a.startswith("GOCACHE=") for a in args)
        assert not any(a.startswith("fyne_uid=") for a in args)

    def test_run_failure(self, make_target, volume, monkeypatch):
        class FailingProcess:
            def __init__(self, args):
                self.args = args

            def wait(self):
                return 2

            def poll(self):
                return 2

        monkeypatch.setattr(docker_manager.subprocess, "Popen", FailingProcess)
        image = LocalContainerImage(Engine(EngineKind.DOCKER, binary="docker"), make_target("linux/amd64"), volume)
        with pytest.raises(ContainerExecError) as exc:
            image.run(volume, RunOptions(), ["go", "build"])
        assert exc.value.returncode == 2

    def test_write_file_goes_through_bind_mount(self, make_target, volume):
        image = LocalContainerImage(Engine(EngineKind.DOCKER, binary="docker"), make_target("linux/amd64"), volume)
        image.write_file(volume, "/app/crossfyne/tmp/linux-amd64/Icon.png", b"png")
        with open(os.path.join(volume.tmp_dir_host, "linux-amd64", "Icon.png"), "rb") as f:
            assert f.read() == b"png"

        with pytest.raises(IOFailureError):
            image.write_file(volume, "/etc/passwd", b"")

    def test_finalize_leaves_bundle_in_place(self, make_target, volume):
        image = LocalContainerImage(Engine(EngineKind.DOCKER, binary="docker"), make_target("linux/amd64"), volume)
        assert image.shares_host_fs
        assert image.finalize(volume, PackageOutput("App.tar.xz", "/app/x")) is None


def test_split_image_tag():
    assert split_image_tag("fyneio/fyne-cross:1.3-base") == ("fyneio/fyne-cross", "1.3-base")
    assert split_image_tag("localhost:5000/toolchain") == ("localhost:5000/toolchain", "latest")
    assert split_image_tag("localhost:5000/toolchain:2") == ("localhost:5000/toolchain", "2")


def test_image_state_mounts_and_env(make_target):
    state = ImageState.for_target(make_target("linux/amd64"))
    state.set_mount("project", "/a", "/app")
    state.set_mount("project", "/b", "/app")
    assert [m.local_host for m in state.mounts] == ["/b"]
    state.set_env("X", "1")
    state.unset_env("CC")
    assert state.env["X"] == "1" and "CC" not in state.env
    state.append_tag("gles")
    state.append_tag("gles")
    assert state.tags == ["gles"]


# ============================================================================
# KUBERNETES
# ============================================================================

class FakeCoreApi:
    def __init__(self, phases):
        self.phases = list(phases)
        self.created = []
        self.deleted = []

    def create_namespaced_pod(self, namespace, body):
        self.created.append((namespace, body))

    def read_namespaced_pod(self, name, namespace):
        phase = self.phases.pop(0) if len(self.phases) > 1 else self.phases[0]
        return SimpleNamespace(status=SimpleNamespace(phase=phase))

    def delete_namespaced_pod(self, name, namespace, body):
        self.deleted.append((namespace, name, body.propagation_policy))


class FakeStore:
    def __init__(self, config=None):
        self.config = config or ObjectStoreConfig(bucket="b", region="eu-west-1")
        self.calls = []
        self.cancelled = False

    def upload_compressed_directory(self, local_dir, key):
        self.calls.append(("upload-directory", local_dir, key))

    def download_compressed_directory(self, key, local_root):
        self.calls.append(("download-directory", key, local_root))

    def upload_file(self, local_file, key):
        self.calls.append(("upload-file", key))

    def download_file(self, key, local_file):
        self.calls.append(("download-file", key, local_file))

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def pod_commands(monkeypatch):
    """Captures Pod.exec; commands whose joined text contains a key in ``failures`` exit 1"""
    commands = []
    failures = set()

    def fake_exec(self, command):
        commands.append(list(command))
        return 1 if any(f in " ".join(command) for f in failures) else 0

    monkeypatch.setattr(Pod, "exec", fake_exec)
    return SimpleNamespace(commands=commands, failures=failures)


HELPER = ["fyne-cross-s3", "--aws-region", "eu-west-1", "--aws-bucket", "b"]
HELPER_CHECK = ["sh", "-c", "command -v fyne-cross-s3"]


def make_kube_image(make_target, volume, api, store, **kwargs):
    engine = Engine(EngineKind.KUBERNETES, env={"AWS_S3_BUCKET": "b"})
    return KubernetesContainerImage(engine, make_target(kwargs.pop("target", "linux/amd64")), volume,
                                    api, store, s3_path="/builds", **kwargs)


class TestKubernetes:

    def test_size_limit(self):
        assert validate_size_limit("2Gi") == "2Gi"
        with pytest.raises(ValidationError):
            validate_size_limit("lots")

    def test_shell_command_quotes(self):
        assert shell_command("/app/my dir", ["fyne", "package", "-name", "A B"]) == \
            ["sh", "-c", "cd '/app/my dir' && fyne package -name 'A B'"]

    def test_manifest(self, volume):
        state_mounts = [SimpleNamespace(name="project", in_container="/app"),
                        SimpleNamespace(name="cache", in_container="/go")]
        pod = Pod.build_manifest("crossfyne-x", "img:1", state_mounts, {"A": "1"}, "4Gi", "/app")

        assert pod.metadata.labels == {"app": "crossfyne"}
        assert pod.spec.restart_policy == "Never"
        assert [v.empty_dir.size_limit for v in pod.spec.volumes] == ["4Gi", "4Gi"]
        container = pod.spec.containers[0]
        assert container.image == "img:1"
        assert container.working_dir == "/app"
        assert [(m.name, m.mount_path) for m in container.volume_mounts] == [("project", "/app"), ("cache", "/go")]
        term = pod.spec.affinity.pod_anti_affinity.preferred_during_scheduling_ignored_during_execution[0]
        assert term.pod_affinity_term.topology_key == "kubernetes.io/hostname"

    def test_pod_names_are_unique(self):
        assert Pod.make_name("linux-amd64") != Pod.make_name("linux-amd64")
        assert Pod.make_name("web").startswith("crossfyne-web-")

    def test_wait_ready(self):
        api = FakeCoreApi(["Pending", "Pending", "Running"])
        sleeps = []
        Pod(api, "default", "p").wait_ready(timeout=60, sleep=sleeps.append)
        assert len(sleeps) == 2

    def test_wait_ready_terminated(self):
        with pytest.raises(RemotePodFailedError):
            Pod(FakeCoreApi(["Failed"]), "default", "p").wait_ready(timeout=60, sleep=lambda s: None)

    def test_wait_ready_timeout(self):
        with pytest.raises(RemotePodFailedError):
            Pod(FakeCoreApi(["Pending"]), "default", "p").wait_ready(timeout=0, sleep=lambda s: None)

    def test_keys(self, make_target, volume):
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), FakeStore())
        assert image.mount_key("project") == "builds/project.tar.zstd"
        assert image.cache_key() == "builds/cache-linux-amd64.tar.zstd"
        assert image.artifact_key(PackageOutput("App.tar.xz", "/x")) == "builds/linux-amd64/App.tar.xz"
        assert image.artifact_key(PackageOutput("App.app", "/x", is_dir=True)) == \
            "builds/linux-amd64/App.app.tar.xz"

    def test_prepare_uploads_and_restores(self, make_target, volume, pod_commands):
        api, store = FakeCoreApi(["Running"]), FakeStore()
        pod_commands.failures.add("cache-linux-amd64")
        image = make_kube_image(make_target, volume, api, store, namespace="builds")
        image.prepare()

        assert store.calls == [("upload-directory", volume.work_dir_host, "builds/project.tar.zstd")]
        namespace, manifest = api.created[0]
        assert namespace == "builds"
        env = {e.name: e.value for e in manifest.spec.containers[0].env}
        assert env["GOCACHE"] == "/go/go-build"
        assert env["GOARCH"] == "amd64"
        assert env["AWS_S3_BUCKET"] == "b"
        assert pod_commands.commands[0] == HELPER_CHECK
        assert pod_commands.commands[1] == HELPER + ["download-directory", "builds/project.tar.zstd", "/app"]
        # a missing cache is not fatal
        assert pod_commands.commands[2][5:7] == ["download-directory", "builds/cache-linux-amd64.tar.zstd"]

    def test_project_upload_skipped(self, make_target, volume, pod_commands):
        store = FakeStore()
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), store,
                                upload_project=False, cache_enabled=False, debug=True)
        image.prepare()
        assert store.calls == []
        assert pod_commands.commands == [
            HELPER_CHECK,
            HELPER + ["download-directory", "builds/project.tar.zstd", "/app"],
        ]

    def test_missing_s3_helper(self, make_target, volume, pod_commands):
        pod_commands.failures.add("command -v")
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), FakeStore(),
                                upload_project=False)
        with pytest.raises(BackendUnavailableError) as exc:
            image.prepare()
        assert exc.value.details["image"] == "docker.io/fyneio/fyne-cross:1.3-base"
        assert pod_commands.commands == [HELPER_CHECK]

    def test_helper_credentials_are_redacted(self, make_target, volume, pod_commands):
        config = ObjectStoreConfig(bucket="b", endpoint="http://minio:9000",
                                   access_key="AKID", secret_key="s3cr3t")
        pod_commands.failures.add("download-directory")
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), FakeStore(config),
                                upload_project=False, cache_enabled=False)
        with pytest.raises(ContainerExecError) as exc:
            image.prepare()

        assert pod_commands.commands[1] == [
            "fyne-cross-s3", "--aws-endpoint", "http://minio:9000", "--aws-bucket", "b",
            "--aws-AKID", "AKID", "--aws-secret", "s3cr3t",
            "download-directory", "builds/project.tar.zstd", "/app",
        ]
        shown = exc.value.details["command"]
        assert "s3cr3t" not in shown and "AKID" not in shown
        assert shown[shown.index("--aws-secret") + 1] == "***"

    def test_redact_command(self):
        assert redact_command(["fyne-cross-s3", "--aws-AKID", "a", "--aws-secret"]) == \
            ["fyne-cross-s3", "--aws-AKID", "***", "--aws-secret"]

    def test_run_wraps_env_and_work_dir(self, make_target, volume, pod_commands):
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), FakeStore(), cache_enabled=False)
        image.prepare()
        image.run(volume, RunOptions(work_dir="/app/cmd", env={"GOFLAGS": "-x"}), ["fyne", "package"])
        assert pod_commands.commands[-1] == ["sh", "-c", "cd /app/cmd && env GOFLAGS=-x fyne package"]

        pod_commands.failures.add("go build")
        with pytest.raises(ContainerExecError):
            image.run(volume, RunOptions(), ["go", "build"])

    def test_run_before_prepare(self, make_target, volume):
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), FakeStore())
        with pytest.raises(RemotePodFailedError):
            image.run(volume, RunOptions(), ["true"])

    def test_finalize_downloads_result(self, make_target, volume, pod_commands):
        store = FakeStore()
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), store, upload_project=False)
        image.prepare()
        dest = image.finalize(volume, PackageOutput("App.tar.xz", "/app/crossfyne/tmp/linux-amd64/App.tar.xz"))

        assert dest == os.path.join(volume.dist_dir_host, "linux-amd64", "App.tar.xz")
        assert HELPER + ["upload-file", "/app/crossfyne/tmp/linux-amd64/App.tar.xz",
                                "builds/linux-amd64/App.tar.xz"] in pod_commands.commands
        assert HELPER + ["upload-directory", "/go", "builds/cache-linux-amd64.tar.zstd"] in pod_commands.commands
        assert store.calls[-1] == ("download-file", "builds/linux-amd64/App.tar.xz", dest)

    def test_finalize_without_download(self, make_target, volume, pod_commands):
        store = FakeStore()
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), store,
                                upload_project=False, download_result=False, cache_enabled=False)
        image.prepare()
        assert image.finalize(volume, PackageOutput("web", "/app/web", is_dir=True)) is None
        assert pod_commands.commands[-1] == HELPER + ["upload-directory", "/app/web",
                                             "builds/linux-amd64/web.tar.xz"]
        assert store.calls == []

    def test_cache_upload_failure(self, make_target, volume, pod_commands):
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), FakeStore(),
                                upload_project=False, download_result=False)
        image.prepare()
        pod_commands.failures.add("upload-directory /go")
        # tolerated unless the cache is strict
        image.finalize(volume, PackageOutput("App.tar.xz", "/app/App.tar.xz"))

        image.strict_cache = True
        with pytest.raises(ObjectStoreError) as exc:
            image.finalize(volume, PackageOutput("App.tar.xz", "/app/App.tar.xz"))
        assert exc.value.details == {"target": "linux-amd64"}

    def test_write_file_ships_through_store(self, make_target, volume, pod_commands):
        store = FakeStore()
        image = make_kube_image(make_target, volume, FakeCoreApi(["Running"]), store,
                                upload_project=False, cache_enabled=False)
        image.prepare()
        image.write_file(volume, "/app/crossfyne/tmp/linux-amd64/Icon.png", b"png")

        assert store.calls == [("upload-file", "builds/linux-amd64/inputs/Icon.png")]
        assert pod_commands.commands[-1] == HELPER + ["download-file", "builds/linux-amd64/inputs/Icon.png",
                                             "/app/crossfyne/tmp/linux-amd64/Icon.png"]

    def test_close_deletes_pod(self, make_target, volume, pod_commands):
        api, store = FakeCoreApi(["Running"]), FakeStore()
        image = make_kube_image(make_target, volume, api, store, upload_project=False, cache_enabled=False)
        image.prepare()
        image.close()
        image.close()

        assert store.cancelled
        assert len(api.deleted) == 1
        assert api.deleted[0][2] == "Foreground"


# ============================================================================
# HOST
# ============================================================================

class TestHostImage:

    def test_environment(self, make_target, volume):
        image = HostImage(make_target("darwin/arm64", host="darwin", release=True), volume)
        assert "CC" not in image.state.env
        assert "CGO_CFLAGS" not in image.state.env
        assert image.state.env["GOARCH"] == "arm64"
        assert image.state.env["GOCACHE"] == os.path.join(volume.cache_dir_host, "go-build")

    def test_missing_tool(self, make_target, volume):
        image = HostImage(make_target("ios", host="darwin"), volume, ["crossfyne-no-such-tool"])
        with pytest.raises(MissingRequirementError):
            image.prepare()

    def test_map_path(self, make_target, volume):
        image = HostImage(make_target("ios", host="darwin"), volume)
        assert image.map_path(volume, "/app/crossfyne/tmp/ios/Icon.png") == \
            os.path.join(volume.tmp_dir_host, "ios", "Icon.png")
        assert image.map_path(volume, "-release") == "-release"

    @pytest.mark.skipif(os.name == "nt", reason="posix shell")
    def test_run_on_host(self, make_target, volume):
        image = HostImage(make_target("ios", host="darwin"), volume)
        marker = "/app/crossfyne/tmp/ran"
        image.run(volume, RunOptions(work_dir="/app"), ["touch", marker])
        assert os.path.exists(volume.to_host_path(marker))

        with pytest.raises(ContainerExecError):
            image.run(volume, RunOptions(), ["false"])


if __name__ == "__main__":
    sys.exit(pytest.main(["-v", __file__]))
