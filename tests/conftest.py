#!/usr/bin/env python3
"""
Shared fixtures: resolved targets, a mounted volume and an in-memory image
that records commands instead of starting containers.
"""

import os
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).parent.parent))

from crossfyne.Core.container import ImageState
from crossfyne.Core.target_manager import PlanOptions, TargetManager
from crossfyne.Core.volume import mount


class FakeImage:
    """Records every command; ``on_run`` may simulate the toolchain output"""

    def __init__(self, target, volume, kind="local", shares_host_fs=True, on_run=None):
        self.kind = kind
        self.state = ImageState.for_target(target)
        self.volume = volume
        self.on_run = on_run
        self.commands = []
        self.written = {}
        self.finalized = []
        self.prepared = False
        self.closed = False
        self._shares_host_fs = shares_host_fs

    @property
    def id(self):
        return self.state.target.id

    @property
    def target(self):
        return self.state.target

    @property
    def shares_host_fs(self):
        return self._shares_host_fs

    def prepare(self):
        self.prepared = True

    def map_path(self, volume, value):
        return volume.to_host_path(value) or value

    def run(self, volume, options, command):
        work_dir = options.work_dir or volume.work_dir_container
        self.commands.append((work_dir, dict(options.env), list(command)))
        if self.on_run is not None:
            self.on_run(self, work_dir, list(command))

    def write_file(self, volume, container_path, data):
        self.written[container_path] = data
        if self._shares_host_fs:
            host = volume.to_host_path(container_path)
            os.makedirs(os.path.dirname(host), exist_ok=True)
            with open(host, "wb") as f:
                f.write(data)

    def finalize(self, volume, output):
        self.finalized.append(output)
        return None

    def artifact_key(self, output):
        return f"builds/{self.id}/{output.name}"

    def close(self):
        self.closed = True


def _touch(path):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"\x7fELF")


def simulate_toolchain(image, work_dir, command):
    """Creates the files go and the packaging tool would leave behind"""
    volume = image.volume
    if command[:3] == ["go", "mod", "init"]:
        with open(os.path.join(volume.work_dir_host, "go.mod"), "w") as f:
            f.write(f"module {command[3]}\n")
    elif command[:2] == ["go", "build"]:
        _touch(volume.to_host_path(command[command.index("-o") + 1]))
    elif command[0].endswith("windres"):
        _touch(volume.to_host_path(command[command.index("-o") + 1]))
    elif len(command) > 1 and command[1] == "package" and "-executable" in command:
        name = command[command.index("-name") + 1]
        _touch(os.path.join(volume.to_host_path(work_dir), f"{name}.tar.xz"))


@pytest.fixture
def target_manager():
    tm = TargetManager()
    tm.initialize()
    return tm


@pytest.fixture
def make_target(target_manager):
    def factory(entry, host="linux", **options):
        pairs = target_manager.parse_targets(entry)
        return target_manager.resolve(pairs, PlanOptions(host=host, **options))[0]
    return factory


@pytest.fixture
def volume(tmp_path):
    work = tmp_path / "project"
    work.mkdir()
    return mount(str(work), str(tmp_path / "cache"))


@pytest.fixture
def fake_image(volume):
    def factory(target, **kwargs):
        return FakeImage(target, volume, **kwargs)
    return factory


@pytest.fixture
def toolchain():
    return simulate_toolchain
