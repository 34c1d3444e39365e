#!/usr/bin/env python3
"""
Unit tests for target parsing and resolution.
"""

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).parent.parent))

from crossfyne.Core.target_manager import (
    PlanOptions, PlatformKind, image_reference, make_target_id
)
from crossfyne.utils.validation import UnsupportedTargetError


class TestParseTargets:

    def test_wildcard_expands_in_declared_order(self, target_manager):
        pairs = target_manager.parse_targets("linux/*")
        assert pairs == [("linux", "amd64"), ("linux", "386"), ("linux", "arm"), ("linux", "arm64")]

    @pytest.mark.parametrize("entry", ["linux/*", "windows/*,darwin/*", "linux/*,android/*,web"])
    def test_wildcard_expansion_is_idempotent(self, target_manager, entry):
        pairs = target_manager.parse_targets(entry)
        reparsed = target_manager.parse_targets(target_manager.format_targets(pairs))
        assert reparsed == pairs
        assert target_manager.parse_targets(target_manager.format_targets(reparsed)) == pairs

    def test_expanded_list_is_a_fixed_point(self, target_manager):
        pairs = target_manager.parse_targets("linux/*")
        assert target_manager.format_targets(pairs) == "linux/amd64,linux/386,linux/arm,linux/arm64"
        assert target_manager.parse_targets(["linux/*", target_manager.format_targets(pairs)]) == pairs

    def test_bare_os_uses_default_arch(self, target_manager):
        assert target_manager.parse_targets("windows") == [("windows", "amd64")]
        assert target_manager.parse_targets("android") == [("android", "multiple")]
        assert target_manager.parse_targets("web") == [("web", "")]

    def test_single_id_wildcard(self, target_manager):
        assert target_manager.parse_targets("android/*") == [("android", "multiple")]

    def test_comma_separated_and_repeated(self, target_manager):
        pairs = target_manager.parse_targets(["linux/amd64,windows/386", "linux/amd64"])
        assert pairs == [("linux", "amd64"), ("windows", "386")]

    def test_bare_arch_with_default_os(self, target_manager):
        pairs = target_manager.parse_targets("amd64,arm64", default_os="freebsd")
        assert pairs == [("freebsd", "amd64"), ("freebsd", "arm64")]

    def test_unknown_os(self, target_manager):
        with pytest.raises(UnsupportedTargetError):
            target_manager.parse_targets("plan9/amd64")

    def test_unknown_arch(self, target_manager):
        with pytest.raises(UnsupportedTargetError) as exc:
            target_manager.parse_targets("linux/mips")
        assert exc.value.details == {"os": "linux", "arch": "mips"}

    def test_darwin_has_no_386(self, target_manager):
        with pytest.raises(UnsupportedTargetError):
            target_manager.parse_targets("darwin/386")

    def test_format_targets(self, target_manager):
        pairs = target_manager.parse_targets("linux/arm64,web")
        assert target_manager.format_targets(pairs) == "linux/arm64,web"


class TestResolve:

    def test_target_ids(self, make_target):
        assert make_target("linux/arm64").id == "linux-arm64"
        assert make_target("android/arm64").id == "android"
        assert make_target("web").id == "web"

    def test_android_name_carries_arch(self, make_target):
        assert make_target("android/arm64").name == "android/arm64"
        assert make_target("android").name == "android"

    def test_default_registry_prefix(self, make_target):
        assert make_target("linux/amd64").image == "docker.io/fyneio/fyne-cross:1.3-base"

    def test_custom_registry_and_image(self, make_target):
        assert make_target("linux/amd64", registry="ghcr.io").image == "ghcr.io/fyneio/fyne-cross:1.3-base"
        assert make_target("linux/amd64", image="my/image:1").image == "my/image:1"

    def test_image_override_by_target_id(self, make_target):
        target = make_target("linux/arm", image_overrides={"linux-arm": "registry.local/arm:2"})
        assert target.image == "registry.local/arm:2"

    def test_environment_merge(self, make_target):
        target = make_target("linux/arm", env={"CC": "clang", "FOO": "bar"})
        assert target.env["GOARM"] == "7"
        assert target.env["CC"] == "clang"
        assert target.env["FOO"] == "bar"

    def test_gles_tag_on_arm(self, make_target):
        assert make_target("linux/arm64").tags == ["gles"]
        assert make_target("linux/arm64", tags=["gles", "debug"]).tags == ["gles", "debug"]
        assert make_target("linux/amd64").tags == []

    def test_windows_gui_subsystem(self, make_target):
        assert make_target("windows/amd64").ldflags == ["-H=windowsgui"]
        assert make_target("windows/amd64", console=True).ldflags == []
        assert make_target("windows/amd64", ldflags=["-X main.v=1"]).ldflags == ["-H=windowsgui", "-X main.v=1"]

    def test_packaging_switches_in_release(self, make_target):
        assert make_target("android").packaging == "apk"
        assert make_target("darwin/amd64").packaging == "app"
        assert make_target("darwin/amd64", host="darwin", release=True).packaging == "pkg"

    def test_mobile_and_web_delegate_compile(self, make_target):
        android = make_target("android")
        assert android.delegates_compile
        assert android.kind is PlatformKind.MOBILE
        assert make_target("web").delegates_compile
        assert not make_target("linux/amd64").delegates_compile

    def test_ios_requires_darwin_host(self, make_target):
        with pytest.raises(UnsupportedTargetError):
            make_target("ios", host="linux")
        assert make_target("ios", host="darwin").host_only

    def test_release_host_restrictions(self, make_target):
        with pytest.raises(UnsupportedTargetError):
            make_target("windows/amd64", host="linux", release=True)
        with pytest.raises(UnsupportedTargetError):
            make_target("darwin/arm64", host="linux", release=True)
        assert make_target("windows/amd64", host="windows", release=True).host_only
        assert not make_target("windows/amd64", host="linux").host_only

    def test_requires_app_id(self, target_manager):
        pairs = target_manager.parse_targets("linux,android,darwin/*")
        assert target_manager.requires_app_id(pairs) == ["android", "darwin"]

    def test_list_plans(self, target_manager):
        names = [plan.os for plan in target_manager.list_plans()]
        assert names == ["linux", "windows", "darwin", "freebsd", "android", "ios", "web"]


def test_make_target_id():
    assert make_target_id("linux", "386") == "linux-386"
    assert make_target_id("android", "multiple") == "android"
    assert make_target_id("ios", "", single_id=True) == "ios"


def test_image_reference():
    assert image_reference("fyneio/fyne-cross:1.3-base", "docker.io") == "docker.io/fyneio/fyne-cross:1.3-base"
    assert image_reference("fyneio/fyne-cross:1.3-base", "mirror.local:5000/") == \
        "mirror.local:5000/fyneio/fyne-cross:1.3-base"
    assert image_reference("ghcr.io/acme/toolchain:1", "docker.io") == "ghcr.io/acme/toolchain:1"
    assert image_reference("fyneio/fyne-cross:1.3-base", "") == "fyneio/fyne-cross:1.3-base"


def test_plan_options_defaults():
    options = PlanOptions()
    assert options.registry == "docker.io"
    assert not options.release


if __name__ == "__main__":
    sys.exit(pytest.main(["-v", __file__]))
