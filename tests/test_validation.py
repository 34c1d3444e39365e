#!/usr/bin/env python3
"""
Unit tests for request validation.
"""

import sys
from pathlib import Path, PurePosixPath

import pytest

sys.path.append(str(Path(__file__).parent.parent))

from crossfyne.utils.validation import (
    MissingRequirementError, ValidationError, parse_pairs, resolve_package_path, split_list,
    validate_app_build, validate_app_id, validate_keystore, validate_name
)


class TestRequestValidation:

    def test_name(self):
        assert validate_name("App") == "App"
        with pytest.raises(MissingRequirementError):
            validate_name("")
        with pytest.raises(ValidationError):
            validate_name("bin/App")

    def test_app_build(self):
        assert validate_app_build(3) == 3
        with pytest.raises(ValidationError):
            validate_app_build(0)

    def test_app_id(self):
        assert validate_app_id("com.example.app", required=True) == "com.example.app"
        assert validate_app_id(None, required=False) is None
        with pytest.raises(MissingRequirementError) as exc:
            validate_app_id("", required=True, target="android")
        assert "android" in exc.value.message

    def test_app_id_not_reverse_domain_only_warns(self):
        assert validate_app_id("example", required=True) == "example"

    def test_relative_package_kept(self, tmp_path):
        assert resolve_package_path(tmp_path, "./cmd/app") == "./cmd/app"
        assert resolve_package_path(tmp_path, "") == "."

    def test_absolute_package_inside_root(self, tmp_path):
        assert resolve_package_path(tmp_path, str(tmp_path / "cmd" / "app")) == "./cmd/app"
        assert resolve_package_path(tmp_path, str(tmp_path)) == "."

    def test_absolute_package_outside_root(self, tmp_path):
        with pytest.raises(ValidationError):
            resolve_package_path(tmp_path / "project", str(tmp_path / "other"))

    def test_keystore_inside_root(self, tmp_path):
        (tmp_path / "keys").mkdir()
        (tmp_path / "keys" / "release.jks").write_bytes(b"ks")
        assert validate_keystore(tmp_path, "keys/release.jks") == PurePosixPath("keys/release.jks")

    def test_keystore_rejections(self, tmp_path):
        project = tmp_path / "project"
        project.mkdir()
        (tmp_path / "outside.jks").write_bytes(b"ks")
        with pytest.raises(MissingRequirementError):
            validate_keystore(project, "")
        with pytest.raises(MissingRequirementError):
            validate_keystore(project, str(tmp_path / "outside.jks"))
        with pytest.raises(MissingRequirementError):
            validate_keystore(project, "../outside.jks")
        with pytest.raises(MissingRequirementError):
            validate_keystore(project, "missing.jks")

    def test_parse_pairs(self):
        assert parse_pairs(["A=1,B=2", "C=x=y"]) == {"A": "1", "B": "2", "C": "x=y"}
        assert parse_pairs("K=", "metadata") == {"K": ""}
        assert parse_pairs(None) == {}

    def test_parse_pairs_rejects_malformed(self):
        with pytest.raises(ValidationError):
            parse_pairs(["NOVALUE"])
        with pytest.raises(ValidationError):
            parse_pairs(["1BAD=x"], "env")

    def test_split_list(self):
        assert split_list(["a,b", " c ", ""]) == ["a", "b", "c"]
        assert split_list("x") == ["x"]
        assert split_list(None) == []


if __name__ == "__main__":
    sys.exit(pytest.main(["-v", __file__]))
