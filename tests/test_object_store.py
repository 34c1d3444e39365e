#!/usr/bin/env python3
"""
Unit tests for the object store shuttle. The S3 client is replaced by an
in-memory bucket so the streaming tar pipeline runs end to end.
"""

import io
import os
import stat
import sys
import threading
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

sys.path.append(str(Path(__file__).parent.parent))

from crossfyne.Core.object_store import (
    Codec, FakeWriterAt, ObjectStoreConfig, ObjectStoreSession, TransferCancelled,
    codec_for_key, extract_tar, join_key, local_path_for_entry, write_tar
)
from crossfyne.utils.validation import ObjectStoreError


class MemoryS3Client:
    """The subset of the boto3 S3 client the session uses"""

    def __init__(self):
        self.objects = {}

    def upload_fileobj(self, fileobj, bucket, key, Config=None, Callback=None):
        data = fileobj.read()
        if Callback:
            Callback(len(data))
        self.objects[key] = data

    def download_fileobj(self, bucket, key, fileobj, Config=None, Callback=None):
        data = self._get(key)
        fileobj.write(data)
        if Callback:
            Callback(len(data))

    def upload_file(self, filename, bucket, key, Callback=None):
        with open(filename, "rb") as f:
            self.objects[key] = f.read()

    def download_file(self, bucket, key, filename, Callback=None):
        with open(filename, "wb") as f:
            f.write(self._get(key))

    def head_object(self, Bucket, Key):
        self._get(Key)
        return {}

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)

    def _get(self, key):
        if key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return self.objects[key]


@pytest.fixture
def source_tree(tmp_path):
    root = tmp_path / "project"
    (root / "cmd" / "app").mkdir(parents=True)
    (root / "go.mod").write_text("module example.com/app\n")
    (root / "cmd" / "app" / "main.go").write_text("package main\n")
    (root / "empty").mkdir()
    return root


@pytest.fixture
def session():
    return ObjectStoreSession(ObjectStoreConfig(bucket="artifacts"), client=MemoryS3Client())


class TestKeys:

    def test_codec_for_key(self):
        assert codec_for_key("builds/project.tar.zstd") is Codec.ZSTD
        assert codec_for_key("builds/linux-amd64/App.app.tar.xz") is Codec.XZ
        with pytest.raises(ObjectStoreError):
            codec_for_key("builds/project.tar.gz")

    def test_join_key(self):
        assert join_key("/", "project.tar.zstd") == "project.tar.zstd"
        assert join_key("/builds/", "linux-amd64", "App.zip") == "builds/linux-amd64/App.zip"

    def test_local_path_for_entry(self, tmp_path):
        root = str(tmp_path)
        assert local_path_for_entry(root, "project") == root
        assert local_path_for_entry(root, "project/cmd/main.go") == os.path.join(root, "cmd", "main.go")
        assert local_path_for_entry(root, "/etc/passwd") is None
        assert local_path_for_entry(root, "") is None
        with pytest.raises(ObjectStoreError):
            local_path_for_entry(root, "project/../../etc/passwd")


class TestTarStreams:

    @pytest.mark.parametrize("codec", [Codec.XZ, Codec.ZSTD])
    def test_tree_survives_the_stream(self, source_tree, tmp_path, codec):
        buffer = io.BytesIO()
        write_tar(str(source_tree), buffer, codec)

        dest = tmp_path / "restored"
        extract_tar(io.BytesIO(buffer.getvalue()), str(dest), codec)

        assert (dest / "go.mod").read_text() == "module example.com/app\n"
        assert (dest / "cmd" / "app" / "main.go").read_text() == "package main\n"
        assert (dest / "empty").is_dir()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    @pytest.mark.parametrize("codec", [Codec.XZ, Codec.ZSTD])
    def test_permissions_survive_the_stream(self, source_tree, tmp_path, codec):
        os.chmod(source_tree / "empty", 0o775)
        os.chmod(source_tree / "cmd", 0o750)
        os.chmod(source_tree / "go.mod", 0o600)
        buffer = io.BytesIO()
        write_tar(str(source_tree), buffer, codec)

        dest = tmp_path / "restored"
        previous = os.umask(0o022)
        try:
            extract_tar(io.BytesIO(buffer.getvalue()), str(dest), codec)
        finally:
            os.umask(previous)

        for name in ("empty", "cmd", "go.mod", "cmd/app/main.go"):
            assert stat.S_IMODE(os.stat(dest / name).st_mode) == \
                stat.S_IMODE(os.stat(source_tree / name).st_mode), name

    @pytest.mark.skipif(os.name == "nt", reason="symlinks")
    def test_symlinks_are_dropped(self, source_tree, tmp_path):
        os.symlink(source_tree / "go.mod", source_tree / "link.mod")
        os.symlink(source_tree / "cmd", source_tree / "linkdir")
        buffer = io.BytesIO()
        write_tar(str(source_tree), buffer, Codec.XZ)

        dest = tmp_path / "restored"
        extract_tar(io.BytesIO(buffer.getvalue()), str(dest), Codec.XZ)
        assert (dest / "go.mod").exists()
        assert not os.path.lexists(dest / "link.mod")
        assert not os.path.lexists(dest / "linkdir")

    def test_cancelled_upload(self, source_tree):
        cancelled = threading.Event()
        cancelled.set()
        with pytest.raises(TransferCancelled):
            write_tar(str(source_tree), io.BytesIO(), Codec.XZ, cancelled)


def test_fake_writer_at_ignores_offset():
    sink = io.BytesIO()
    writer = FakeWriterAt(sink)
    assert writer.write_at(b"abc", 100) == 3
    assert writer.write_at(b"de", 0) == 2
    assert sink.getvalue() == b"abcde"
    assert not writer.seekable()


class TestSession:

    def test_config_from_env(self):
        config = ObjectStoreConfig.from_env({"AWS_S3_BUCKET": "b", "AWS_S3_REGION": "eu-west-1",
                                             "AWS_S3_ENDPOINT": ""})
        assert config.bucket == "b"
        assert config.region == "eu-west-1"
        assert config.endpoint is None
        with pytest.raises(ObjectStoreError):
            ObjectStoreConfig.from_env({})

    def test_directory_round_trip(self, session, source_tree, tmp_path):
        session.upload_compressed_directory(str(source_tree), "builds/project.tar.zstd")
        assert "builds/project.tar.zstd" in session.client.objects

        dest = tmp_path / "pod" / "app"
        session.download_compressed_directory("builds/project.tar.zstd", str(dest))
        assert (dest / "cmd" / "app" / "main.go").read_text() == "package main\n"

    def test_file_transfer(self, session, tmp_path):
        source = tmp_path / "App.tar.xz"
        source.write_bytes(b"bundle")
        session.upload_file(str(source), "builds/linux-amd64/App.tar.xz")

        dest = tmp_path / "dist" / "linux-amd64" / "App.tar.xz"
        session.download_file("builds/linux-amd64/App.tar.xz", str(dest))
        assert dest.read_bytes() == b"bundle"

    def test_exists(self, session):
        session.client.objects["k"] = b""
        assert session.exists("k")
        assert not session.exists("missing")

    def test_missing_object(self, session, tmp_path):
        with pytest.raises(ObjectStoreError):
            session.download_file("missing", str(tmp_path / "x"))
        with pytest.raises(ObjectStoreError):
            session.download_compressed_directory("missing.tar.xz", str(tmp_path / "y"))

    def test_unsupported_directory_codec(self, session, source_tree):
        with pytest.raises(ObjectStoreError):
            session.upload_compressed_directory(str(source_tree), "project.tar.gz")

    def test_cancel_stops_progress(self, session):
        cancelled = session._new_cancel()
        callback = session._progress_callback(cancelled)
        callback(10)
        session.cancel()
        with pytest.raises(TransferCancelled):
            callback(10)


if __name__ == "__main__":
    sys.exit(pytest.main(["-v", __file__]))
