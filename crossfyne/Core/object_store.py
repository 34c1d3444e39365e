#!/usr/bin/env python3
"""
crossfyne - Object Store Shuttle

Moves project trees, toolchain caches and artifacts between the host and a
remote build pod through S3.

Directories travel as a streamed tar over a compression codec chosen by the
object key extension (``.xz`` or ``.zstd``). Upload runs the tar producer in a
thread feeding the S3 multipart uploader through a pipe; download runs the
extractor in a thread reading what the sequential downloader writes.
"""

import os
import posixpath
import queue
import shutil
import stat
import tarfile
import threading
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, Mapping, Optional

import boto3
import zstandard as zstd
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from crossfyne.utils.helpers import ensure_directory
from crossfyne.utils.logging import get_logger, log_performance
from crossfyne.utils.validation import ObjectStoreError

logger = get_logger(__name__)


# ============================================================================
# ENUMS AND CONSTANTS
# ============================================================================

class Codec(Enum):
    XZ = "xz"
    ZSTD = "zstd"


ZSTD_LEVEL = 3
MULTIPART_CHUNK_SIZE = 8 * 1024 * 1024
COPY_BUFFER_SIZE = 1024 * 1024

ENV_ENDPOINT = "AWS_S3_ENDPOINT"
ENV_REGION = "AWS_S3_REGION"
ENV_BUCKET = "AWS_S3_BUCKET"
ENV_ACCESS_KEY = "AWS_ACCESS_KEY_ID"
ENV_SECRET_KEY = "AWS_SECRET_ACCESS_KEY"


class TransferCancelled(ObjectStoreError):
    """Raised inside a transfer once its cancel handle is triggered"""
    pass


def codec_for_key(key: str) -> Codec:
    if key.endswith(".xz"):
        return Codec.XZ
    if key.endswith(".zstd") or key.endswith(".zst"):
        return Codec.ZSTD
    raise ObjectStoreError(f"unsupported compression for {key}, expected .xz or .zstd",
                           {"key": key})


def join_key(*parts: str) -> str:
    """Object keys are '/' joined and never start with '/'"""
    key = posixpath.normpath(posixpath.join("/", *[str(p) for p in parts if p]))
    return key.lstrip("/")


def local_path_for_entry(local_root: str, entry_name: str) -> Optional[str]:
    """
    Maps an archive entry onto ``local_root``.

    The first path segment (the archived directory's own name) is replaced by
    ``local_root``. Entries rooted at '/' are not extracted.
    """
    if not entry_name or entry_name.startswith("/"):
        return None

    segments = [s for s in entry_name.split("/") if s and s != "."]
    if not segments:
        return None
    if ".." in segments:
        raise ObjectStoreError(f"archive entry escapes the destination: {entry_name}",
                               {"entry": entry_name})
    return os.path.join(local_root, *segments[1:]) if len(segments) > 1 else local_root


# ============================================================================
# SEQUENTIAL WRITER SHIM
# ============================================================================

class FakeWriterAt:
    """
    Adapts a sequential stream to the random-access writer the transfer
    manager expects.

    The offset is ignored, so the download must run with a concurrency of 1
    (see ``SEQUENTIAL_DOWNLOAD``); parts then arrive in order.
    """

    def __init__(self, writer: BinaryIO):
        self.writer = writer

    def write_at(self, data: bytes, offset: int) -> int:
        return self.write(data)

    def write(self, data: bytes) -> int:
        self.writer.write(data)
        return len(data)

    def seekable(self) -> bool:
        return False

    def flush(self):
        self.writer.flush()


SEQUENTIAL_DOWNLOAD = TransferConfig(max_concurrency=1, use_threads=False)


# ============================================================================
# TAR STREAMS
# ============================================================================

def write_tar(local_dir: str, stream: BinaryIO, codec: Codec,
              cancelled: Optional[threading.Event] = None):
    """
    Writes ``local_dir`` as a compressed tar stream.

    Entry names start with the directory's base name. Symbolic links are
    skipped.
    """
    local_dir = os.path.abspath(local_dir)
    prefix = os.path.basename(local_dir.rstrip(os.sep)) or "root"

    if codec is Codec.ZSTD:
        compressor = zstd.ZstdCompressor(level=ZSTD_LEVEL).stream_writer(stream, closefd=False)
        tar = tarfile.open(fileobj=compressor, mode="w|")
    else:
        compressor = None
        tar = tarfile.open(fileobj=stream, mode="w|xz")

    try:
        for dirpath, dirnames, filenames in os.walk(local_dir):
            dirnames.sort()
            relative = os.path.relpath(dirpath, local_dir)
            arc_dir = prefix if relative == "." else posixpath.join(prefix, *relative.split(os.sep))
            tar.add(dirpath, arcname=arc_dir, recursive=False)

            for name in sorted(filenames):
                if cancelled is not None and cancelled.is_set():
                    raise TransferCancelled("upload cancelled")
                path = os.path.join(dirpath, name)
                if os.path.islink(path) or not os.path.isfile(path):
                    continue
                tar.add(path, arcname=posixpath.join(arc_dir, name), recursive=False)

            # symlinked directories are not followed
            dirnames[:] = [d for d in dirnames if not os.path.islink(os.path.join(dirpath, d))]
    finally:
        tar.close()
        if compressor is not None:
            compressor.close()


def extract_tar(stream: BinaryIO, local_root: str, codec: Codec,
                cancelled: Optional[threading.Event] = None):
    """Extracts a compressed tar stream below ``local_root``"""
    if codec is Codec.ZSTD:
        reader = zstd.ZstdDecompressor().stream_reader(stream, closefd=False)
        tar = tarfile.open(fileobj=reader, mode="r|")
    else:
        reader = None
        tar = tarfile.open(fileobj=stream, mode="r|xz")

    try:
        for member in tar:
            if cancelled is not None and cancelled.is_set():
                raise TransferCancelled("download cancelled")

            path = local_path_for_entry(local_root, member.name)
            if path is None or member.issym() or member.islnk():
                continue

            mode = stat.S_IMODE(member.mode)
            if member.isdir():
                if not os.path.isdir(path):
                    ensure_directory(os.path.dirname(path))
                    os.mkdir(path)
                    os.chmod(path, mode)
                continue

            if not member.isfile():
                continue

            ensure_directory(os.path.dirname(path))
            src = tar.extractfile(member)
            with src, open(path, "wb") as dst:
                shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
            os.chmod(path, mode)
    finally:
        tar.close()
        if reader is not None:
            reader.close()


# ============================================================================
# SESSION
# ============================================================================

@dataclass
class ObjectStoreConfig:
    bucket: str
    endpoint: Optional[str] = None
    region: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ObjectStoreConfig":
        env = os.environ if env is None else env
        bucket = env.get(ENV_BUCKET)
        if not bucket:
            raise ObjectStoreError(f"{ENV_BUCKET} is not set")
        return cls(
            bucket=bucket,
            endpoint=env.get(ENV_ENDPOINT) or None,
            region=env.get(ENV_REGION) or None,
            access_key=env.get(ENV_ACCESS_KEY) or None,
            secret_key=env.get(ENV_SECRET_KEY) or None,
        )


class ObjectStoreSession:
    """
    S3 transfers for one image.

    Every operation runs under a fresh cancel handle; ``cancel`` triggers the
    current one. The handle is swapped under a lock.
    """

    def __init__(self, config: ObjectStoreConfig, client=None):
        self.config = config
        self.bucket = config.bucket
        self.client = client or boto3.session.Session().client(
            "s3",
            endpoint_url=config.endpoint,
            region_name=config.region,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
        )
        self._cancel: Optional[threading.Event] = None
        self._lock = threading.Lock()

    # -- cancellation --------------------------------------------------

    def _new_cancel(self) -> threading.Event:
        event = threading.Event()
        with self._lock:
            self._cancel = event
        return event

    def cancel(self):
        with self._lock:
            if self._cancel is not None:
                self._cancel.set()

    @staticmethod
    def _progress_callback(cancelled: threading.Event) -> Callable[[int], None]:
        def callback(_bytes: int):
            if cancelled.is_set():
                raise TransferCancelled("transfer cancelled")
        return callback

    # -- single files --------------------------------------------------

    def upload_file(self, local_file: str, key: str):
        cancelled = self._new_cancel()
        logger.debug(f"Uploading {local_file} to s3://{self.bucket}/{key}")
        try:
            self.client.upload_file(local_file, self.bucket, key,
                                    Callback=self._progress_callback(cancelled))
        except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
            raise ObjectStoreError(f"could not upload {local_file}: {e}",
                                   {"key": key, "bucket": self.bucket}) from e

    def download_file(self, key: str, local_file: str):
        cancelled = self._new_cancel()
        logger.debug(f"Downloading s3://{self.bucket}/{key} to {local_file}")
        try:
            ensure_directory(os.path.dirname(os.path.abspath(local_file)))
            self.client.download_file(self.bucket, key, local_file,
                                      Callback=self._progress_callback(cancelled))
        except (BotoCoreError, ClientError, OSError) as e:
            raise ObjectStoreError(f"could not download {key}: {e}",
                                   {"key": key, "bucket": self.bucket}) from e

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise ObjectStoreError(f"could not stat {key}: {e}", {"key": key}) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"could not stat {key}: {e}", {"key": key}) from e

    # -- directories ---------------------------------------------------

    @log_performance(__name__)
    def upload_compressed_directory(self, local_dir: str, key: str):
        """Streams ``local_dir`` as tar.<codec> to ``key``"""
        codec = codec_for_key(key)
        cancelled = self._new_cancel()
        logger.debug(f"Uploading directory {local_dir} to s3://{self.bucket}/{key}")

        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, "rb")
        writer = os.fdopen(write_fd, "wb")
        errors: "queue.Queue[Optional[BaseException]]" = queue.Queue(maxsize=1)

        def produce():
            try:
                with writer:
                    write_tar(local_dir, writer, codec, cancelled)
            except BaseException as e:  # reported through the queue
                errors.put(e)
            else:
                errors.put(None)

        producer = threading.Thread(target=produce, name=f"tar-{key}", daemon=True)
        producer.start()

        upload_error: Optional[BaseException] = None
        try:
            self.client.upload_fileobj(
                reader, self.bucket, key,
                Config=TransferConfig(multipart_chunksize=MULTIPART_CHUNK_SIZE),
                Callback=self._progress_callback(cancelled),
            )
        except (BotoCoreError, ClientError, S3UploadFailedError, ObjectStoreError, OSError) as e:
            upload_error = e
            cancelled.set()
        finally:
            reader.close()
            producer.join()

        producer_error = errors.get()
        if upload_error is None and producer_error is not None:
            # the uploader saw a truncated stream; drop the partial object
            self._delete_quietly(key)

        error = upload_error or producer_error
        if error is not None:
            if isinstance(error, ObjectStoreError):
                raise error
            raise ObjectStoreError(f"could not upload directory {local_dir}: {error}",
                                   {"key": key, "bucket": self.bucket}) from error

    @log_performance(__name__)
    def download_compressed_directory(self, key: str, local_root: str):
        """Extracts the tar.<codec> object ``key`` below ``local_root``"""
        codec = codec_for_key(key)
        cancelled = self._new_cancel()
        logger.debug(f"Downloading directory s3://{self.bucket}/{key} to {local_root}")

        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, "rb")
        writer = os.fdopen(write_fd, "wb")
        errors: "queue.Queue[Optional[BaseException]]" = queue.Queue(maxsize=1)

        def consume():
            try:
                with reader:
                    extract_tar(reader, local_root, codec, cancelled)
            except BaseException as e:  # reported through the queue
                errors.put(e)
            else:
                errors.put(None)

        consumer = threading.Thread(target=consume, name=f"untar-{key}", daemon=True)
        consumer.start()

        download_error: Optional[BaseException] = None
        try:
            self.client.download_fileobj(
                self.bucket, key, FakeWriterAt(writer),
                Config=SEQUENTIAL_DOWNLOAD,
                Callback=self._progress_callback(cancelled),
            )
        except (BotoCoreError, ClientError, ObjectStoreError, OSError) as e:
            download_error = e
            cancelled.set()
        finally:
            try:
                writer.close()
            except BrokenPipeError:
                # the extractor stopped early; its error is reported below
                download_error = download_error or BrokenPipeError()
            consumer.join()

        consumer_error = errors.get()
        error = consumer_error if isinstance(download_error, BrokenPipeError) else (download_error or consumer_error)
        if error is not None:
            if isinstance(error, ObjectStoreError):
                raise error
            raise ObjectStoreError(f"could not download directory {key}: {error}",
                                   {"key": key, "bucket": self.bucket}) from error

    def _delete_quietly(self, key: str):
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.debug(f"Could not delete partial object {key}: {e}")
