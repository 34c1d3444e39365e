#!/usr/bin/env python3
"""
crossfyne - Object Store Helper

``crossfyne-s3`` moves projects, toolchain caches and packaged bundles between
a machine and the object store. It takes the same commands and connection
flags as the ``fyne-cross-s3`` helper the build images ship, so a bucket can
be seeded or inspected from the host with the keys build pods use.
Directories travel as compressed tarballs; the codec follows the key
extension (``.tar.xz`` or ``.tar.zstd``).
"""

import sys
from typing import List, Optional

import click

from crossfyne.Core.object_store import (
    ENV_ACCESS_KEY, ENV_BUCKET, ENV_ENDPOINT, ENV_REGION, ENV_SECRET_KEY,
    ObjectStoreConfig, ObjectStoreSession
)
from crossfyne.utils.logging import get_logger, set_verbosity
from crossfyne.utils.validation import CrossBuildError, ObjectStoreError


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option('--aws-endpoint', envvar=ENV_ENDPOINT, help='S3 endpoint')
@click.option('--aws-region', envvar=ENV_REGION, help='S3 region')
@click.option('--aws-bucket', envvar=ENV_BUCKET, help='S3 bucket')
@click.option('--aws-AKID', 'aws_akid', envvar=ENV_ACCESS_KEY, help='Access key ID')
@click.option('--aws-secret', envvar=ENV_SECRET_KEY, help='Secret access key')
@click.option('--debug', is_flag=True, help='Debug output')
@click.pass_context
def cli(ctx: click.Context, aws_endpoint: Optional[str], aws_region: Optional[str],
        aws_bucket: Optional[str], aws_akid: Optional[str], aws_secret: Optional[str], debug: bool):
    """Transfer files and directories between a build pod and S3"""
    set_verbosity("debug" if debug else "info")
    if not aws_bucket:
        raise ObjectStoreError(f"a bucket is required: use --aws-bucket or {ENV_BUCKET}")

    config = ObjectStoreConfig(bucket=aws_bucket, endpoint=aws_endpoint, region=aws_region,
                               access_key=aws_akid, secret_key=aws_secret)
    ctx.obj = ObjectStoreSession(config)


@cli.command('upload-directory')
@click.argument('local_dir', type=click.Path(exists=True, file_okay=False))
@click.argument('key')
@click.pass_obj
def upload_directory(store: ObjectStoreSession, local_dir: str, key: str):
    """Upload LOCAL_DIR as a compressed tarball at KEY"""
    get_logger(__name__).info(f"Uploading {local_dir} to {key}")
    store.upload_compressed_directory(local_dir, key)


@cli.command('download-directory')
@click.argument('key')
@click.argument('local_dir', type=click.Path(file_okay=False))
@click.pass_obj
def download_directory(store: ObjectStoreSession, key: str, local_dir: str):
    """Download and extract the tarball at KEY into LOCAL_DIR"""
    get_logger(__name__).info(f"Downloading {key} to {local_dir}")
    store.download_compressed_directory(key, local_dir)


@cli.command('upload-file')
@click.argument('local_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('key')
@click.pass_obj
def upload_file(store: ObjectStoreSession, local_file: str, key: str):
    """Upload LOCAL_FILE to KEY"""
    get_logger(__name__).info(f"Uploading {local_file} to {key}")
    store.upload_file(local_file, key)


@cli.command('download-file')
@click.argument('key')
@click.argument('local_file', type=click.Path(dir_okay=False))
@click.pass_obj
def download_file(store: ObjectStoreSession, key: str, local_file: str):
    """Download KEY to LOCAL_FILE"""
    get_logger(__name__).info(f"Downloading {key} to {local_file}")
    store.download_file(key, local_file)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        cli.main(args=argv, prog_name="crossfyne-s3", standalone_mode=False)
    except click.UsageError as e:
        e.show()
        return 2
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except CrossBuildError as e:
        get_logger(__name__).error(e.message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
