#!/usr/bin/env python3
"""
crossfyne - Command Line Interface

Cross compiles and packages Fyne applications for every supported OS from a
single host, running the toolchains in docker, podman or Kubernetes.

    crossfyne linux --arch amd64,arm64 ./cmd/app
    crossfyne windows --app-id com.example.app --console
    crossfyne build -t linux/*,android -n App --app-id com.example.app
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from crossfyne.Core.builder import BuildConfiguration
from crossfyne.Core.config_manager import ConfigManager, ConfigScope, load_app_metadata
from crossfyne.Core.docker_manager import run_sdk_extractor
from crossfyne.Core.engine import make_engine
from crossfyne.Core.orchestrator import CrossOrchestrator, RunReport
from crossfyne.Core.target_manager import TargetManager, image_reference, make_target_id
from crossfyne.Core.volume import DEFAULT_ICON_NAME
from crossfyne.utils.logging import get_logger, set_verbosity, setup_logging
from crossfyne.utils.validation import (
    BackendUnavailableError, CrossBuildError, MissingRequirementError, parse_pairs, split_list
)

# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

console = Console()
__version__ = "1.0.0"

DARWIN_SDK_EXTRACT_IMAGE = "fyneio/fyne-cross-images:darwin-sdk-extractor"
DARWIN_SDK_OUT_DIR = "SDKs"


class CrossContext:
    """Shared context for CLI commands"""

    def __init__(self):
        self.config_file: Optional[str] = None
        self.verbose: bool = False
        self.quiet: bool = False


pass_context = click.make_pass_decorator(CrossContext, ensure=True)


# ============================================================================
# OPTIONS
# ============================================================================

_COMMON_OPTIONS = [
    click.option('--dir', 'work_dir', type=click.Path(file_okay=False), help='Project root directory [default: current dir]'),
    click.option('--cache', 'cache_dir', type=click.Path(file_okay=False), help='Toolchain cache directory [default: user cache dir]'),
    click.option('--no-cache', is_flag=True, help='Do not mount the toolchain cache'),
    click.option('--name', '-n', help='Name of the application [default: project dir name]'),
    click.option('--app-id', help='Application ID used for distribution (reverse domain)'),
    click.option('--app-version', help='Version number in the form x, x.y or x.y.z [default: 1.0.0]'),
    click.option('--app-build', type=int, help='Build number, must be greater than 0 [default: 1]'),
    click.option('--icon', help=f'Application icon [default: {DEFAULT_ICON_NAME}]'),
    click.option('--env', '-e', multiple=True, help='Environment variables as K=V, comma separated or repeated'),
    click.option('--ldflags', multiple=True, help='Additional linker flags'),
    click.option('--tags', multiple=True, help='Additional build tags, comma separated or repeated'),
    click.option('--metadata', multiple=True, help='Packaging metadata as K=V, comma separated or repeated'),
    click.option('--no-strip-debug', is_flag=True, help='Keep debug information in the binary'),
    click.option('--image', help='Custom toolchain image used for every target'),
    click.option('--pull', is_flag=True, help='Pull the toolchain image before building'),
    click.option('--docker-registry', help='Registry prefixed to the toolchain images [default: docker.io]'),
    click.option('--engine', type=click.Choice(['', 'docker', 'podman', 'kubernetes']), default=None,
                 help='Container engine [default: autodetect]'),
    click.option('--release', is_flag=True, help='Release mode (signed store packages)'),
    click.option('--silent', is_flag=True, help='Only report errors'),
    click.option('--debug', is_flag=True, help='Debug output'),
    click.option('--namespace', help='Kubernetes namespace [default: default]'),
    click.option('--s3-path', help='Object store prefix for remote builds [default: /]'),
    click.option('--size-limit', help='Size of each pod scratch volume [default: 2Gi]'),
    click.option('--no-project-upload', is_flag=True, help='Reuse a project already in the object store'),
    click.option('--no-result-download', is_flag=True, help='Leave the artifacts in the object store'),
    click.argument('package', required=False, default='.'),
]

_SIGNING_OPTIONS = {
    "console": click.option('--console', is_flag=True, help='Build a console application (no -H=windowsgui)'),
    "certificate": click.option('--certificate', help='Signing certificate or identity'),
    "developer": click.option('--developer', help='Developer identity for the windows release package'),
    "password": click.option('--password', help='Password of the signing certificate'),
    "category": click.option('--category', help='App store category for the darwin release package'),
    "profile": click.option('--profile', help='Provisioning profile, must match the app ID on ios'),
    "keystore": click.option('--keystore', help='Keystore file, relative to the project root'),
    "keystore_pass": click.option('--keystore-pass', help='Password of the keystore'),
    "key_pass": click.option('--key-pass', help='Password of the signer key'),
}

_PLATFORM_OPTIONS = {
    "windows": ["console", "certificate", "developer", "password"],
    "darwin": ["category", "certificate", "profile"],
    "android": ["keystore", "keystore_pass", "key_pass"],
    "ios": ["certificate", "profile"],
}


def apply_options(options: List):
    def decorator(func):
        for option in reversed(options):
            func = option(func)
        return func
    return decorator


def platform_options(os_name: str) -> List:
    return [_SIGNING_OPTIONS[name] for name in _PLATFORM_OPTIONS.get(os_name, [])]


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def configure_verbosity(ctx: CrossContext, silent: bool, debug: bool, configured: Optional[str] = None):
    """Command flags win over the group flags, which win over the config file"""
    if debug or ctx.verbose:
        set_verbosity("debug")
    elif silent or ctx.quiet:
        set_verbosity("silent")
    elif configured:
        set_verbosity(configured)


def make_configuration(ctx: CrossContext, targets: List[str], opts: Dict[str, Any]):
    """
    Merges command line, config file, environment and FyneApp.toml values.

    Returns:
        (BuildConfiguration, per target image overrides)
    """
    work_dir = os.path.abspath(opts.get("work_dir") or os.getcwd())

    cm = ConfigManager()
    cm.load_configuration(ctx.config_file, project_root=Path(work_dir))
    runtime = {
        "engine": opts.get("engine"),
        "docker_registry": opts.get("docker_registry"),
        "namespace": opts.get("namespace"),
        "s3_path": opts.get("s3_path"),
        "size_limit": opts.get("size_limit"),
        "pull": True if opts.get("pull") else None,
        "cache_enabled": False if opts.get("no_cache") else None,
    }
    for key, value in runtime.items():
        if value is not None:
            cm.set(key, value)

    configured = cm.get("log_level") if cm.source_of("log_level") is not ConfigScope.DEFAULT else None
    configure_verbosity(ctx, opts.get("silent", False), opts.get("debug", False), configured)

    meta = load_app_metadata(Path(work_dir))
    config = BuildConfiguration(
        work_dir=work_dir,
        targets=targets,
        name=opts.get("name") or meta.name or os.path.basename(work_dir),
        package=opts.get("package") or ".",
        cache_dir=opts.get("cache_dir"),
        app_id=opts.get("app_id") or meta.app_id,
        app_version=opts.get("app_version") or meta.version or "1.0.0",
        app_build=opts.get("app_build") or meta.build or 1,
        icon=opts.get("icon") or meta.icon or DEFAULT_ICON_NAME,
        env=parse_pairs(list(opts.get("env") or []), "env"),
        ldflags=[f for f in opts.get("ldflags") or [] if f.strip()],
        tags=split_list(list(opts.get("tags") or [])),
        metadata=parse_pairs(list(opts.get("metadata") or []), "metadata"),
        strip_debug=not opts.get("no_strip_debug", False),
        console=opts.get("console", False),
        release=opts.get("release", False),
        debug=opts.get("debug", False) or ctx.verbose,
        certificate=opts.get("certificate"),
        developer=opts.get("developer"),
        password=opts.get("password"),
        profile=opts.get("profile"),
        keystore=opts.get("keystore"),
        keystore_pass=opts.get("keystore_pass"),
        key_pass=opts.get("key_pass"),
        category=opts.get("category"),
        engine=cm.get("engine"),
        image=opts.get("image"),
        docker_registry=cm.get("docker_registry"),
        pull=cm.get("pull"),
        cache_enabled=cm.get("cache_enabled"),
        namespace=cm.get("namespace"),
        s3_path=cm.get("s3_path"),
        size_limit=cm.get("size_limit"),
        upload_project=not opts.get("no_project_upload", False),
        download_result=not opts.get("no_result_download", False),
        strict_cache=cm.get("strict_cache"),
        pod_ready_timeout=cm.get("pod_ready_timeout"),
    )
    return config, dict(cm.images)


def format_size(size: Optional[int]) -> str:
    if size is None:
        return "-"
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return str(size)


def format_artifact_table(report: RunReport) -> Table:
    """Format deposited artifacts as a Rich table"""
    table = Table(title="Artifacts")
    table.add_column("Target", style="cyan", no_wrap=True)
    table.add_column("Artifact", style="green")
    table.add_column("Size", style="yellow", justify="right")
    table.add_column("Location", style="magenta")

    for artifact in report.artifacts:
        location = artifact.host_path if artifact.is_downloaded else f"s3://{artifact.remote_key}"
        table.add_row(artifact.target_id, artifact.file_name, format_size(artifact.size_bytes), location)
    return table


def run_build(ctx: CrossContext, targets: List[str], opts: Dict[str, Any],
              default_os: Optional[str] = None) -> int:
    config, image_overrides = make_configuration(ctx, targets, opts)
    orchestrator = CrossOrchestrator(image_overrides=image_overrides)
    report = orchestrator.run(config, default_os=default_os)

    if report.artifacts and not (opts.get("silent") or ctx.quiet):
        console.print(format_artifact_table(report))
    return 0


# ============================================================================
# HELP EXIT CODE
# ============================================================================

EXIT_USAGE = 2


def show_help(ctx: click.Context, param: click.Parameter, value: bool):
    """Prints the help text and exits with the usage exit code"""
    if not value or ctx.resilient_parsing:
        return
    click.echo(ctx.get_help(), color=ctx.color)
    ctx.exit(EXIT_USAGE)


class UsageExitMixin:
    """Makes ``--help`` exit with code 2 like any other usage outcome"""

    def get_help_option(self, ctx: click.Context):
        option = super().get_help_option(ctx)
        if option is not None:
            option.callback = show_help
        return option


class CrossCommand(UsageExitMixin, click.Command):
    pass


class CrossGroup(UsageExitMixin, click.Group):
    command_class = CrossCommand


# ============================================================================
# MAIN CLI GROUP
# ============================================================================

@click.group(cls=CrossGroup, context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="crossfyne")
@click.option('--config', '-c', type=click.Path(exists=True, dir_okay=False), help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.option('--quiet', '-q', is_flag=True, help='Quiet output')
@click.option('--log-level', default='INFO', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']))
@pass_context
def cli(ctx: CrossContext, config: Optional[str], verbose: bool, quiet: bool, log_level: str):
    """
    crossfyne - cross compile Fyne applications

    Builds and packages a Fyne application for linux, windows, darwin,
    freebsd, android, ios and web using toolchain images run by docker,
    podman or a Kubernetes cluster.
    """
    setup_logging(Path(config) if config else None, "DEBUG" if verbose else log_level)
    ctx.config_file = config
    ctx.verbose = verbose
    ctx.quiet = quiet


# ============================================================================
# BUILD COMMANDS
# ============================================================================

def _register_platform_command(os_name: str, summary: str, has_arch: bool):
    options = list(_COMMON_OPTIONS)
    if has_arch:
        options.insert(0, click.option('--arch', '-a', default=None,
                                       help='Comma separated architectures, "*" for all'))
    options = platform_options(os_name) + options

    @cli.command(os_name, help=summary)
    @apply_options(options)
    @pass_context
    def command(ctx: CrossContext, **opts):
        arch = opts.pop("arch", None)
        targets = [f"{os_name}/{a}" for a in split_list(arch)] if arch else [os_name]
        return run_build(ctx, targets, opts)

    return command


for _os_name, _summary, _has_arch in (
        ("linux", "Build and package a Fyne application for the linux OS", True),
        ("windows", "Build and package a Fyne application for the windows OS", True),
        ("darwin", "Build and package a Fyne application for the darwin OS", True),
        ("freebsd", "Build and package a Fyne application for the freebsd OS", True),
        ("android", "Build and package a Fyne application for the android OS", True),
        ("ios", "Build and package a Fyne application for the iOS OS (darwin hosts only)", False),
        ("web", "Build and package a Fyne application for the web", False)):
    _register_platform_command(_os_name, _summary, _has_arch)


@cli.command('build')
@click.option('--target', '-t', 'targets', multiple=True, required=True,
              help='Targets as os, os/arch or os/*; comma separated or repeated')
@apply_options(list(_SIGNING_OPTIONS.values()) + _COMMON_OPTIONS)
@pass_context
def build(ctx: CrossContext, targets, **opts):
    """Build several target OS/arch pairs in one run"""
    return run_build(ctx, split_list(list(targets)), opts)


# ============================================================================
# UTILITY COMMANDS
# ============================================================================

@cli.command('version')
def version():
    """Print the crossfyne version information"""
    click.echo(f"crossfyne version {__version__}")


@cli.command('list-targets')
@click.option('--format', '-f', 'output_format', default='table', type=click.Choice(['table', 'json', 'yaml']))
@click.option('--docker-registry', default='docker.io', help='Registry used to show image references')
def list_targets(output_format: str, docker_registry: str):
    """List the supported targets and their toolchain images"""
    tm = TargetManager()
    tm.initialize()

    rows = []
    for plan in tm.list_plans():
        for arch_plan in plan.architectures.values():
            rows.append({
                "os": plan.os,
                "arch": arch_plan.arch,
                "id": make_target_id(plan.os, arch_plan.arch, plan.single_id),
                "image": image_reference(arch_plan.image, docker_registry),
                "packaging": plan.packaging,
                "release_packaging": plan.release_packaging,
                "host": plan.host or "any",
                "app_id_required": plan.app_id_required,
            })

    if output_format == 'json':
        click.echo(json.dumps(rows, indent=2))
        return
    if output_format == 'yaml':
        click.echo(yaml.dump(rows, default_flow_style=False, sort_keys=False))
        return

    table = Table(title="Supported Targets")
    table.add_column("OS", style="cyan", no_wrap=True)
    table.add_column("Arch", style="green")
    table.add_column("Target ID", style="cyan")
    table.add_column("Image", style="magenta")
    table.add_column("Package", style="yellow")
    table.add_column("Host", style="yellow")
    for row in rows:
        package = row["packaging"]
        if row["release_packaging"]:
            package += f" / {row['release_packaging']} (release)"
        table.add_row(row["os"], row["arch"] or "-", row["id"], row["image"], package, row["host"])
    console.print(table)


@cli.command('darwin-sdk-extract')
@click.option('--xcode-path', required=True, type=click.Path(dir_okay=False),
              help='Path to the Command Line Tools for Xcode (.dmg)')
@click.option('--engine', type=click.Choice(['', 'docker', 'podman']), default='',
              help='Container engine [default: autodetect]')
@click.option('--pull/--no-pull', default=True, help='Pull the extractor image first')
@pass_context
def darwin_sdk_extract(ctx: CrossContext, xcode_path: str, engine: str, pull: bool):
    """Extract the macOS SDK from the Command Line Tools for Xcode package"""
    configure_verbosity(ctx, False, False)
    logger = get_logger(__name__)

    xcode_path = os.path.abspath(xcode_path)
    if not os.path.exists(xcode_path):
        raise MissingRequirementError(f"Command Line Tools for Xcode file {xcode_path!r} does not exist")
    if not xcode_path.endswith(".dmg"):
        raise MissingRequirementError("Command Line Tools for Xcode file must be in dmg format")

    sdk_dir = os.path.dirname(xcode_path)
    out_dir = os.path.join(sdk_dir, DARWIN_SDK_OUT_DIR)
    if os.path.exists(out_dir):
        raise MissingRequirementError(f"output dir {out_dir!r} already exists. Remove before continue")

    selected = make_engine(engine)
    if selected.is_kubernetes:
        raise BackendUnavailableError("the SDK extractor runs on a local engine only")

    logger.info(f"Extracting SDKs from {os.path.basename(xcode_path)!r}, please wait it could take a while...")
    run_sdk_extractor(selected, DARWIN_SDK_EXTRACT_IMAGE, sdk_dir, os.path.basename(xcode_path), pull=pull)
    logger.success(f"SDKs extracted to: {out_dir}")
    if not ctx.quiet:
        console.print(Panel(f"[bold green]{out_dir}[/bold green]", title="macOS SDK"))


# ============================================================================
# ENTRY POINT
# ============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Runs the CLI and maps outcomes to exit codes: 0 success, 1 build
    failure, 2 usage error or help shown.
    """
    try:
        result = cli.main(args=argv, prog_name="crossfyne", standalone_mode=False)
    except click.UsageError as e:
        e.show()
        return EXIT_USAGE
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except click.Abort:
        console.print("[red]Aborted[/red]")
        return 1
    except CrossBuildError as e:
        logger = get_logger(__name__)
        logger.error(e.message)
        if e.details:
            logger.debug(f"details: {e.details}")
        return 1
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
