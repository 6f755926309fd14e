"""Thin CLI wrapper for tollgate_build.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from pathlib import Path
from typing import Annotated, Any

import httpx
import typer
import yaml
from pydantic import ValidationError
from rich.console import Console

from tollgate_build import __version__
from tollgate_build.builds.artifacts import ArtifactNotFoundError
from tollgate_build.builds.environment import (
    ContainerEnvironment,
    EnvironmentUnavailableError,
    ExecutionEnvironment,
    HostEnvironment,
)
from tollgate_build.builds.overlay import OverlayStagingError
from tollgate_build.builds.pipeline import PipelineResult, run_local_build
from tollgate_build.builds.runner import BuildExecutionError
from tollgate_build.config import BuildConfig, load_build_config, print_config_json
from tollgate_build.log import configure_logging
from tollgate_build.packages.catalog import load_device_catalog
from tollgate_build.packages.fetch import RequiredPackageError
from tollgate_build.remote.driver import (
    RemoteBuildDriver,
    RemoteJobFailedError,
    RemoteProtocolError,
    RemoteTimeoutError,
)
from tollgate_build.remote.executor import GitHubActionsExecutor, RemoteExecutorError
from tollgate_build.toolchain.fetch import ToolchainUnavailableError
from tollgate_build.toolchain.resolve import ArtifactResolver, resolve_target
from tollgate_build.types import ArtifactRef, RemoteJob

app = typer.Typer(
    name="tollgate-build",
    help="TollGate OS firmware builder - local, containerized and remote builds",
    no_args_is_help=True,
)
console = Console()

DeviceOption = Annotated[
    str | None,
    typer.Option("--device", "-d", help="Device profile (e.g. glinet_gl-mt6000)"),
]
VersionOption = Annotated[
    str | None,
    typer.Option("--openwrt-version", "-o", help="OpenWrt release"),
]
ChannelOption = Annotated[
    str | None,
    typer.Option("--channel", "-c", help="TollGate release channel"),
]
BuildDirOption = Annotated[
    Path | None,
    typer.Option("--build-dir", help="Working directory for the build"),
]
OutputDirOption = Annotated[
    Path | None,
    typer.Option("--output-dir", help="Directory receiving the firmware"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"tollgate-build version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level (overrides TOLLGATE_LOG_LEVEL)"),
    ] = None,
) -> None:
    """TollGate OS firmware builder."""
    ctx.obj = {"log_level": log_level.upper() if log_level else None}


def _load_config(ctx: typer.Context, **overrides: Any) -> BuildConfig:
    """Load configuration from env files, environment and CLI flags."""
    log_level = (ctx.obj or {}).get("log_level")
    try:
        config = load_build_config(log_level=log_level, **overrides)
    except ValidationError as e:
        console.print("[red]Invalid configuration:[/red]")
        console.print(str(e))
        raise typer.Exit(code=1) from None
    configure_logging(config.log_level)
    return config


def _format_size(size_bytes: int | None) -> str:
    return f"{size_bytes} bytes" if size_bytes is not None else "unknown"


def _print_flash_instructions(firmware: Path, router_address: str) -> None:
    console.print()
    console.print("[bold blue]To flash to your router:[/bold blue]")
    console.print(f"  scp {firmware} root@{router_address}:/tmp/", highlight=False)
    console.print(
        f"  ssh root@{router_address} 'sysupgrade -n /tmp/{firmware.name}'",
        highlight=False,
    )


def _print_artifact(artifact: ArtifactRef) -> None:
    console.print(f"  Location: {artifact.path}")
    console.print(f"  Size:     {_format_size(artifact.size_bytes)}")
    if artifact.sha256:
        console.print(f"  SHA-256:  {artifact.sha256}")
    if artifact.ambiguous:
        console.print(
            f"[yellow]  {len(artifact.candidates)} images matched; "
            "picked the first in path order[/yellow]"
        )


def _echo_build_line(line: str) -> None:
    console.out(line, highlight=False)


@app.command()
def config(
    ctx: typer.Context,
    json_output: JsonOption = False,
) -> None:
    """Show effective configuration."""
    settings = _load_config(ctx)
    if json_output:
        console.print(print_config_json(settings), soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Device:              {settings.device_id}")
    console.print(f"  OpenWrt version:     {settings.toolchain_version}")
    console.print(f"  TollGate version:    {settings.firmware_version}")
    console.print(f"  Release channel:     {settings.release_channel}")
    console.print(f"  Package policy:      {settings.package_policy}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Build directory:     {settings.build_dir}")
    console.print(f"  Output directory:    {settings.output_dir}")
    console.print(f"  Overlay directory:   {settings.overlay_dir}")
    console.print(f"  Release manifest:    {settings.effective_manifest_path}")
    console.print()
    console.print("[bold]Remote:[/bold]")
    console.print(f"  Repository:          {settings.repo}")
    console.print(f"  Workflow:            {settings.workflow}@{settings.workflow_ref}")
    console.print(f"  Token configured:    {settings.github_token is not None}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Package fetch:       {settings.fetch_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Poll interval:       {settings.poll_interval}")
    console.print(f"  Max remote wait:     {settings.max_wait}")


@app.command()
def resolve(
    ctx: typer.Context,
    device_id: DeviceOption = None,
    openwrt_version: VersionOption = None,
    json_output: JsonOption = False,
) -> None:
    """Resolve the hardware target and Image Builder archive for a device."""
    settings = _load_config(
        ctx, device_id=device_id, toolchain_version=openwrt_version
    )

    with httpx.Client() as client:
        target = resolve_target(
            client,
            settings.toolchain_version,
            settings.device_id,
            default_target=settings.default_target,
            default_arch=settings.default_arch,
            base_url=settings.download_base_url,
            timeout=settings.probe_timeout,
        )
        resolver = ArtifactResolver(
            client,
            target,
            base_url=settings.download_base_url,
            probe_timeout=settings.probe_timeout,
        )
        archive = resolver.resolve(settings.device_id, settings.toolchain_version)

    if json_output:
        output = {
            "device_id": settings.device_id,
            "toolchain_version": settings.toolchain_version,
            "target": target.triple,
            "arch_packages": target.arch_packages,
            "archive": archive.name,
            "url": archive.url,
            "format": archive.selected.extension,
        }
        console.print(json.dumps(output, indent=2), soft_wrap=True)
        return

    console.print(f"[bold]{settings.device_id}[/bold] (OpenWrt {settings.toolchain_version})")
    console.print(f"  Target:       {target.triple}")
    console.print(f"  Architecture: {target.arch_packages}")
    console.print(f"  Archive:      {archive.name}{archive.selected.extension}")
    console.print(f"  URL:          {archive.url}", highlight=False)


build_app = typer.Typer(help="Build firmware images")
app.add_typer(build_app, name="build")


def _result_to_dict(result: PipelineResult) -> dict[str, Any]:
    build = result.build
    return {
        "succeeded": result.succeeded,
        "target": result.target.triple,
        "toolchain_url": result.archive.url,
        "packages": result.package_set.tokens,
        "custom_package": (
            result.custom.package.name if result.custom.package else None
        ),
        "custom_package_skipped": (
            result.custom.skipped.reason.value if result.custom.skipped else None
        ),
        "exit_code": build.exit_code,
        "duration_seconds": round(build.duration_seconds, 1),
        "error_kind": build.error_kind.value if build.error_kind else None,
        "error_message": build.error_message,
        "log_path": str(build.log_path),
        "artifact": str(result.artifact.path) if result.artifact else None,
        "artifact_size_bytes": result.artifact.size_bytes if result.artifact else None,
        "report_path": str(result.report_path) if result.report_path else None,
    }


def _remote_to_dict(job: RemoteJob, artifact: ArtifactRef) -> dict[str, Any]:
    return {
        "succeeded": True,
        "job_id": job.job_id,
        "conclusion": job.conclusion,
        "url": job.url,
        "artifact": str(artifact.path),
        "artifact_size_bytes": artifact.size_bytes,
    }


def _run_local(
    settings: BuildConfig,
    environment: ExecutionEnvironment,
    json_output: bool,
    quiet: bool,
) -> None:
    console.print(
        f"[blue]Building {settings.device_id} "
        f"(OpenWrt {settings.toolchain_version}, TollGate {settings.firmware_version}, "
        f"{settings.release_channel}) in {environment.name} environment...[/blue]"
    )
    on_output = None if quiet or json_output else _echo_build_line
    log_path = settings.build_dir.resolve() / "build.log"

    try:
        catalog = load_device_catalog(settings.device_catalog)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid device catalog {settings.device_catalog}:[/red]")
        console.print(str(e))
        raise typer.Exit(code=1) from None

    try:
        with httpx.Client() as client:
            result = run_local_build(
                settings, environment, client, catalog=catalog, on_output=on_output
            )
    except BuildExecutionError as e:
        console.print(f"[red]✗ Build failed: {e}[/red]")
        console.print(f"Check the build log: {log_path}")
        raise typer.Exit(code=1) from None
    except (
        ToolchainUnavailableError,
        RequiredPackageError,
        EnvironmentUnavailableError,
        OverlayStagingError,
    ) as e:
        console.print(f"[red]✗ Build failed: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps(_result_to_dict(result), indent=2), soft_wrap=True)
        if not result.succeeded:
            raise typer.Exit(code=1)
        return

    if not result.succeeded or result.artifact is None:
        message = result.build.error_message or "no firmware image produced"
        console.print(f"[red]✗ Build failed: {message}[/red]")
        console.print(f"Check the build log: {result.build.log_path}")
        raise typer.Exit(code=1)

    console.print(
        f"[green]✓ Firmware built in {result.build.duration_seconds:.0f} seconds[/green]"
    )
    _print_artifact(result.artifact)
    _print_flash_instructions(result.artifact.path, settings.router_address)
    console.print()
    console.print("[bold]Build summary:[/bold]")
    console.print(f"  Device:   {settings.device_id}")
    console.print(f"  OpenWrt:  {settings.toolchain_version}")
    console.print(f"  TollGate: {settings.firmware_version}")
    console.print(f"  Target:   {result.target.triple}")
    if result.custom.skipped is not None:
        console.print(
            f"[yellow]  Built without {settings.package_name} "
            f"({result.custom.skipped.reason.value})[/yellow]"
        )


@build_app.command("local")
def build_local(
    ctx: typer.Context,
    device_id: DeviceOption = None,
    openwrt_version: VersionOption = None,
    channel: ChannelOption = None,
    build_dir: BuildDirOption = None,
    output_dir: OutputDirOption = None,
    overlay_dir: Annotated[
        Path | None,
        typer.Option("--files", help="File overlay directory"),
    ] = None,
    policy: Annotated[
        str | None,
        typer.Option("--package-policy", help="optional or required"),
    ] = None,
    json_output: JsonOption = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Do not echo build tool output"),
    ] = False,
) -> None:
    """Build firmware with the Image Builder on this host."""
    settings = _load_config(
        ctx,
        device_id=device_id,
        toolchain_version=openwrt_version,
        release_channel=channel,
        build_dir=build_dir,
        output_dir=output_dir,
        overlay_dir=overlay_dir,
        package_policy=policy,
    )
    _run_local(settings, HostEnvironment(), json_output, quiet)


@build_app.command("docker")
def build_docker(
    ctx: typer.Context,
    device_id: DeviceOption = None,
    openwrt_version: VersionOption = None,
    channel: ChannelOption = None,
    build_dir: BuildDirOption = None,
    output_dir: OutputDirOption = None,
    overlay_dir: Annotated[
        Path | None,
        typer.Option("--files", help="File overlay directory"),
    ] = None,
    policy: Annotated[
        str | None,
        typer.Option("--package-policy", help="optional or required"),
    ] = None,
    image: Annotated[
        str | None,
        typer.Option("--image", help="Builder container image tag"),
    ] = None,
    json_output: JsonOption = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Do not echo build tool output"),
    ] = False,
) -> None:
    """Build firmware with the Image Builder inside a container."""
    settings = _load_config(
        ctx,
        device_id=device_id,
        toolchain_version=openwrt_version,
        release_channel=channel,
        build_dir=build_dir,
        output_dir=output_dir,
        overlay_dir=overlay_dir,
        package_policy=policy,
        container_image=image,
    )
    environment = ContainerEnvironment(
        image=settings.container_image,
        runtime=settings.container_runtime,
    )
    _run_local(settings, environment, json_output, quiet)


@build_app.command("remote")
def build_remote(
    ctx: typer.Context,
    device_id: DeviceOption = None,
    openwrt_version: VersionOption = None,
    channel: ChannelOption = None,
    output_dir: OutputDirOption = None,
    json_output: JsonOption = False,
    repo: Annotated[
        str | None,
        typer.Option("--repo", "-r", help="GitHub repository (owner/name)"),
    ] = None,
    poll_interval: Annotated[
        float | None,
        typer.Option("--poll-interval", help="Seconds between status checks"),
    ] = None,
    max_wait: Annotated[
        float | None,
        typer.Option("--max-wait", help="Give up after this many seconds"),
    ] = None,
) -> None:
    """Build firmware with GitHub Actions and download the result."""
    settings = _load_config(
        ctx,
        device_id=device_id,
        toolchain_version=openwrt_version,
        release_channel=channel,
        output_dir=output_dir,
        repo=repo,
        poll_interval=poll_interval,
        max_wait=max_wait,
    )
    if settings.github_token is None:
        console.print("[red]A GitHub token is required: set GH_TOKEN or GITHUB_TOKEN[/red]")
        raise typer.Exit(code=1)

    if not json_output:
        console.print(
            f"[blue]Triggering remote build of {settings.device_id} "
            f"(OpenWrt {settings.toolchain_version}, {settings.release_channel}) "
            f"on {settings.repo}...[/blue]"
        )

    with httpx.Client() as client:
        executor = GitHubActionsExecutor(
            client,
            token=settings.github_token.get_secret_value(),
            api_url=settings.github_api_url,
            workflow=settings.workflow,
            ref=settings.workflow_ref,
        )
        driver = RemoteBuildDriver(executor)

        try:
            job = driver.submit_and_wait(
                settings.repo,
                settings.device_id,
                settings.toolchain_version,
                settings.release_channel,
                poll_interval=settings.poll_interval,
                max_wait=settings.max_wait,
            )
        except (RemoteJobFailedError, RemoteTimeoutError) as e:
            if json_output:
                failure = {
                    "succeeded": False,
                    "job_id": e.job_id,
                    "conclusion": getattr(e, "conclusion", None),
                    "url": e.url,
                    "error_code": e.code,
                    "error_message": str(e),
                }
                console.print(json.dumps(failure, indent=2), soft_wrap=True)
                raise typer.Exit(code=1) from None
            console.print(f"[red]✗ Remote build failed: {e}[/red]")
            if e.url:
                console.print(f"Check the logs at: {e.url}", highlight=False)
            raise typer.Exit(code=1) from None
        except (RemoteProtocolError, RemoteExecutorError) as e:
            console.print(f"[red]✗ Remote build failed: {e}[/red]")
            raise typer.Exit(code=1) from None

        if not json_output:
            console.print(f"[green]✓ Remote build {job.job_id} completed[/green]")

        try:
            artifact = driver.download_artifacts(
                job, settings.output_dir.resolve(), suffix=settings.artifact_suffix
            )
        except (RemoteExecutorError, ArtifactNotFoundError) as e:
            console.print(f"[red]✗ Failed to retrieve firmware: {e}[/red]")
            if job.url:
                console.print(f"You can download it manually from: {job.url}", highlight=False)
            raise typer.Exit(code=1) from None

    if json_output:
        console.print(json.dumps(_remote_to_dict(job, artifact), indent=2), soft_wrap=True)
        return

    console.print("[green]✓ Firmware downloaded[/green]")
    _print_artifact(artifact)
    _print_flash_instructions(artifact.path, settings.router_address)


if __name__ == "__main__":
    app()
