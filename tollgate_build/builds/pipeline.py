"""Local build pipeline.

This module provides the high-level local build API:
- run_local_build(): resolve, fetch, stage, index, build, locate, report
- obtain_custom_package(): manifest fetch with the configured policy

Every stage runs sequentially; the image-build tool is the only long
running step. Two concurrent invocations must use distinct build
directories.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from tollgate_build.builds.artifacts import (
    compute_file_hash,
    copy_artifact,
    generate_report,
    locate_artifact,
    write_report,
)
from tollgate_build.builds.overlay import compute_tree_hash, stage_overlay
from tollgate_build.builds.runner import (
    OutputCallback,
    ProcessRunner,
    SubprocessRunner,
    run_build,
)
from tollgate_build.packages.catalog import DeviceCatalog, load_device_catalog
from tollgate_build.packages.fetch import (
    Downloader,
    HttpxDownloader,
    RequiredPackageError,
    fetch_custom_package,
    verify_package,
)
from tollgate_build.packages.index import build_index
from tollgate_build.packages.sets import PackageSet, assemble_package_set
from tollgate_build.toolchain.fetch import ensure_toolchain
from tollgate_build.toolchain.resolve import ArtifactResolver, resolve_target
from tollgate_build.types import (
    ArtifactRef,
    BuildResult,
    FetchedPackage,
    IntegrityStatus,
    PackagePolicy,
    SkipReason,
    Skipped,
    TargetInfo,
    ToolchainArchive,
)

if TYPE_CHECKING:
    from tollgate_build.builds.environment import ExecutionEnvironment
    from tollgate_build.config import BuildConfig

logger = logging.getLogger(__name__)

LOCAL_PACKAGES_DIR = Path("packages") / "local"
REPORT_FILENAME = "build-report.json"


@dataclass
class CustomPackageOutcome:
    """What became of the custom package for one build."""

    package: FetchedPackage | None
    skipped: Skipped | None = None
    integrity: IntegrityStatus | None = None


@dataclass
class PipelineResult:
    """Everything a local build produced.

    Attributes:
        build: Result of the image-build tool run.
        target: Resolved hardware target.
        archive: Toolchain archive used.
        package_set: Packages passed to the tool.
        custom: Outcome of the custom package fetch.
        artifact: Artifact copied to the output directory (on success).
        report_path: Path of the JSON build report.
    """

    build: BuildResult
    target: TargetInfo
    archive: ToolchainArchive
    package_set: PackageSet
    custom: CustomPackageOutcome
    artifact: ArtifactRef | None = None
    report_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.build.succeeded and self.artifact is not None


def obtain_custom_package(
    manifest_path: Path,
    architecture: str,
    dest_dir: Path,
    downloader: Downloader,
    policy: PackagePolicy = PackagePolicy.OPTIONAL,
    package_name: str = "tollgate-wrt",
    filename: str = "tollgate-wrt.ipk",
    version: str = "0.0.0",
) -> CustomPackageOutcome:
    """Fetch and verify the custom package, applying the package policy.

    Under the optional policy a missing package or a hash mismatch degrades
    to a build without it. Under the required policy both are fatal.

    Raises:
        RequiredPackageError: If the policy is required and the package
            could not be provided intact.
    """
    result = fetch_custom_package(
        manifest_path,
        architecture,
        dest_dir,
        downloader,
        package_name=package_name,
        filename=filename,
        version=version,
    )

    if isinstance(result, Skipped):
        if policy == PackagePolicy.REQUIRED:
            raise RequiredPackageError(
                f"Required package {package_name} unavailable: "
                f"{result.reason.value} {result.detail}".strip(),
                reason=result.reason,
            )
        logger.warning("Building without %s (%s)", package_name, result.reason.value)
        return CustomPackageOutcome(package=None, skipped=result)

    integrity = verify_package(result)
    if integrity == IntegrityStatus.MISMATCH:
        result.local_path.unlink(missing_ok=True)
        if policy == PackagePolicy.REQUIRED:
            raise RequiredPackageError(
                f"Required package {package_name} failed hash verification",
                reason=SkipReason.INTEGRITY_MISMATCH,
            )
        logger.warning("Dropping %s after hash mismatch", package_name)
        return CustomPackageOutcome(
            package=None,
            skipped=Skipped(SkipReason.INTEGRITY_MISMATCH, str(result.declared_hash)),
            integrity=integrity,
        )

    return CustomPackageOutcome(package=result, integrity=integrity)


def _build_inputs(
    config: BuildConfig,
    environment: ExecutionEnvironment,
    target: TargetInfo,
    archive: ToolchainArchive,
    package_set: PackageSet,
    custom: CustomPackageOutcome,
    overlay_hash: str,
) -> dict[str, Any]:
    return {
        "device_id": config.device_id,
        "toolchain_version": config.toolchain_version,
        "firmware_version": config.firmware_version,
        "release_channel": config.release_channel,
        "environment": environment.name,
        "target": target.triple,
        "architecture": target.arch_packages,
        "toolchain_url": archive.url,
        "packages": package_set.tokens,
        "overlay_hash": overlay_hash,
        "custom_package": {
            "name": custom.package.name if custom.package else None,
            "version": custom.package.version if custom.package else None,
            "sha256": (
                compute_file_hash(custom.package.local_path) if custom.package else None
            ),
            "integrity": custom.integrity.value if custom.integrity else None,
            "skipped": custom.skipped.reason.value if custom.skipped else None,
        },
    }


def run_local_build(
    config: BuildConfig,
    environment: ExecutionEnvironment,
    client: httpx.Client,
    runner: ProcessRunner | None = None,
    downloader: Downloader | None = None,
    catalog: DeviceCatalog | None = None,
    on_output: OutputCallback | None = None,
) -> PipelineResult:
    """Run the complete local build pipeline.

    Args:
        config: Build configuration.
        environment: Where the image-build tool runs.
        client: HTTPX client for toolchain and package downloads.
        runner: Process runner (defaults to SubprocessRunner).
        downloader: Package downloader (defaults to HttpxDownloader).
        catalog: Device package catalog (defaults to config.device_catalog).
        on_output: Receives build tool output lines in real time.

    Returns:
        PipelineResult; check .succeeded.

    Raises:
        ToolchainUnavailableError: If the toolchain cannot be obtained.
        RequiredPackageError: If a required custom package is unavailable.
        EnvironmentUnavailableError: If the environment cannot run builds.
        OverlayStagingError: If the overlay cannot be staged.
        BuildExecutionError: If the tool cannot be started or times out.
    """
    if runner is None:
        runner = SubprocessRunner()
    if downloader is None:
        downloader = HttpxDownloader(
            client,
            connect_timeout=config.connect_timeout,
            total_timeout=config.fetch_timeout,
            retries=config.fetch_retries,
            retry_delay=config.fetch_retry_delay,
        )
    if catalog is None:
        catalog = load_device_catalog(config.device_catalog)

    build_dir = config.build_dir.resolve()
    logger.info(
        "Building %s (OpenWrt %s, TollGate %s, %s) in %s",
        config.device_id,
        config.toolchain_version,
        config.firmware_version,
        config.release_channel,
        build_dir,
    )

    # Resolve target and toolchain
    target = resolve_target(
        client,
        config.toolchain_version,
        config.device_id,
        default_target=config.default_target,
        default_arch=config.default_arch,
        base_url=config.download_base_url,
        timeout=config.probe_timeout,
    )
    resolver = ArtifactResolver(
        client,
        target,
        base_url=config.download_base_url,
        probe_timeout=config.probe_timeout,
    )
    archive = resolver.resolve(config.device_id, config.toolchain_version)

    # Fetch and extract toolchain
    toolchain_root = ensure_toolchain(
        client,
        archive,
        build_dir,
        verify_checksum=config.verify_toolchain_checksum,
        timeout=config.toolchain_download_timeout,
    )

    # File overlay
    files_dir = stage_overlay(config.overlay_dir, toolchain_root)
    overlay_hash = compute_tree_hash(files_dir)

    # Custom package and local index
    index_dir = toolchain_root / LOCAL_PACKAGES_DIR
    custom = obtain_custom_package(
        config.effective_manifest_path,
        target.arch_packages,
        index_dir,
        downloader,
        policy=PackagePolicy(config.package_policy),
        package_name=config.package_name,
        filename=config.package_filename,
        version=config.effective_package_version,
    )
    fetched = [custom.package] if custom.package else []
    build_index(fetched, index_dir)

    package_set = assemble_package_set(
        catalog.baseline,
        catalog.device_packages(config.device_id),
        custom=[p.name for p in fetched],
        remove=catalog.device_removals(config.device_id),
    )
    logger.info("Final package list: %s", package_set.joined)

    # Build
    environment.check_available(runner)
    environment.prepare(runner, build_dir / "container")
    build = run_build(
        package_set,
        files_dir,
        config.device_id,
        environment,
        toolchain_root,
        runner,
        log_path=build_dir / "build.log",
        on_output=on_output,
        artifact_suffix=config.artifact_suffix,
        timeout=config.build_timeout,
    )

    result = PipelineResult(
        build=build,
        target=target,
        archive=archive,
        package_set=package_set,
        custom=custom,
    )

    if build.succeeded and build.artifact_path is not None:
        located = locate_artifact(
            toolchain_root / "bin" / "targets", config.artifact_suffix
        )
        if located is not None:
            result.artifact = copy_artifact(located, config.output_dir.resolve())

    report = generate_report(
        result.artifact,
        build_inputs=_build_inputs(
            config, environment, target, archive, package_set, custom, overlay_hash
        ),
        extra_metadata={
            "succeeded": result.succeeded,
            "duration_seconds": round(build.duration_seconds, 1),
            "exit_code": build.exit_code,
            "error_kind": build.error_kind.value if build.error_kind else None,
            "error_message": build.error_message,
            "log_path": str(build.log_path),
            "built_artifact": str(build.artifact_path) if build.artifact_path else None,
        },
    )
    result.report_path = write_report(report, build_dir / REPORT_FILENAME)
    return result


__all__ = [
    "CustomPackageOutcome",
    "LOCAL_PACKAGES_DIR",
    "PipelineResult",
    "obtain_custom_package",
    "run_local_build",
]
