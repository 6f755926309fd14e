"""Build runner for executing the Image Builder.

This module handles:
- Composing the `make image` command from profile, packages and overlay
- Streaming the combined tool output to a log file and a callback
- Timing the invocation
- Deciding success from the produced artifact, not the exit code
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from tollgate_build.builds.artifacts import DEFAULT_ARTIFACT_SUFFIX, locate_artifact
from tollgate_build.builds.environment import ExecutionEnvironment
from tollgate_build.packages.sets import PackageSet
from tollgate_build.types import BuildErrorKind, BuildResult

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]


class BuildExecutionError(Exception):
    """Raised when the build tool cannot be run to completion."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class ProcessRunner(Protocol):
    """Capability to run an external process and stream its output."""

    def run(
        self,
        cmd: Sequence[str],
        cwd: Path | None = None,
        on_line: OutputCallback | None = None,
        timeout: float | None = None,
    ) -> int: ...


class SubprocessRunner:
    """ProcessRunner backed by subprocess, merging stderr into stdout."""

    def run(
        self,
        cmd: Sequence[str],
        cwd: Path | None = None,
        on_line: OutputCallback | None = None,
        timeout: float | None = None,
    ) -> int:
        """Run cmd, passing each output line to on_line.

        Raises:
            subprocess.TimeoutExpired: If the process outlives timeout.
            OSError: If the process cannot be started.
        """
        proc = subprocess.Popen(
            list(cmd),
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )

        timed_out = threading.Event()
        timer: threading.Timer | None = None
        if timeout is not None:

            def _kill() -> None:
                timed_out.set()
                proc.kill()

            timer = threading.Timer(timeout, _kill)
            timer.daemon = True
            timer.start()

        try:
            if proc.stdout is not None:
                for line in proc.stdout:
                    if on_line is not None:
                        on_line(line.rstrip("\n"))
            exit_code = proc.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            if proc.stdout is not None:
                proc.stdout.close()

        if timed_out.is_set():
            raise subprocess.TimeoutExpired(list(cmd), timeout or 0)
        return exit_code


def compose_make_command(
    profile: str,
    package_set: PackageSet,
    files_dir: str | Path | None = None,
    verbose: bool = True,
) -> list[str]:
    """Compose the `make image` command.

    Args:
        profile: Image Builder profile (device identifier).
        package_set: Packages to install or remove.
        files_dir: Overlay directory, relative to the toolchain root when
            possible so the command works inside a container.
        verbose: Pass V=s for full tool output.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = ["make", "image", f"PROFILE={profile}"]

    packages = package_set.joined
    if packages:
        cmd.append(f"PACKAGES={packages}")

    if files_dir:
        cmd.append(f"FILES={files_dir}")

    if verbose:
        cmd.append("V=s")

    return cmd


def _files_arg(files_dir: Path | None, toolchain_root: Path) -> str | None:
    if files_dir is None:
        return None
    try:
        return files_dir.resolve().relative_to(toolchain_root.resolve()).as_posix()
    except ValueError:
        return str(files_dir)


def run_build(
    package_set: PackageSet,
    files_dir: Path | None,
    profile: str,
    environment: ExecutionEnvironment,
    toolchain_root: Path,
    runner: ProcessRunner,
    log_path: Path | None = None,
    on_output: OutputCallback | None = None,
    artifact_suffix: str = DEFAULT_ARTIFACT_SUFFIX,
    timeout: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> BuildResult:
    """Run the image-build tool and check for the produced artifact.

    A zero exit code is not enough: the build only succeeds if a file
    ending with artifact_suffix exists under bin/targets afterwards.

    Args:
        package_set: Packages for PACKAGES=.
        files_dir: Staged overlay directory for FILES=.
        profile: Image Builder profile.
        environment: Execution environment wrapping the command.
        toolchain_root: Extracted Image Builder root.
        runner: Process runner.
        log_path: Log file (defaults to <toolchain_root>/build.log).
        on_output: Receives every output line in real time.
        artifact_suffix: Suffix identifying the firmware image.
        timeout: Build timeout in seconds (None = no timeout).
        clock: Monotonic clock used for the duration.

    Returns:
        BuildResult describing the outcome.

    Raises:
        BuildExecutionError: If the tool cannot be started or times out.
    """
    if log_path is None:
        log_path = toolchain_root / "build.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Stale images from an earlier run would fake a success
    output_tree = toolchain_root / "bin" / "targets"
    if output_tree.exists():
        logger.info("Removing previous output tree %s", output_tree)
        shutil.rmtree(output_tree)

    cmd = compose_make_command(profile, package_set, _files_arg(files_dir, toolchain_root))
    argv, cwd = environment.wrap(cmd, toolchain_root)
    cmd_str = shlex.join(argv)

    logger.info("Executing build (%s): %s", environment.name, cmd_str)
    logger.info("Log file: %s", log_path)

    started_at = datetime.now(timezone.utc)
    start = clock()

    with log_path.open("w", encoding="utf-8") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {cwd or toolchain_root}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        def _tee(line: str) -> None:
            log_file.write(line + "\n")
            if on_output is not None:
                on_output(line)

        try:
            exit_code = runner.run(argv, cwd=cwd, on_line=_tee, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
            message = f"Build timed out after {timeout} seconds"
            logger.error("%s. See log: %s", message, log_path)
            raise BuildExecutionError(message, exit_code=-1, code="build_timeout") from e
        except OSError as e:
            log_file.write(f"\n# Failed to execute: {e}\n")
            message = f"Failed to execute build: {e}"
            logger.error(message)
            raise BuildExecutionError(message, code="execution_error") from e

        duration = clock() - start
        log_file.write(f"\n# Finished: {datetime.now(timezone.utc).isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        log_file.write(f"# Duration: {duration:.1f}s\n")

    if exit_code != 0:
        message = f"Build failed with exit code {exit_code}"
        logger.error("%s. See log: %s", message, log_path)
        return BuildResult(
            succeeded=False,
            duration_seconds=duration,
            log_path=log_path,
            exit_code=exit_code,
            command=cmd_str,
            error_kind=BuildErrorKind.TOOL_FAILED,
            error_message=message,
        )

    artifact = locate_artifact(output_tree, artifact_suffix, with_hash=False)
    if artifact is None:
        message = (
            f"Build tool succeeded but no artifact produced "
            f"(no *{artifact_suffix} under {output_tree})"
        )
        logger.error("%s. See log: %s", message, log_path)
        return BuildResult(
            succeeded=False,
            duration_seconds=duration,
            log_path=log_path,
            exit_code=exit_code,
            command=cmd_str,
            error_kind=BuildErrorKind.NO_ARTIFACT,
            error_message=message,
        )

    logger.info("Build succeeded in %.1fs: %s", duration, artifact.path)
    return BuildResult(
        succeeded=True,
        duration_seconds=duration,
        log_path=log_path,
        exit_code=exit_code,
        command=cmd_str,
        artifact_path=artifact.path,
        artifact_size_bytes=artifact.size_bytes,
    )


__all__ = [
    "BuildExecutionError",
    "OutputCallback",
    "ProcessRunner",
    "SubprocessRunner",
    "compose_make_command",
    "run_build",
]
