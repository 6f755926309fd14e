"""Execution environments for the image-build tool.

An environment decides how the `make image` invocation is wrapped:
directly on the host, or inside a disposable container that bind-mounts
the toolchain tree.
"""

from __future__ import annotations

import logging
import os
import shutil
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tollgate_build.builds.runner import ProcessRunner

logger = logging.getLogger(__name__)

CONTAINER_MOUNT_POINT = "/build"

# Build environment for the Image Builder (x86_64 glibc userland)
DOCKERFILE = """\
FROM ubuntu:22.04

RUN apt-get update && apt-get install -y \\
    build-essential \\
    file \\
    gawk \\
    gettext \\
    libncurses-dev \\
    libssl-dev \\
    python3 \\
    rsync \\
    unzip \\
    wget \\
    xsltproc \\
    xz-utils \\
    zlib1g-dev \\
    zstd \\
    && rm -rf /var/lib/apt/lists/*

WORKDIR /build
"""


class EnvironmentUnavailableError(Exception):
    """Raised when an execution environment cannot be used."""

    def __init__(self, message: str, code: str = "environment_unavailable") -> None:
        super().__init__(message)
        self.code = code


class ExecutionEnvironment(ABC):
    """Strategy wrapping the image-build tool invocation."""

    name: str = "abstract"

    @abstractmethod
    def wrap(self, cmd: Sequence[str], workdir: Path) -> tuple[list[str], Path | None]:
        """Return the argv to execute and the host working directory for it."""

    @abstractmethod
    def check_available(self, runner: ProcessRunner) -> None:
        """Raise EnvironmentUnavailableError if the environment cannot run builds."""

    def prepare(self, runner: ProcessRunner, context_dir: Path) -> None:
        """Perform one-time setup before the build (default: nothing)."""


class HostEnvironment(ExecutionEnvironment):
    """Runs the tool directly on the host inside the toolchain root."""

    name = "host"

    def __init__(self, make: str = "make") -> None:
        self.make = make

    def wrap(self, cmd: Sequence[str], workdir: Path) -> tuple[list[str], Path | None]:
        return list(cmd), workdir

    def check_available(self, runner: ProcessRunner) -> None:
        if shutil.which(self.make) is None:
            raise EnvironmentUnavailableError(f"'{self.make}' not found on PATH")


class ContainerEnvironment(ExecutionEnvironment):
    """Runs the tool in a throwaway container with the toolchain mounted.

    Args:
        image: Container image tag providing the build userland.
        runtime: Container runtime executable (docker, podman).
        mount_point: Path the toolchain root is mounted at.
        run_as_host_user: Run as the calling user so outputs stay writable.
    """

    name = "container"

    def __init__(
        self,
        image: str = "tollgate-builder",
        runtime: str = "docker",
        mount_point: str = CONTAINER_MOUNT_POINT,
        run_as_host_user: bool = True,
    ) -> None:
        self.image = image
        self.runtime = runtime
        self.mount_point = mount_point
        self.run_as_host_user = run_as_host_user

    def wrap(self, cmd: Sequence[str], workdir: Path) -> tuple[list[str], Path | None]:
        argv = [
            self.runtime,
            "run",
            "--rm",
            "-v",
            f"{workdir.resolve()}:{self.mount_point}",
            "-w",
            self.mount_point,
        ]
        if self.run_as_host_user and hasattr(os, "getuid"):
            argv += ["--user", f"{os.getuid()}:{os.getgid()}"]
        argv.append(self.image)
        argv.extend(cmd)
        return argv, None

    def check_available(self, runner: ProcessRunner) -> None:
        if shutil.which(self.runtime) is None:
            raise EnvironmentUnavailableError(f"'{self.runtime}' not found on PATH")
        try:
            exit_code = runner.run([self.runtime, "info"], on_line=logger.debug)
        except OSError as e:
            raise EnvironmentUnavailableError(
                f"Failed to query {self.runtime}: {e}"
            ) from e
        if exit_code != 0:
            raise EnvironmentUnavailableError(
                f"{self.runtime} is not running (exit code {exit_code})"
            )

    def prepare(self, runner: ProcessRunner, context_dir: Path) -> None:
        """Build the container image from the bundled Dockerfile."""
        context_dir.mkdir(parents=True, exist_ok=True)
        dockerfile = context_dir / "Dockerfile"
        dockerfile.write_text(DOCKERFILE, encoding="utf-8")

        logger.info("Building container image %s", self.image)
        exit_code = runner.run(
            [self.runtime, "build", "-t", self.image, "-f", str(dockerfile), str(context_dir)],
            on_line=logger.debug,
        )
        if exit_code != 0:
            raise EnvironmentUnavailableError(
                f"Failed to build container image {self.image} (exit code {exit_code})",
                code="container_image_error",
            )


__all__ = [
    "CONTAINER_MOUNT_POINT",
    "ContainerEnvironment",
    "EnvironmentUnavailableError",
    "ExecutionEnvironment",
    "HostEnvironment",
]
