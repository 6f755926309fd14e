"""Tests for builds/runner.py module.

Tests build command composition and execution. A fake ProcessRunner
stands in for the Image Builder.
"""

import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from tollgate_build.builds.environment import ContainerEnvironment, HostEnvironment
from tollgate_build.builds.runner import (
    BuildExecutionError,
    SubprocessRunner,
    compose_make_command,
    run_build,
)
from tollgate_build.packages.sets import PackageSet
from tollgate_build.types import BuildErrorKind

SCENARIO_C_NAME = "openwrt-24.10.5-mediatek-filogic-glinet_gl-mt6000-squashfs-sysupgrade.bin"


class FakeRunner:
    """ProcessRunner that emits lines and optionally writes an image."""

    def __init__(
        self,
        exit_code: int = 0,
        lines: tuple[str, ...] = ("make[1]: Entering directory", "done"),
        produce: str | None = SCENARIO_C_NAME,
        error: Exception | None = None,
    ):
        self.exit_code = exit_code
        self.lines = lines
        self.produce = produce
        self.error = error
        self.calls: list[dict] = []
        self.output_root: Path | None = None

    def run(self, cmd, cwd=None, on_line=None, timeout=None):
        self.calls.append({"cmd": list(cmd), "cwd": cwd, "timeout": timeout})
        if self.error is not None:
            raise self.error
        for line in self.lines:
            if on_line is not None:
                on_line(line)
        if self.produce and self.output_root is not None:
            image = self.output_root / "bin" / "targets" / "mediatek" / "filogic" / self.produce
            image.parent.mkdir(parents=True, exist_ok=True)
            image.write_bytes(b"\x00" * 1024)
        return self.exit_code


@pytest.fixture
def toolchain(tmp_path) -> Path:
    root = tmp_path / "openwrt-imagebuilder"
    (root / "files").mkdir(parents=True)
    return root


@pytest.fixture
def package_set() -> PackageSet:
    return PackageSet(baseline=["base-files"], custom=["tollgate-wrt"], remove=["ppp"])


def make_runner(toolchain: Path, **kwargs) -> FakeRunner:
    runner = FakeRunner(**kwargs)
    runner.output_root = toolchain
    return runner


class TestComposeMakeCommand:
    """Tests for compose_make_command function."""

    def test_full(self, package_set):
        """Should pass profile, packages, overlay and verbosity."""
        cmd = compose_make_command("glinet_gl-mt6000", package_set, "files")
        assert cmd == [
            "make",
            "image",
            "PROFILE=glinet_gl-mt6000",
            "PACKAGES=base-files tollgate-wrt -ppp",
            "FILES=files",
            "V=s",
        ]

    def test_minimal(self):
        """Should omit empty packages and overlay."""
        cmd = compose_make_command("x", PackageSet(), None, verbose=False)
        assert cmd == ["make", "image", "PROFILE=x"]


class TestRunBuild:
    """Tests for run_build function."""

    def test_success(self, toolchain, package_set):
        """Should report success with the produced artifact."""
        runner = make_runner(toolchain)
        lines: list[str] = []

        result = run_build(
            package_set,
            toolchain / "files",
            "glinet_gl-mt6000",
            HostEnvironment(),
            toolchain,
            runner,
            on_output=lines.append,
        )

        assert result.succeeded is True
        assert result.exit_code == 0
        assert result.artifact_path.name == SCENARIO_C_NAME
        assert result.artifact_size_bytes == 1024
        assert result.error_kind is None
        assert lines == ["make[1]: Entering directory", "done"]
        assert runner.calls[0]["cwd"] == toolchain
        assert "FILES=files" in runner.calls[0]["cmd"]

    def test_log_captures_output(self, toolchain, package_set, tmp_path):
        """Should persist the command and every output line."""
        log_path = tmp_path / "logs" / "build.log"

        result = run_build(
            package_set,
            toolchain / "files",
            "glinet_gl-mt6000",
            HostEnvironment(),
            toolchain,
            make_runner(toolchain),
            log_path=log_path,
        )

        log = log_path.read_text()
        assert result.log_path == log_path
        assert "# Command: make image PROFILE=glinet_gl-mt6000" in log
        assert "make[1]: Entering directory\n" in log
        assert "# Exit code: 0" in log

    def test_exit_zero_without_artifact_fails(self, toolchain, package_set):
        """The missing artifact dominates a zero exit code."""
        result = run_build(
            package_set,
            toolchain / "files",
            "glinet_gl-mt6000",
            HostEnvironment(),
            toolchain,
            make_runner(toolchain, produce=None),
        )

        assert result.succeeded is False
        assert result.exit_code == 0
        assert result.error_kind == BuildErrorKind.NO_ARTIFACT
        assert "no artifact produced" in result.error_message
        assert result.artifact_path is None

    def test_nonzero_exit_fails(self, toolchain, package_set):
        """Should report a tool failure distinctly."""
        result = run_build(
            package_set,
            toolchain / "files",
            "glinet_gl-mt6000",
            HostEnvironment(),
            toolchain,
            make_runner(toolchain, exit_code=2),
        )

        assert result.succeeded is False
        assert result.exit_code == 2
        assert result.error_kind == BuildErrorKind.TOOL_FAILED
        assert "exit code 2" in result.error_message

    def test_stale_output_removed(self, toolchain, package_set):
        """An image from an earlier run must not count as success."""
        stale = toolchain / "bin" / "targets" / "x" / "old-sysupgrade.bin"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"old")

        result = run_build(
            package_set,
            toolchain / "files",
            "glinet_gl-mt6000",
            HostEnvironment(),
            toolchain,
            make_runner(toolchain, produce=None),
        )

        assert result.succeeded is False
        assert not stale.exists()

    def test_container_wrapping(self, toolchain, package_set):
        """Should run the wrapped command without a host cwd."""
        runner = make_runner(toolchain)

        result = run_build(
            package_set,
            toolchain / "files",
            "glinet_gl-mt6000",
            ContainerEnvironment(image="tollgate-builder", run_as_host_user=False),
            toolchain,
            runner,
        )

        assert result.succeeded is True
        cmd = runner.calls[0]["cmd"]
        assert cmd[:3] == ["docker", "run", "--rm"]
        assert "tollgate-builder" in cmd
        assert runner.calls[0]["cwd"] is None

    def test_timeout(self, toolchain, package_set):
        """Should raise BuildExecutionError on timeout."""
        runner = make_runner(
            toolchain, error=subprocess.TimeoutExpired(["make"], 60)
        )

        with pytest.raises(BuildExecutionError) as exc_info:
            run_build(
                package_set,
                None,
                "glinet_gl-mt6000",
                HostEnvironment(),
                toolchain,
                runner,
                timeout=60,
            )

        assert exc_info.value.code == "build_timeout"
        assert "TIMEOUT" in (toolchain / "build.log").read_text()

    def test_cannot_start(self, toolchain, package_set):
        """Should raise BuildExecutionError when the tool cannot start."""
        runner = make_runner(toolchain, error=FileNotFoundError("make"))

        with pytest.raises(BuildExecutionError) as exc_info:
            run_build(
                package_set, None, "p", HostEnvironment(), toolchain, runner
            )

        assert exc_info.value.code == "execution_error"

    def test_duration_uses_clock(self, toolchain, package_set):
        """Should measure the duration with the given clock."""
        ticks = iter([100.0, 142.5])

        result = run_build(
            package_set,
            None,
            "glinet_gl-mt6000",
            HostEnvironment(),
            toolchain,
            make_runner(toolchain),
            clock=lambda: next(ticks),
        )

        assert result.duration_seconds == pytest.approx(42.5)


class TestSubprocessRunner:
    """Tests for SubprocessRunner."""

    def test_streams_merged_output(self, tmp_path):
        """Should deliver stdout and stderr lines and the exit code."""
        lines: list[str] = []
        code = SubprocessRunner().run(
            [
                sys.executable,
                "-c",
                "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)",
            ],
            cwd=tmp_path,
            on_line=lines.append,
        )

        assert code == 3
        assert sorted(lines) == ["err", "out"]

    def test_timeout(self):
        """Should kill the process and raise TimeoutExpired."""
        with pytest.raises(subprocess.TimeoutExpired):
            SubprocessRunner().run(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                timeout=0.5,
            )

    def test_callback_error_reaps_process(self):
        """Should kill and wait for the child when the output callback raises."""
        started: list[subprocess.Popen] = []
        real_popen = subprocess.Popen

        def popen(*args, **kwargs):
            proc = real_popen(*args, **kwargs)
            started.append(proc)
            return proc

        def on_line(line: str) -> None:
            raise RuntimeError(f"console closed at {line!r}")

        with patch.object(subprocess, "Popen", side_effect=popen), pytest.raises(RuntimeError):
            SubprocessRunner().run(
                [sys.executable, "-u", "-c", "import time; print('go'); time.sleep(30)"],
                on_line=on_line,
            )

        assert len(started) == 1
        assert started[0].poll() is not None
