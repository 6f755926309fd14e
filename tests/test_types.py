"""Tests for shared types module."""

import pytest

from tollgate_build.types import (
    ArchiveFormat,
    BuildErrorKind,
    BuildResult,
    RemoteJob,
    RemoteJobStatus,
    TargetInfo,
    ToolchainArchive,
)


class TestEnums:
    """Test enum definitions."""

    def test_remote_job_status_values(self) -> None:
        """RemoteJobStatus should have the three lifecycle values."""
        assert [s.value for s in RemoteJobStatus] == ["queued", "in_progress", "completed"]

    def test_build_error_kind_values(self) -> None:
        """BuildErrorKind should distinguish tool failure and missing artifact."""
        assert BuildErrorKind.TOOL_FAILED.value == "tool_failed"
        assert BuildErrorKind.NO_ARTIFACT.value == "no_artifact"


class TestTargetInfo:
    """Test TargetInfo dataclass."""

    def test_triple(self) -> None:
        """triple should join target and subtarget."""
        assert TargetInfo("mediatek", "filogic", "aarch64_cortex-a53").triple == "mediatek/filogic"


class TestToolchainArchive:
    """Test ToolchainArchive dataclass."""

    def test_filename(self) -> None:
        """filename should be the last URL segment."""
        fmt = ArchiveFormat(".tar.zst", "zstd")
        archive = ToolchainArchive(
            name="openwrt-imagebuilder-24.10.5-mediatek-filogic.Linux-x86_64",
            url="https://example.org/x/openwrt-imagebuilder.tar.zst",
            format_candidates=[fmt],
            selected=fmt,
            base_url="https://example.org/x",
        )
        assert archive.filename == "openwrt-imagebuilder.tar.zst"

    def test_empty_url_rejected(self) -> None:
        """An archive reference must carry a URL."""
        fmt = ArchiveFormat(".tar.xz", "xz")
        with pytest.raises(ValueError):
            ToolchainArchive("n", "", [fmt], fmt, "https://example.org")


class TestBuildResult:
    """Test BuildResult dataclass."""

    def test_success_requires_artifact(self, tmp_path) -> None:
        """A successful result must point at an existing file."""
        with pytest.raises(ValueError):
            BuildResult(
                succeeded=True,
                duration_seconds=1.0,
                log_path=tmp_path / "build.log",
                exit_code=0,
                command="make image",
                artifact_path=tmp_path / "missing-sysupgrade.bin",
            )

    def test_failure_without_artifact(self, tmp_path) -> None:
        """A failed result needs no artifact."""
        result = BuildResult(
            succeeded=False,
            duration_seconds=1.0,
            log_path=tmp_path / "build.log",
            exit_code=0,
            command="make image",
            error_kind=BuildErrorKind.NO_ARTIFACT,
        )
        assert result.artifact_path is None


class TestRemoteJob:
    """Test RemoteJob dataclass."""

    def test_succeeded(self) -> None:
        """Only a completed job with conclusion success has succeeded."""
        assert RemoteJob("1", "completed", "success").succeeded is True
        assert RemoteJob("1", "completed", "failure").succeeded is False
        assert RemoteJob("1", "in_progress").succeeded is False
        assert RemoteJob("1", "completed", "failure").is_completed is True
