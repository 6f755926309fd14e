"""Shared type definitions for tollgate_build.

This module contains dataclasses, enums and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class PackagePolicy(str, Enum):
    """Whether the custom package is needed for a build to proceed."""

    OPTIONAL = "optional"
    REQUIRED = "required"


class SkipReason(str, Enum):
    """Why a custom package was not fetched."""

    MANIFEST_MISSING = "manifest_missing"
    MANIFEST_MALFORMED = "manifest_malformed"
    ARCHITECTURE_MISSING = "architecture_missing"
    URL_MISSING = "url_missing"
    DOWNLOAD_FAILED = "download_failed"
    INTEGRITY_MISMATCH = "integrity_mismatch"


class IntegrityStatus(str, Enum):
    """Outcome of checking a fetched package against its declared hash."""

    VERIFIED = "verified"
    MISMATCH = "mismatch"
    UNVERIFIED = "unverified"


class BuildErrorKind(str, Enum):
    """Distinguishes the ways a local build can fail."""

    TOOL_FAILED = "tool_failed"
    NO_ARTIFACT = "no_artifact"


class RemoteJobStatus(str, Enum):
    """Lifecycle states of a remote build job."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TargetInfo:
    """Hardware target a device profile resolves to."""

    target: str
    subtarget: str
    arch_packages: str

    @property
    def triple(self) -> str:
        """Return the 'target/subtarget' form used in download paths."""
        return f"{self.target}/{self.subtarget}"


@dataclass(frozen=True)
class ArchiveFormat:
    """One candidate archive format for the toolchain."""

    extension: str
    compression: str


@dataclass
class ToolchainArchive:
    """Resolved toolchain (Image Builder) archive reference."""

    name: str
    url: str
    format_candidates: list[ArchiveFormat]
    selected: ArchiveFormat
    base_url: str

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url must be provided")

    @property
    def filename(self) -> str:
        return self.url.rsplit("/", 1)[-1]


@dataclass
class FetchedPackage:
    """A custom package downloaded to local disk."""

    name: str
    local_path: Path
    declared_hash: str | None
    architecture: str
    size_bytes: int
    version: str = "0.0.0"


@dataclass(frozen=True)
class Skipped:
    """Non-error outcome of a package fetch that produced no file."""

    reason: SkipReason
    detail: str = ""


@dataclass
class ArtifactRef:
    """Reference to a located firmware artifact."""

    path: Path
    size_bytes: int | None
    sha256: str | None = None
    ambiguous: bool = False
    candidates: list[Path] = field(default_factory=list)


@dataclass
class BuildResult:
    """Terminal result of a local build.

    Attributes:
        succeeded: Whether a firmware artifact was produced.
        duration_seconds: Wall-clock duration of the tool invocation.
        log_path: Path to the persisted build log.
        exit_code: Exit code of the image-build tool.
        command: The command that was executed.
        artifact_path: Located artifact (required when succeeded).
        artifact_size_bytes: Artifact size if it could be determined.
        error_kind: Failure category when not succeeded.
        error_message: Human-readable failure description.
    """

    succeeded: bool
    duration_seconds: float
    log_path: Path
    exit_code: int
    command: str
    artifact_path: Path | None = None
    artifact_size_bytes: int | None = None
    error_kind: BuildErrorKind | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        if self.succeeded and (
            self.artifact_path is None or not self.artifact_path.exists()
        ):
            raise ValueError("a successful BuildResult requires an existing artifact")


@dataclass
class RemoteJob:
    """Snapshot of a remote build job as reported by the executor."""

    job_id: str
    status: str
    conclusion: str | None = None
    url: str | None = None
    repo: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == RemoteJobStatus.COMPLETED.value

    @property
    def succeeded(self) -> bool:
        return self.is_completed and self.conclusion == "success"


__all__ = [
    "ArchiveFormat",
    "ArtifactRef",
    "BuildErrorKind",
    "BuildResult",
    "FetchedPackage",
    "IntegrityStatus",
    "PackagePolicy",
    "RemoteJob",
    "RemoteJobStatus",
    "SkipReason",
    "Skipped",
    "TargetInfo",
    "ToolchainArchive",
]
