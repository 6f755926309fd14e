"""Artifact location and build reports.

This module handles:
- Finding the firmware image in a build output tree
- Determining its size and checksum
- Copying it to the output directory
- Generating a JSON build report
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tollgate_build.types import ArtifactRef

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_SUFFIX = "sysupgrade.bin"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class ArtifactNotFoundError(Exception):
    """Raised when no firmware artifact can be found where one is required."""

    def __init__(self, message: str, code: str = "artifact_not_found") -> None:
        super().__init__(message)
        self.code = code


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _size_by_stat(path: Path) -> int:
    return os.stat(path).st_size


def _size_by_seek(path: Path) -> int:
    with path.open("rb") as f:
        return f.seek(0, os.SEEK_END)


def file_size(path: Path) -> int | None:
    """Return the size of a file, trying stat first and seeking second.

    Returns:
        Size in bytes, or None if neither method works.
    """
    for method in (_size_by_stat, _size_by_seek):
        try:
            return method(path)
        except OSError as e:
            logger.debug("%s failed for %s: %s", method.__name__, path, e)
    return None


def find_candidates(output_tree: Path, suffix: str = DEFAULT_ARTIFACT_SUFFIX) -> list[Path]:
    """Return all files under output_tree ending with suffix, sorted by path."""
    if not output_tree.is_dir():
        return []
    return sorted(
        path for path in output_tree.rglob(f"*{suffix}") if path.is_file()
    )


def locate_artifact(
    output_tree: Path,
    suffix: str = DEFAULT_ARTIFACT_SUFFIX,
    with_hash: bool = True,
) -> ArtifactRef | None:
    """Locate the firmware artifact in a build output tree.

    When several files match, the lexicographically first path is chosen
    and the ambiguity is logged as a warning.

    Args:
        output_tree: Directory to search recursively.
        suffix: Filename suffix identifying the firmware image.
        with_hash: Whether to compute the SHA-256 of the artifact.

    Returns:
        ArtifactRef, or None if no file matches.
    """
    candidates = find_candidates(output_tree, suffix)
    if not candidates:
        logger.info("No *%s found under %s", suffix, output_tree)
        return None

    chosen = candidates[0]
    ambiguous = len(candidates) > 1
    if ambiguous:
        logger.warning(
            "Found %d *%s files under %s, using %s",
            len(candidates),
            suffix,
            output_tree,
            chosen,
        )

    size_bytes = file_size(chosen)
    sha256 = compute_file_hash(chosen) if with_hash else None

    logger.info("Located artifact %s (%s bytes)", chosen, size_bytes)
    return ArtifactRef(
        path=chosen,
        size_bytes=size_bytes,
        sha256=sha256,
        ambiguous=ambiguous,
        candidates=candidates,
    )


def copy_artifact(artifact: ArtifactRef, output_dir: Path) -> ArtifactRef:
    """Copy an artifact into output_dir and return a reference to the copy."""
    output_dir.mkdir(parents=True, exist_ok=True)
    dest = output_dir / artifact.path.name
    if dest.resolve() != artifact.path.resolve():
        shutil.copy2(artifact.path, dest)
        logger.info("Copied %s to %s", artifact.path.name, output_dir)

    return ArtifactRef(
        path=dest,
        size_bytes=file_size(dest),
        sha256=artifact.sha256,
        ambiguous=artifact.ambiguous,
        candidates=artifact.candidates,
    )


def generate_report(
    artifact: ArtifactRef | None,
    build_inputs: dict[str, Any] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build report.

    Args:
        artifact: Located artifact, if any.
        build_inputs: Inputs that determined the build.
        extra_metadata: Optional additional metadata.

    Returns:
        Report dictionary suitable for JSON serialization.
    """
    report: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "artifact": None,
    }

    if artifact is not None:
        report["artifact"] = {
            "filename": artifact.path.name,
            "path": str(artifact.path),
            "size_bytes": artifact.size_bytes,
            "sha256": artifact.sha256,
            "ambiguous": artifact.ambiguous,
            "candidates": [str(c) for c in artifact.candidates],
        }
    if build_inputs:
        report["build_inputs"] = build_inputs
    if extra_metadata:
        report["metadata"] = extra_metadata

    return report


def write_report(report: dict[str, Any], output_path: Path) -> Path:
    """Write a report to a JSON file.

    Args:
        report: Report dictionary.
        output_path: Output file path.

    Returns:
        Path to the written file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, sort_keys=True, default=str)

    logger.info("Wrote build report to %s", output_path)
    return output_path


__all__ = [
    "DEFAULT_ARTIFACT_SUFFIX",
    "ArtifactNotFoundError",
    "compute_file_hash",
    "copy_artifact",
    "file_size",
    "find_candidates",
    "generate_report",
    "locate_artifact",
    "write_report",
]
