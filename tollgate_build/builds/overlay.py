"""File overlay staging.

This module handles:
- Copying the overlay tree into the toolchain's FILES directory
- Computing a deterministic hash of the staged content for the build report

The staged directory is passed to the Image Builder via FILES=<path>.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import stat
from pathlib import Path

logger = logging.getLogger(__name__)

FILES_DIRNAME = "files"


class OverlayStagingError(Exception):
    """Raised when overlay staging fails."""

    def __init__(self, message: str, code: str = "overlay_staging_error") -> None:
        super().__init__(message)
        self.code = code


def _check_symlinks(source_dir: Path) -> None:
    root = source_dir.resolve()
    for link in (p for p in source_dir.rglob("*") if p.is_symlink()):
        target = link.resolve()
        if target != root and root not in target.parents:
            raise OverlayStagingError(
                f"Symlink {link} points outside the overlay: {target}",
                code="symlink_escape",
            )


def stage_directory(source_dir: Path, dest_dir: Path) -> None:
    """Copy a directory tree, replacing symlinks with their target content.

    Symlinks must resolve inside source_dir.

    Raises:
        OverlayStagingError: If a symlink leaves the tree or copying fails.
    """
    _check_symlinks(source_dir)
    try:
        shutil.copytree(source_dir, dest_dir, symlinks=False, dirs_exist_ok=True)
    except OSError as e:
        raise OverlayStagingError(
            f"Failed to stage directory {source_dir}: {e}",
            code="dir_stage_error",
        ) from e


def stage_overlay(
    source_dir: Path,
    toolchain_root: Path,
    dirname: str = FILES_DIRNAME,
) -> Path:
    """Stage the overlay into <toolchain_root>/<dirname>.

    The destination is recreated on every run. A missing source only logs a
    warning; the image is then built with an empty overlay.

    Args:
        source_dir: Overlay tree to copy.
        toolchain_root: Extracted Image Builder root.
        dirname: Name of the FILES directory inside the toolchain.

    Returns:
        Path to the staged directory.

    Raises:
        OverlayStagingError: If the source is not a directory or copying fails.
    """
    if source_dir.exists() and not source_dir.is_dir():
        raise OverlayStagingError(
            f"Overlay path is not a directory: {source_dir}",
            code="overlay_not_dir",
        )

    dest_dir = toolchain_root / dirname
    shutil.rmtree(dest_dir, ignore_errors=True)
    dest_dir.mkdir(parents=True)

    if source_dir.is_dir():
        stage_directory(source_dir, dest_dir)
        logger.info("Staged overlay %s into %s", source_dir, dest_dir)
    else:
        logger.warning("No overlay directory at %s, building without one", source_dir)
    return dest_dir


def compute_tree_hash(directory: Path) -> str:
    """Hash a directory tree by relative path, permission bits and content.

    A missing directory hashes like an empty one.
    """
    hasher = hashlib.sha256()
    files = sorted(p for p in directory.rglob("*") if p.is_file()) if directory.is_dir() else []
    for path in files:
        mode = stat.S_IMODE(path.stat().st_mode)
        digest = hashlib.sha256(path.read_bytes()).hexdigest()
        line = f"{path.relative_to(directory).as_posix()}\0{mode:o}\0{digest}\n"
        hasher.update(line.encode("utf-8"))
    return hasher.hexdigest()


__all__ = [
    "FILES_DIRNAME",
    "OverlayStagingError",
    "compute_tree_hash",
    "stage_directory",
    "stage_overlay",
]
