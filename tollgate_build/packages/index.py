"""Local package repository index.

Writes a minimal opkg-style ``Packages`` index (and its gzip copy) that
describes locally fetched packages, so the Image Builder can install them
from ``packages/local``.
"""

from __future__ import annotations

import gzip
import logging
from collections.abc import Sequence
from pathlib import Path

from tollgate_build.types import FetchedPackage

logger = logging.getLogger(__name__)

INDEX_FILENAME = "Packages"
COMPRESSED_INDEX_FILENAME = "Packages.gz"
COMPRESSION_LEVEL = 9


def render_entry(package: FetchedPackage, filename_prefix: str) -> str:
    """Render one index record, fields in fixed order, blank line after.

    Args:
        package: Fetched package; its file must exist.
        filename_prefix: Directory prefix for the Filename field.

    Returns:
        The record text.

    Raises:
        FileNotFoundError: If the package file does not exist.
    """
    if not package.local_path.is_file():
        raise FileNotFoundError(f"Package file not found: {package.local_path}")

    filename = package.local_path.name
    if filename_prefix:
        filename = f"{filename_prefix.rstrip('/')}/{filename}"

    return (
        f"Package: {package.name}\n"
        f"Version: {package.version}\n"
        f"Architecture: {package.architecture}\n"
        f"Filename: {filename}\n"
        f"Size: {package.size_bytes}\n"
        "\n"
    )


def build_index(
    packages: Sequence[FetchedPackage],
    index_dir: Path,
    filename_prefix: str | None = None,
) -> Path:
    """Write Packages and Packages.gz for the given packages.

    Any previous index in index_dir is overwritten. An empty package list
    still produces both files.

    Args:
        packages: Fetched packages to describe.
        index_dir: Directory receiving the index (e.g. packages/local).
        filename_prefix: Prefix for Filename fields; defaults to the name
            of index_dir.

    Returns:
        Path to the plain index file.
    """
    index_dir.mkdir(parents=True, exist_ok=True)
    prefix = index_dir.name if filename_prefix is None else filename_prefix

    content = "".join(render_entry(p, prefix) for p in packages)

    index_path = index_dir / INDEX_FILENAME
    index_path.write_text(content, encoding="utf-8")

    compressed_path = index_dir / COMPRESSED_INDEX_FILENAME
    with gzip.open(compressed_path, "wb", compresslevel=COMPRESSION_LEVEL) as f:
        f.write(content.encode("utf-8"))

    logger.info("Wrote package index with %d entries to %s", len(packages), index_dir)
    return index_path


def read_index_names(index_path: Path) -> list[str]:
    """Return the package names listed in a plain index file."""
    names: list[str] = []
    for line in index_path.read_text(encoding="utf-8").splitlines():
        if line.startswith("Package: "):
            names.append(line.removeprefix("Package: ").strip())
    return names


__all__ = [
    "COMPRESSED_INDEX_FILENAME",
    "INDEX_FILENAME",
    "build_index",
    "read_index_names",
    "render_entry",
]
