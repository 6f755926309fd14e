"""Toolchain fetch module.

This module handles:
- Download of the Image Builder archive with checksum verification
- Extraction of .tar.xz and .tar.zst archives into the build directory
- Reuse of an already extracted toolchain on re-runs
"""

from __future__ import annotations

import hashlib
import logging
import subprocess
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from tollgate_build.toolchain.resolve import HEAD_TIMEOUT
from tollgate_build.types import ToolchainArchive

logger = logging.getLogger(__name__)

# Seconds; Image Builder archives are several hundred MB
DOWNLOAD_TIMEOUT = 3600

DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Files and directories every Image Builder root contains
TOOLCHAIN_MARKERS = ("Makefile", "target", "packages")


class ToolchainError(Exception):
    """Base class for toolchain failures."""

    default_code = "toolchain_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class DownloadError(ToolchainError):
    """Raised when a toolchain download fails."""

    default_code = "download_error"


class VerificationError(ToolchainError):
    """Raised when a downloaded archive does not match its checksum."""

    default_code = "verification_error"


class ExtractionError(ToolchainError):
    """Raised when archive extraction fails."""

    default_code = "extraction_error"


class ToolchainUnavailableError(ToolchainError):
    """Raised when the toolchain cannot be obtained."""

    default_code = "toolchain_unavailable"


@dataclass
class DownloadResult:
    """A completed, verified download."""

    archive_path: Path
    checksum: str
    size_bytes: int


def _download_error(error: httpx.HTTPError, what: str) -> DownloadError:
    """Translate an httpx failure into a DownloadError with a stable code."""
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return DownloadError(
            f"{what} failed: HTTP {response.status_code} {response.reason_phrase}",
            code="http_error",
        )
    if isinstance(error, httpx.TimeoutException):
        return DownloadError(f"{what} timed out", code="timeout")
    return DownloadError(f"{what} failed: {error}", code="network_error")


def read_sha256sums(content: str) -> dict[str, str]:
    """Map file names to checksums from a sha256sums listing.

    Comment lines and lines that do not have two fields are ignored. A
    leading '*' (binary mode marker) is stripped from file names.
    """
    checksums: dict[str, str] = {}
    for raw in content.splitlines():
        fields = raw.strip().split(maxsplit=1)
        if len(fields) != 2 or fields[0].startswith("#"):
            continue
        digest, name = fields
        checksums[name.strip().lstrip("*")] = digest.lower()
    return checksums


def parse_sha256sums(content: str, archive_filename: str) -> str | None:
    """Return the checksum listed for archive_filename, or None."""
    return read_sha256sums(content).get(archive_filename)


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute the SHA-256 hex digest of a file."""
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Stream url to dest_path, verifying the checksum if one is given.

    The body is written to '<dest_path>.part' and only renamed into place
    once complete and verified, so dest_path never holds a partial or
    corrupt archive.

    Raises:
        DownloadError: If the request fails.
        VerificationError: If the checksum does not match.
    """
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    part_path = dest_path.with_name(dest_path.name + ".part")
    sha256 = hashlib.sha256()
    size = 0

    logger.info("Downloading %s", url)
    try:
        with client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()
            with part_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    size += len(chunk)
    except httpx.HTTPError as e:
        part_path.unlink(missing_ok=True)
        raise _download_error(e, f"Download of {url}") from e

    checksum = sha256.hexdigest()
    if expected_checksum and checksum != expected_checksum.lower():
        part_path.unlink(missing_ok=True)
        raise VerificationError(
            f"Checksum mismatch for {dest_path.name}: "
            f"expected {expected_checksum}, got {checksum}"
        )

    part_path.replace(dest_path)
    logger.info("Downloaded %s (%d bytes, sha256 %s)", dest_path.name, size, checksum[:16])
    return DownloadResult(archive_path=dest_path, checksum=checksum, size_bytes=size)


def fetch_checksums(
    client: httpx.Client,
    sha256sums_url: str,
    timeout: float = HEAD_TIMEOUT,
) -> str:
    """Fetch the text of a release sha256sums file.

    Raises:
        DownloadError: If the request fails.
    """
    logger.debug("Fetching checksums from %s", sha256sums_url)
    try:
        response = client.get(sha256sums_url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise _download_error(e, f"Fetching {sha256sums_url}") from e
    return response.text


def _extract_tar_xz(archive_path: Path, dest_dir: Path) -> None:
    with tarfile.open(archive_path, "r:xz") as tar:
        members = tar.getmembers()
        if not members:
            raise ExtractionError(f"Archive {archive_path} is empty", code="empty_archive")
        for member in members:
            parts = Path(member.name).parts
            if member.name.startswith("/") or ".." in parts:
                raise ExtractionError(
                    f"Refusing to extract {member.name}: path traversal detected",
                    code="path_traversal",
                )
        tar.extractall(dest_dir, filter="data")


def _extract_tar_zst(archive_path: Path, dest_dir: Path) -> None:
    # tarfile has no zstd support
    result = subprocess.run(
        ["tar", "--zstd", "-xf", str(archive_path.resolve()), "-C", str(dest_dir.resolve())],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise ExtractionError(
            f"tar failed on {archive_path.name}: {result.stderr.strip()}",
            code="tar_error",
        )


_EXTRACTORS: dict[str, Callable[[Path, Path], None]] = {
    ".tar.xz": _extract_tar_xz,
    ".tar.zst": _extract_tar_zst,
}


def _find_root(dest_dir: Path, expected_root: str | None) -> Path:
    if expected_root and (dest_dir / expected_root).is_dir():
        return dest_dir / expected_root

    candidates = sorted(
        d for d in dest_dir.iterdir() if d.is_dir() and d.name.startswith("openwrt-imagebuilder")
    )
    if len(candidates) > 1:
        logger.warning("Several toolchain roots in %s, using %s", dest_dir, candidates[0].name)
    return candidates[0] if candidates else dest_dir


def extract_archive(
    archive_path: Path,
    dest_dir: Path,
    expected_root: str | None = None,
) -> Path:
    """Extract a toolchain archive and return the toolchain root.

    Args:
        archive_path: A .tar.xz or .tar.zst archive.
        dest_dir: Directory to extract into.
        expected_root: Top-level directory name inside the archive.

    Returns:
        The expected root if it was extracted, otherwise the first
        'openwrt-imagebuilder*' directory, otherwise dest_dir.

    Raises:
        ExtractionError: If the format is unsupported or extraction fails.
    """
    name = archive_path.name.lower()
    extractor = next(
        (func for ext, func in _EXTRACTORS.items() if name.endswith(ext)), None
    )
    if extractor is None:
        raise ExtractionError(
            f"Unsupported archive format: {archive_path.name}",
            code="unsupported_format",
        )

    logger.info("Extracting %s into %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        extractor(archive_path, dest_dir)
    except tarfile.TarError as e:
        raise ExtractionError(f"Corrupt archive {archive_path.name}: {e}", code="tar_error") from e
    except OSError as e:
        raise ExtractionError(f"Cannot extract {archive_path.name}: {e}", code="os_error") from e

    return _find_root(dest_dir, expected_root)


def validate_toolchain_root(root_dir: Path) -> bool:
    """Return True if root_dir has the Image Builder layout."""
    makefile, *dirs = TOOLCHAIN_MARKERS
    return (root_dir / makefile).is_file() and all((root_dir / d).is_dir() for d in dirs)


def _archive_reusable(archive_path: Path, expected_checksum: str | None) -> bool:
    if not archive_path.is_file():
        return False
    if expected_checksum is None:
        return True
    return compute_file_sha256(archive_path) == expected_checksum


def ensure_toolchain(
    client: httpx.Client,
    archive: ToolchainArchive,
    build_dir: Path,
    verify_checksum: bool = True,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Make sure the toolchain is downloaded and extracted in build_dir.

    An extracted toolchain from an earlier run is reused as is. An archive
    left on disk is reused if it matches the release checksum.

    Args:
        client: HTTPX client instance.
        archive: Resolved toolchain archive.
        build_dir: Directory holding the archive and extracted tree.
        verify_checksum: Whether to verify against the release sha256sums.
        timeout: Download timeout in seconds.

    Returns:
        Path to the toolchain root directory.

    Raises:
        ToolchainUnavailableError: If the toolchain cannot be obtained.
    """
    build_dir.mkdir(parents=True, exist_ok=True)
    root_dir = build_dir / archive.name
    if validate_toolchain_root(root_dir):
        logger.info("Reusing extracted toolchain at %s", root_dir)
        return root_dir

    archive_path = build_dir / archive.filename
    try:
        expected: str | None = None
        if verify_checksum:
            listing = fetch_checksums(client, f"{archive.base_url}/sha256sums")
            expected = parse_sha256sums(listing, archive.filename)
            if expected is None:
                logger.warning("%s is not listed in sha256sums", archive.filename)

        if _archive_reusable(archive_path, expected):
            logger.info("Reusing downloaded archive %s", archive_path)
        else:
            download_file(
                client, archive.url, archive_path, expected_checksum=expected, timeout=timeout
            )

        root_dir = extract_archive(archive_path, build_dir, expected_root=archive.name)
    except (DownloadError, VerificationError, ExtractionError) as e:
        raise ToolchainUnavailableError(f"Toolchain {archive.name} unavailable: {e}") from e

    if not validate_toolchain_root(root_dir):
        raise ToolchainUnavailableError(
            f"Extracted toolchain at {root_dir} is not a valid Image Builder"
        )
    return root_dir


__all__ = [
    "DOWNLOAD_TIMEOUT",
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "ToolchainError",
    "ToolchainUnavailableError",
    "VerificationError",
    "compute_file_sha256",
    "download_file",
    "ensure_toolchain",
    "extract_archive",
    "fetch_checksums",
    "parse_sha256sums",
    "read_sha256sums",
    "validate_toolchain_root",
]
