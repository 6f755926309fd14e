"""Custom package fetching.

This module handles:
- Downloading files with connect/total timeouts, bounded retry and resume
- Resolving the custom package from the release manifest and fetching it
- Checking the fetched file against the manifest's declared hash
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import httpx

from tollgate_build.packages.manifest import LookupState, lookup_manifest_file
from tollgate_build.types import FetchedPackage, IntegrityStatus, SkipReason, Skipped

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30
TOTAL_TIMEOUT = 120
RETRIES = 3
RETRY_DELAY = 5
CHUNK_SIZE = 64 * 1024

# HTTP statuses worth retrying (same set curl --retry treats as transient)
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

# Hex digest length -> algorithm, for hashes declared without a prefix
_DIGEST_LENGTHS = {32: "md5", 40: "sha1", 64: "sha256", 128: "sha512"}

# Fixed-length digests only; shake_* need an explicit output length
SUPPORTED_ALGORITHMS = frozenset(
    {
        "md5",
        "sha1",
        "sha224",
        "sha256",
        "sha384",
        "sha512",
        "sha3_224",
        "sha3_256",
        "sha3_384",
        "sha3_512",
        "blake2b",
        "blake2s",
    }
)

_SKIP_REASONS = {
    LookupState.MISSING_FILE: SkipReason.MANIFEST_MISSING,
    LookupState.MALFORMED: SkipReason.MANIFEST_MALFORMED,
    LookupState.ABSENT_KEY: SkipReason.ARCHITECTURE_MISSING,
}


class PackageDownloadError(Exception):
    """Raised when a package download fails."""

    def __init__(
        self,
        message: str,
        code: str = "download_error",
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class RequiredPackageError(Exception):
    """Raised when a required custom package could not be provided."""

    def __init__(
        self,
        message: str,
        reason: SkipReason | None = None,
        code: str = "required_package_missing",
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.code = code


class Downloader(Protocol):
    """Capability to download a URL to a local file."""

    def download(self, url: str, dest_path: Path) -> Path: ...


class HttpxDownloader:
    """Downloader with timeouts, bounded fixed-delay retry and resume.

    The first attempt always starts from an empty file. Retries continue
    from whatever the failed attempt left on disk using an HTTP Range
    request, and restart from zero if the server ignores the range.
    """

    def __init__(
        self,
        client: httpx.Client,
        connect_timeout: float = CONNECT_TIMEOUT,
        total_timeout: float = TOTAL_TIMEOUT,
        retries: int = RETRIES,
        retry_delay: float = RETRY_DELAY,
        chunk_size: int = CHUNK_SIZE,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.connect_timeout = connect_timeout
        self.total_timeout = total_timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.chunk_size = chunk_size
        self.sleep = sleep
        self.clock = clock

    def download(self, url: str, dest_path: Path) -> Path:
        """Download url to dest_path.

        Raises:
            PackageDownloadError: When all attempts fail or the failure is
                not retryable.
        """
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        attempts = self.retries + 1
        attempt = 1

        while True:
            try:
                self._download_once(url, dest_path, resume=attempt > 1)
                return dest_path
            except PackageDownloadError as e:
                if not e.retryable or attempt >= attempts:
                    raise
                logger.warning(
                    "Download attempt %d/%d of %s failed: %s; retrying in %ss",
                    attempt,
                    attempts,
                    url,
                    e,
                    self.retry_delay,
                )
                self.sleep(self.retry_delay)
                attempt += 1

    def _download_once(self, url: str, dest_path: Path, resume: bool) -> None:
        offset = dest_path.stat().st_size if resume and dest_path.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        timeout = httpx.Timeout(self.total_timeout, connect=self.connect_timeout)
        deadline = self.clock() + self.total_timeout

        try:
            with self.client.stream(
                "GET",
                url,
                headers=headers,
                timeout=timeout,
                follow_redirects=True,
            ) as response:
                if offset and response.status_code == 416:
                    logger.debug("%s already complete (%d bytes)", dest_path, offset)
                    return
                response.raise_for_status()

                mode = "ab" if offset and response.status_code == 206 else "wb"
                if offset and mode == "wb":
                    logger.debug("Server ignored range request, restarting %s", url)

                with dest_path.open(mode) as f:
                    for chunk in response.iter_bytes(self.chunk_size):
                        if self.clock() > deadline:
                            raise PackageDownloadError(
                                f"Download of {url} exceeded {self.total_timeout}s",
                                code="timeout",
                            )
                        f.write(chunk)

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise PackageDownloadError(
                f"HTTP error downloading {url}: {status} {e.response.reason_phrase}",
                code="http_error",
                retryable=status in RETRYABLE_STATUSES,
            ) from e
        except httpx.TimeoutException as e:
            raise PackageDownloadError(
                f"Timeout downloading {url}", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise PackageDownloadError(
                f"Network error downloading {url}: {e}", code="network_error"
            ) from e


def fetch_custom_package(
    manifest_path: Path,
    architecture: str,
    dest_dir: Path,
    downloader: Downloader,
    package_name: str = "tollgate-wrt",
    filename: str = "tollgate-wrt.ipk",
    version: str = "0.0.0",
) -> FetchedPackage | Skipped:
    """Fetch the custom package listed in the release manifest.

    A missing or malformed manifest, a missing architecture, a null URL and
    an exhausted download all yield Skipped rather than an exception.

    Args:
        manifest_path: Path to the release manifest JSON.
        architecture: Package architecture to look up.
        dest_dir: Directory receiving the package file.
        downloader: Downloader used for the transfer.
        package_name: Package name written to the index.
        filename: Local filename of the package.
        version: Fallback version when the manifest carries none.

    Returns:
        FetchedPackage on success, Skipped otherwise.
    """
    lookup = lookup_manifest_file(manifest_path, architecture)
    if not lookup.present:
        reason = _SKIP_REASONS[lookup.state]
        if lookup.entry is not None and not lookup.entry.url:
            reason = SkipReason.URL_MISSING
        logger.warning(
            "Skipping %s: %s (%s)", package_name, reason.value, lookup.detail
        )
        return Skipped(reason, lookup.detail)

    entry = lookup.entry
    if entry is None or not entry.url:
        return Skipped(SkipReason.URL_MISSING, lookup.detail)

    dest_path = dest_dir / filename
    logger.info("Downloading %s from %s", package_name, entry.url)

    try:
        downloader.download(entry.url, dest_path)
    except PackageDownloadError as e:
        logger.warning("Failed to download %s: %s", package_name, e)
        dest_path.unlink(missing_ok=True)
        return Skipped(SkipReason.DOWNLOAD_FAILED, str(e))

    if not dest_path.is_file():
        return Skipped(SkipReason.DOWNLOAD_FAILED, f"{dest_path} missing after download")

    package = FetchedPackage(
        name=package_name,
        local_path=dest_path,
        declared_hash=entry.hash,
        architecture=architecture,
        size_bytes=dest_path.stat().st_size,
        version=(entry.version or version).lstrip("v"),
    )
    logger.info("Downloaded %s (%d bytes)", dest_path.name, package.size_bytes)
    return package


def parse_declared_hash(declared: str | None) -> tuple[str, str] | None:
    """Split a declared hash into (algorithm, hex digest).

    Accepts 'algo:hex' and bare hex digests whose length identifies the
    algorithm.

    Returns:
        Tuple of (algorithm, lowercase digest), or None if unsupported.
    """
    if not declared:
        return None
    declared = declared.strip()
    if ":" in declared:
        algorithm, digest = declared.split(":", 1)
        algorithm = algorithm.lower().replace("-", "")
    else:
        digest = declared
        algorithm = _DIGEST_LENGTHS.get(len(declared), "")

    if algorithm not in SUPPORTED_ALGORITHMS or not digest:
        return None
    return algorithm, digest.lower()


def compute_file_digest(
    file_path: Path, algorithm: str = "sha256", chunk_size: int = CHUNK_SIZE
) -> str:
    """Compute a hex digest of a file with the given algorithm."""
    hasher = hashlib.new(algorithm)
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_package(package: FetchedPackage) -> IntegrityStatus:
    """Check a fetched package against its declared hash.

    Mismatches and packages that cannot be verified are logged as warnings.

    Returns:
        IntegrityStatus of the package.
    """
    parsed = parse_declared_hash(package.declared_hash)
    if parsed is None:
        logger.warning(
            "Cannot verify %s: no usable hash declared (%r)",
            package.name,
            package.declared_hash,
        )
        return IntegrityStatus.UNVERIFIED

    algorithm, expected = parsed
    actual = compute_file_digest(package.local_path, algorithm)
    if actual != expected:
        logger.warning(
            "Hash mismatch for %s: expected %s:%s, got %s",
            package.name,
            algorithm,
            expected,
            actual,
        )
        return IntegrityStatus.MISMATCH

    logger.info("Verified %s (%s)", package.name, algorithm)
    return IntegrityStatus.VERIFIED


__all__ = [
    "Downloader",
    "HttpxDownloader",
    "PackageDownloadError",
    "RequiredPackageError",
    "SUPPORTED_ALGORITHMS",
    "compute_file_digest",
    "fetch_custom_package",
    "parse_declared_hash",
    "verify_package",
]
