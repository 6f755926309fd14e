"""Toolchain (OpenWrt Image Builder) management.

This module handles:
- Resolving a device to its target and toolchain archive URL
- Probing archive format candidates
- Downloading, verifying and extracting the toolchain
"""

from tollgate_build.toolchain.fetch import (
    DownloadError,
    ExtractionError,
    ToolchainUnavailableError,
    VerificationError,
    ensure_toolchain,
    validate_toolchain_root,
)
from tollgate_build.toolchain.resolve import (
    ArtifactResolver,
    build_toolchain_name,
    probe_url,
    resolve_target,
)

__all__ = [
    "ArtifactResolver",
    "DownloadError",
    "ExtractionError",
    "ToolchainUnavailableError",
    "VerificationError",
    "build_toolchain_name",
    "ensure_toolchain",
    "probe_url",
    "resolve_target",
    "validate_toolchain_root",
]
