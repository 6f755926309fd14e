"""Toolchain resolution.

This module handles:
- Resolving a device identifier to its target/subtarget via profiles.json
- Building the canonical Image Builder name and download directory
- Probing candidate archive formats and selecting the first that exists
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from tollgate_build.types import ArchiveFormat, TargetInfo, ToolchainArchive

logger = logging.getLogger(__name__)

# Official OpenWrt download server base URL
OPENWRT_DOWNLOAD_BASE = "https://downloads.openwrt.org"

# Timeout for HEAD probes and small metadata requests (seconds)
HEAD_TIMEOUT = 30

# Priority order: primary format first, fallback last
DEFAULT_FORMATS: tuple[ArchiveFormat, ...] = (
    ArchiveFormat(extension=".tar.xz", compression="xz"),
    ArchiveFormat(extension=".tar.zst", compression="zstd"),
)

DEFAULT_TARGET = "mediatek/filogic"
DEFAULT_ARCH = "aarch64_cortex-a53"


def split_target(triple: str) -> tuple[str, str]:
    """Split 'target/subtarget' into its two parts.

    Args:
        triple: Target string such as 'mediatek/filogic'.

    Returns:
        Tuple of (target, subtarget).

    Raises:
        ValueError: If the string is not of the form 'target/subtarget'.
    """
    parts = triple.strip().strip("/").split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid target '{triple}', expected 'target/subtarget'")
    return parts[0], parts[1]


def release_base_path(
    version: str,
    target: TargetInfo,
    base_url: str = OPENWRT_DOWNLOAD_BASE,
) -> str:
    """Return the download directory for a release and target."""
    base_url = base_url.rstrip("/")
    if version.lower() == "snapshot":
        return f"{base_url}/snapshots/targets/{target.target}/{target.subtarget}"
    return f"{base_url}/releases/{version}/targets/{target.target}/{target.subtarget}"


def build_toolchain_name(version: str, target: TargetInfo) -> str:
    """Build the canonical Image Builder name (without archive extension).

    Args:
        version: OpenWrt release version (e.g. '24.10.5' or 'snapshot').
        target: Resolved target information.

    Returns:
        Name such as 'openwrt-imagebuilder-24.10.5-mediatek-filogic.Linux-x86_64'.
    """
    if version.lower() == "snapshot":
        return f"openwrt-imagebuilder-{target.target}-{target.subtarget}.Linux-x86_64"
    return (
        f"openwrt-imagebuilder-{version}-{target.target}-{target.subtarget}"
        ".Linux-x86_64"
    )


def _lookup_target(data: Any, device_id: str) -> tuple[str | None, str | None]:
    """Extract (target, arch_packages) for a device from a profiles.json document."""
    if not isinstance(data, dict):
        return None, None

    target: str | None = None
    profiles = data.get("profiles")
    if isinstance(profiles, dict):
        device = profiles.get(device_id)
        if isinstance(device, dict) and isinstance(device.get("target"), str):
            target = device["target"]
        elif device is None:
            logger.warning("Device %s not listed in profiles.json", device_id)

    if target is None and isinstance(data.get("target"), str):
        target = data["target"]

    arch = data.get("arch_packages")
    return target, arch if isinstance(arch, str) else None


def resolve_target(
    client: httpx.Client,
    version: str,
    device_id: str,
    default_target: str = DEFAULT_TARGET,
    default_arch: str = DEFAULT_ARCH,
    base_url: str = OPENWRT_DOWNLOAD_BASE,
    timeout: float = HEAD_TIMEOUT,
) -> TargetInfo:
    """Resolve a device to its target triple and package architecture.

    Reads profiles.json from the default target directory. Any network,
    HTTP or parse failure falls back to the configured defaults.

    Args:
        client: HTTPX client instance.
        version: OpenWrt release version.
        device_id: Image Builder profile name.
        default_target: Target used to locate profiles.json and as fallback.
        default_arch: Package architecture fallback.
        base_url: Base URL for OpenWrt downloads.
        timeout: Request timeout in seconds.

    Returns:
        TargetInfo for the device.
    """
    fallback_target, fallback_subtarget = split_target(default_target)
    fallback = TargetInfo(fallback_target, fallback_subtarget, default_arch)
    url = f"{release_base_path(version, fallback, base_url)}/profiles.json"

    logger.debug("Fetching profile information from %s", url)
    try:
        response = client.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPError as e:
        logger.warning("Could not fetch %s (%s), using %s", url, e, default_target)
        return fallback
    except ValueError as e:
        logger.warning("Invalid profiles.json at %s (%s), using defaults", url, e)
        return fallback

    target_str, arch = _lookup_target(data, device_id)
    if target_str is None:
        return TargetInfo(fallback.target, fallback.subtarget, arch or default_arch)

    try:
        target, subtarget = split_target(target_str)
    except ValueError:
        logger.warning("Ignoring malformed target '%s' in profiles.json", target_str)
        target, subtarget = fallback.target, fallback.subtarget

    info = TargetInfo(target, subtarget, arch or default_arch)
    logger.info("Target for %s: %s (%s)", device_id, info.triple, info.arch_packages)
    return info


def probe_url(client: httpx.Client, url: str, timeout: float = HEAD_TIMEOUT) -> bool:
    """Check whether a URL exists without transferring the body.

    A network error is treated as "does not exist".

    Args:
        client: HTTPX client instance.
        url: URL to probe.
        timeout: Request timeout in seconds.

    Returns:
        True if the server reports success for a HEAD request.
    """
    try:
        response = client.head(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as e:
        logger.debug("Probe of %s failed: %s", url, e)
        return False
    logger.debug("Probe of %s: %d", url, response.status_code)
    return response.is_success


class ArtifactResolver:
    """Resolves a device and toolchain version to a toolchain archive."""

    def __init__(
        self,
        client: httpx.Client,
        target: TargetInfo,
        base_url: str = OPENWRT_DOWNLOAD_BASE,
        formats: Sequence[ArchiveFormat] = DEFAULT_FORMATS,
        probe_timeout: float = HEAD_TIMEOUT,
    ) -> None:
        self.client = client
        self.target = target
        self.base_url = base_url
        self.formats = list(formats)
        self.probe_timeout = probe_timeout

    def resolve(self, device_id: str, toolchain_version: str) -> ToolchainArchive:
        """Select the first toolchain archive format that exists remotely.

        If every probe fails the last candidate is selected anyway, so a
        transient probe glitch surfaces at download time instead.

        Args:
            device_id: Device identifier (for logging).
            toolchain_version: OpenWrt release version.

        Returns:
            ToolchainArchive with a non-empty URL.

        Raises:
            ValueError: If inputs are empty or no formats are configured.
        """
        if not device_id or not toolchain_version:
            raise ValueError("device_id and toolchain_version must be non-empty")
        if not self.formats:
            raise ValueError("at least one archive format candidate is required")

        name = build_toolchain_name(toolchain_version, self.target)
        prefix = release_base_path(toolchain_version, self.target, self.base_url)

        selected = self.formats[-1]
        for fmt in self.formats:
            url = f"{prefix}/{name}{fmt.extension}"
            if probe_url(self.client, url, timeout=self.probe_timeout):
                selected = fmt
                break
        else:
            logger.warning(
                "No toolchain archive format probed successfully for %s, trying %s",
                device_id,
                selected.extension,
            )

        archive = ToolchainArchive(
            name=name,
            url=f"{prefix}/{name}{selected.extension}",
            format_candidates=list(self.formats),
            selected=selected,
            base_url=prefix,
        )
        logger.info("Resolved toolchain archive: %s", archive.url)
        return archive


__all__ = [
    "DEFAULT_ARCH",
    "DEFAULT_FORMATS",
    "DEFAULT_TARGET",
    "HEAD_TIMEOUT",
    "OPENWRT_DOWNLOAD_BASE",
    "ArtifactResolver",
    "build_toolchain_name",
    "probe_url",
    "release_base_path",
    "resolve_target",
    "split_target",
]
