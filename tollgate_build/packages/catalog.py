"""Baseline and device package catalog.

Ships the package lists TollGate OS images are built with and allows a
YAML file to extend or override them, e.g.::

    baseline:
      - base-files
      - busybox
    devices:
      glinet_gl-mt6000:
        packages: [kmod-usb3, kmod-mt7915e]
        packages_remove: [ppp]
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

BASELINE_PACKAGES: tuple[str, ...] = (
    "base-files",
    "busybox",
    "ca-bundle",
    "dnsmasq",
    "dropbear",
    "firewall4",
    "fstools",
    "kmod-gpio-button-hotplug",
    "kmod-leds-gpio",
    "libc",
    "libgcc",
    "libustream-mbedtls",
    "logd",
    "mtd",
    "netifd",
    "nftables",
    "odhcp6c",
    "opkg",
    "ppp",
    "ppp-mod-pppoe",
    "procd",
    "procd-seccomp",
    "procd-ujail",
    "swconfig",
    "uci",
    "uclient-fetch",
    "urandom-seed",
    "urngd",
    "openssh-sftp-server",
    "nodogsplash",
)

DEVICE_PACKAGES: dict[str, tuple[str, ...]] = {
    "glinet_gl-mt6000": (
        "e2fsprogs",
        "f2fsck",
        "mkf2fs",
        "kmod-usb3",
        "kmod-mt7915e",
        "kmod-mt7986-firmware",
        "mt7986-wo-firmware",
    ),
}


class DeviceEntrySchema(BaseModel):
    """Package selection for one device."""

    model_config = ConfigDict(extra="forbid")

    packages: list[str] = Field(default_factory=list)
    packages_remove: list[str] = Field(default_factory=list)


class DeviceCatalogSchema(BaseModel):
    """Schema of a device catalog YAML file."""

    model_config = ConfigDict(extra="forbid")

    baseline: list[str] | None = None
    devices: dict[str, DeviceEntrySchema] = Field(default_factory=dict)


class DeviceCatalog:
    """Resolved baseline and per-device package lists."""

    def __init__(
        self,
        baseline: list[str] | None = None,
        devices: dict[str, DeviceEntrySchema] | None = None,
    ) -> None:
        self.baseline = list(BASELINE_PACKAGES) if baseline is None else baseline
        self.devices = {
            device_id: DeviceEntrySchema(packages=list(packages))
            for device_id, packages in DEVICE_PACKAGES.items()
        }
        if devices:
            self.devices.update(devices)

    def device_packages(self, device_id: str) -> list[str]:
        entry = self.devices.get(device_id)
        if entry is None:
            logger.warning("No device-specific packages known for %s", device_id)
            return []
        return list(entry.packages)

    def device_removals(self, device_id: str) -> list[str]:
        entry = self.devices.get(device_id)
        return list(entry.packages_remove) if entry else []


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_device_catalog(path: Path | None = None) -> DeviceCatalog:
    """Build the device catalog, optionally merged with a YAML file.

    Args:
        path: Optional catalog file; built-in lists are used when None.

    Returns:
        DeviceCatalog instance.

    Raises:
        FileNotFoundError: If path is given but missing.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the file does not match the schema.
    """
    if path is None:
        return DeviceCatalog()

    schema = DeviceCatalogSchema.model_validate(load_yaml(path))
    logger.info("Loaded device catalog from %s", path)
    return DeviceCatalog(baseline=schema.baseline, devices=schema.devices)


__all__ = [
    "BASELINE_PACKAGES",
    "DEVICE_PACKAGES",
    "DeviceCatalog",
    "DeviceCatalogSchema",
    "DeviceEntrySchema",
    "load_device_catalog",
    "load_yaml",
]
