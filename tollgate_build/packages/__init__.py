"""Package handling module.

This module handles:
- Release manifest lookups for the custom TollGate package
- Fetching the package with retry and verifying its hash
- Writing the local package index
- Assembling the PACKAGES list for the Image Builder
"""

from tollgate_build.packages.catalog import DeviceCatalog, load_device_catalog
from tollgate_build.packages.fetch import (
    HttpxDownloader,
    PackageDownloadError,
    RequiredPackageError,
    fetch_custom_package,
    verify_package,
)
from tollgate_build.packages.index import build_index
from tollgate_build.packages.manifest import LookupState, lookup_architecture
from tollgate_build.packages.sets import PackageSet, assemble_package_set

__all__ = [
    "DeviceCatalog",
    "HttpxDownloader",
    "LookupState",
    "PackageDownloadError",
    "PackageSet",
    "RequiredPackageError",
    "assemble_package_set",
    "build_index",
    "fetch_custom_package",
    "load_device_catalog",
    "lookup_architecture",
    "verify_package",
]
