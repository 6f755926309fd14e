"""Release manifest access.

The release manifest is an untrusted JSON document of the shape::

    {"modules": [{"versions": [{"architectures": {"<arch>": {"url": ..., "hash": ...}}}]}]}

Lookups never raise; they return a ManifestLookup whose state tells the
caller whether the entry is present, the key is absent, or the document is
unusable.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)


class LookupState(str, Enum):
    """Tri-state outcome of a manifest lookup (plus a missing file)."""

    PRESENT = "present"
    ABSENT_KEY = "absent_key"
    MALFORMED = "malformed"
    MISSING_FILE = "missing_file"


class ManifestEntry(BaseModel):
    """Download location and integrity hash for one architecture."""

    model_config = ConfigDict(extra="ignore")

    url: str | None = None
    hash: str | None = None
    version: str | None = None


@dataclass
class ManifestLookup:
    """Result of looking up an architecture in a release manifest."""

    state: LookupState
    entry: ManifestEntry | None = None
    detail: str = ""

    @property
    def present(self) -> bool:
        return self.state == LookupState.PRESENT


def load_manifest(path: Path) -> tuple[Any, ManifestLookup | None]:
    """Read and parse a manifest file.

    Args:
        path: Path to the manifest JSON file.

    Returns:
        Tuple of (parsed document, None) on success, or (None, lookup) where
        lookup describes why the document is unusable.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None, ManifestLookup(LookupState.MISSING_FILE, detail=str(path))
    except UnicodeDecodeError as e:
        return None, ManifestLookup(LookupState.MALFORMED, detail=f"not UTF-8: {e}")
    except OSError as e:
        return None, ManifestLookup(LookupState.MALFORMED, detail=str(e))

    try:
        return json.loads(text), None
    except (json.JSONDecodeError, RecursionError) as e:
        return None, ManifestLookup(LookupState.MALFORMED, detail=f"invalid JSON: {e}")


def _first(value: Any, key: str) -> Any:
    """Return value[key][0] if it is a non-empty list, else None."""
    if not isinstance(value, dict):
        return None
    items = value.get(key)
    if isinstance(items, list) and items:
        return items[0]
    return None


def lookup_architecture(document: Any, architecture: str) -> ManifestLookup:
    """Resolve modules[0].versions[0].architectures[architecture].

    Args:
        document: Parsed manifest document (any JSON value).
        architecture: Package architecture, e.g. 'aarch64_cortex-a53'.

    Returns:
        ManifestLookup; PRESENT only when the entry has a non-empty URL.
    """
    if not isinstance(document, dict):
        return ManifestLookup(LookupState.MALFORMED, detail="document is not an object")

    version = _first(_first(document, "modules"), "versions")
    if not isinstance(version, dict):
        return ManifestLookup(LookupState.MALFORMED, detail="no modules[0].versions[0]")

    architectures = version.get("architectures")
    if not isinstance(architectures, dict):
        return ManifestLookup(LookupState.MALFORMED, detail="no architectures mapping")

    raw = architectures.get(architecture)
    if not raw:
        return ManifestLookup(
            LookupState.ABSENT_KEY, detail=f"architecture {architecture} not listed"
        )

    try:
        entry = ManifestEntry.model_validate(raw)
    except ValidationError as e:
        return ManifestLookup(LookupState.MALFORMED, detail=str(e))

    if entry.version is None and isinstance(version.get("version"), str):
        entry = entry.model_copy(update={"version": version["version"]})

    if not entry.url:
        return ManifestLookup(
            LookupState.ABSENT_KEY, entry=entry, detail=f"no url for {architecture}"
        )
    return ManifestLookup(LookupState.PRESENT, entry=entry)


def lookup_manifest_file(path: Path, architecture: str) -> ManifestLookup:
    """Load a manifest file and look up an architecture in one step."""
    document, failure = load_manifest(path)
    if failure is not None:
        return failure
    return lookup_architecture(document, architecture)


__all__ = [
    "LookupState",
    "ManifestEntry",
    "ManifestLookup",
    "load_manifest",
    "lookup_architecture",
    "lookup_manifest_file",
]
