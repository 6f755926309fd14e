"""Build configuration for tollgate_build.

Uses pydantic-settings to assemble one immutable BuildConfig per invocation.
Sources are layered, each overriding the previous one:

    defaults < .env.local < local-build.env < environment < CLI overrides

The core build variables keep the names used by the historical shell
tooling (DEVICE_ID, OPENWRT_VERSION, TOLLGATE_VERSION, RELEASE_CHANNEL,
BUILD_DIR, OUTPUT_DIR, REPO) so existing env files keep working.
Operational knobs use the TOLLGATE_ prefix.
"""

from collections.abc import Sequence
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Later files win.
DEFAULT_ENV_FILES: tuple[str, ...] = (".env.local", "local-build.env")


class BuildConfig(BaseSettings):
    """Immutable configuration for a single build invocation."""

    model_config = SettingsConfigDict(
        env_prefix="TOLLGATE_",
        env_file=DEFAULT_ENV_FILES,
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Core build identity
    device_id: str = Field(
        default="glinet_gl-mt6000",
        min_length=1,
        validation_alias=AliasChoices("device_id"),
        description="Image Builder profile / device identifier",
    )
    toolchain_version: str = Field(
        default="24.10.5",
        min_length=1,
        validation_alias=AliasChoices("toolchain_version", "openwrt_version"),
        description="OpenWrt release of the Image Builder",
    )
    firmware_version: str = Field(
        default="v0.0.1",
        validation_alias=AliasChoices("firmware_version", "tollgate_version"),
        description="TollGate firmware version",
    )
    release_channel: str = Field(
        default="stable",
        validation_alias=AliasChoices("release_channel"),
        description="Release channel of the custom package",
    )
    build_dir: Path = Field(
        default=Path("/tmp/tollgate-local-build"),
        validation_alias=AliasChoices("build_dir"),
        description="Working directory for toolchain and build outputs",
    )
    output_dir: Path = Field(
        default=Path("firmware"),
        validation_alias=AliasChoices("output_dir"),
        description="Directory receiving the final firmware artifact",
    )
    repo: str = Field(
        default="jpgaviria/tollgate-os",
        validation_alias=AliasChoices("repo"),
        description="GitHub repository used for remote builds",
    )

    # Inputs
    overlay_dir: Path = Field(
        default=Path("files"),
        description="File overlay copied into the image root filesystem",
    )
    manifest_path: Path | None = Field(
        default=None,
        description="Release manifest (defaults to <overlay>/etc/tollgate/release.json)",
    )
    device_catalog: Path | None = Field(
        default=None,
        description="Optional YAML file overriding device package lists",
    )
    package_name: str = Field(default="tollgate-wrt")
    package_filename: str = Field(default="tollgate-wrt.ipk")
    package_version: str | None = Field(
        default=None,
        description="Version written to the package index (defaults to firmware version)",
    )
    package_policy: Literal["optional", "required"] = Field(
        default="optional",
        description="Whether a missing custom package aborts the build",
    )

    # Toolchain resolution
    download_base_url: str = Field(default="https://downloads.openwrt.org")
    default_target: str = Field(default="mediatek/filogic")
    default_arch: str = Field(default="aarch64_cortex-a53")
    verify_toolchain_checksum: bool = Field(default=True)
    artifact_suffix: str = Field(default="sysupgrade.bin")

    # Execution
    container_runtime: str = Field(default="docker")
    container_image: str = Field(default="tollgate-builder")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    router_address: str = Field(
        default="192.168.1.1",
        description="Router address shown in flash instructions",
    )

    # Remote builds
    workflow: str = Field(default="build-tollgate.yml")
    workflow_ref: str = Field(default="main")
    github_api_url: str = Field(default="https://api.github.com")
    github_token: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("github_token", "gh_token"),
    )

    # Timeouts and retries (in seconds)
    probe_timeout: float = Field(default=30, gt=0)
    connect_timeout: float = Field(default=30, gt=0)
    fetch_timeout: float = Field(default=120, gt=0)
    fetch_retries: int = Field(default=3, ge=0, le=10)
    fetch_retry_delay: float = Field(default=5, ge=0)
    toolchain_download_timeout: float = Field(default=3600, ge=60)
    build_timeout: int = Field(default=3600, ge=60)
    poll_interval: float = Field(default=30, gt=0)
    max_wait: float = Field(
        default=7200,
        gt=0,
        description="Upper bound on remote job polling",
    )

    @property
    def effective_manifest_path(self) -> Path:
        """Return the release manifest path, derived from the overlay if unset."""
        if self.manifest_path is not None:
            return self.manifest_path
        return self.overlay_dir / "etc" / "tollgate" / "release.json"

    @property
    def effective_package_version(self) -> str:
        """Return the package version written to the local index."""
        if self.package_version:
            return self.package_version
        return self.firmware_version.lstrip("v") or "0.0.0"


def load_build_config(
    env_files: Sequence[str | Path] | None = None,
    **overrides: Any,
) -> BuildConfig:
    """Build the configuration once from all layered sources.

    Args:
        env_files: Env files in increasing priority; defaults to
            DEFAULT_ENV_FILES relative to the working directory.
        **overrides: Explicit values (e.g. CLI flags). None values are
            ignored so unset flags fall through to lower layers.

    Returns:
        Frozen BuildConfig instance.
    """
    explicit = {key: value for key, value in overrides.items() if value is not None}
    files = tuple(env_files) if env_files is not None else DEFAULT_ENV_FILES
    return BuildConfig(_env_file=files, **explicit)


def print_config_json(config: BuildConfig | None = None) -> str:
    """Render effective configuration as JSON.

    Args:
        config: Optional config instance; loads the default if not provided.

    Returns:
        JSON string of the effective configuration.
    """
    if config is None:
        config = load_build_config()
    return config.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_ENV_FILES",
    "BuildConfig",
    "load_build_config",
    "print_config_json",
]
