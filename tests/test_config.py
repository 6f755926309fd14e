"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from tollgate_build.config import BuildConfig, load_build_config, print_config_json

CORE_VARS = (
    "DEVICE_ID",
    "OPENWRT_VERSION",
    "TOLLGATE_VERSION",
    "RELEASE_CHANNEL",
    "BUILD_DIR",
    "OUTPUT_DIR",
    "REPO",
    "GH_TOKEN",
    "GITHUB_TOKEN",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in CORE_VARS:
        monkeypatch.delenv(name, raising=False)


class TestBuildConfig:
    """Test BuildConfig class."""

    def test_defaults(self) -> None:
        """BuildConfig should have sensible defaults."""
        config = load_build_config(env_files=())

        assert config.device_id == "glinet_gl-mt6000"
        assert config.toolchain_version == "24.10.5"
        assert config.firmware_version == "v0.0.1"
        assert config.release_channel == "stable"
        assert config.build_dir == Path("/tmp/tollgate-local-build")
        assert config.output_dir == Path("firmware")
        assert config.package_policy == "optional"
        assert config.github_token is None
        assert config.fetch_retries >= 0

    def test_core_env_names(self) -> None:
        """Core variables should keep their historical names."""
        with patch.dict(
            os.environ,
            {
                "DEVICE_ID": "linksys_e8450",
                "OPENWRT_VERSION": "23.05.5",
                "TOLLGATE_VERSION": "v0.1.0",
                "RELEASE_CHANNEL": "dev",
                "BUILD_DIR": "/tmp/tg-build",
            },
        ):
            config = load_build_config(env_files=())

        assert config.device_id == "linksys_e8450"
        assert config.toolchain_version == "23.05.5"
        assert config.firmware_version == "v0.1.0"
        assert config.release_channel == "dev"
        assert config.build_dir == Path("/tmp/tg-build")

    def test_prefixed_env(self) -> None:
        """Operational knobs should use the TOLLGATE_ prefix."""
        with patch.dict(
            os.environ,
            {
                "TOLLGATE_PACKAGE_POLICY": "required",
                "TOLLGATE_FETCH_RETRIES": "5",
                "TOLLGATE_LOG_LEVEL": "DEBUG",
            },
        ):
            config = load_build_config(env_files=())

        assert config.package_policy == "required"
        assert config.fetch_retries == 5
        assert config.log_level == "DEBUG"

    def test_token_aliases(self) -> None:
        """Either GH_TOKEN or GITHUB_TOKEN should provide the token."""
        with patch.dict(os.environ, {"GH_TOKEN": "ghp_secret"}):
            config = load_build_config(env_files=())

        assert config.github_token.get_secret_value() == "ghp_secret"
        assert "ghp_secret" not in print_config_json(config)

    def test_frozen(self) -> None:
        """BuildConfig should be immutable."""
        config = load_build_config(env_files=())
        with pytest.raises(ValidationError):
            config.device_id = "other"

    def test_invalid_policy(self) -> None:
        """Unknown package policies should be rejected."""
        with pytest.raises(ValidationError):
            load_build_config(env_files=(), package_policy="sometimes")

    def test_effective_manifest_path(self) -> None:
        """The manifest should default to the overlay's release.json."""
        config = load_build_config(env_files=(), overlay_dir=Path("/srv/files"))
        assert config.effective_manifest_path == Path(
            "/srv/files/etc/tollgate/release.json"
        )

        explicit = load_build_config(env_files=(), manifest_path=Path("/m.json"))
        assert explicit.effective_manifest_path == Path("/m.json")

    def test_effective_package_version(self) -> None:
        """The index version should derive from the firmware version."""
        assert load_build_config(env_files=()).effective_package_version == "0.0.1"
        config = load_build_config(env_files=(), package_version="1.2.3")
        assert config.effective_package_version == "1.2.3"


class TestLayering:
    """Test layered configuration sources."""

    def test_later_env_file_wins(self, tmp_path) -> None:
        """local-build.env should override .env.local."""
        first = tmp_path / ".env.local"
        first.write_text("DEVICE_ID=first_device\nOPENWRT_VERSION=23.05.5\n")
        second = tmp_path / "local-build.env"
        second.write_text("DEVICE_ID=second_device\n")

        config = load_build_config(env_files=[first, second])

        assert config.device_id == "second_device"
        assert config.toolchain_version == "23.05.5"

    def test_environment_beats_files(self, tmp_path) -> None:
        """Process environment should override env files."""
        env_file = tmp_path / "local-build.env"
        env_file.write_text("DEVICE_ID=file_device\n")

        with patch.dict(os.environ, {"DEVICE_ID": "env_device"}):
            config = load_build_config(env_files=[env_file])

        assert config.device_id == "env_device"

    def test_overrides_beat_environment(self) -> None:
        """Explicit overrides should win; None overrides are ignored."""
        with patch.dict(
            os.environ, {"DEVICE_ID": "env_device", "RELEASE_CHANNEL": "dev"}
        ):
            config = load_build_config(
                env_files=(), device_id="cli_device", release_channel=None
            )

        assert config.device_id == "cli_device"
        assert config.release_channel == "dev"

    def test_missing_env_files_ignored(self, tmp_path) -> None:
        """Absent env files should not be an error."""
        config = load_build_config(env_files=[tmp_path / "nope.env"])
        assert isinstance(config, BuildConfig)


class TestPrintConfigJson:
    """Test print_config_json function."""

    def test_valid_json(self) -> None:
        """print_config_json should return valid JSON."""
        data = json.loads(print_config_json(load_build_config(env_files=())))

        assert data["device_id"] == "glinet_gl-mt6000"
        assert data["package_policy"] == "optional"
        assert "build_timeout" in data
