"""Tests for builds/overlay.py module.

Tests overlay staging into the toolchain and tree hashing.
"""

import os

import pytest

from tollgate_build.builds.overlay import (
    FILES_DIRNAME,
    OverlayStagingError,
    compute_tree_hash,
    stage_directory,
    stage_overlay,
)


@pytest.fixture
def overlay(tmp_path):
    """Create an overlay tree with a release manifest and a config file."""
    root = tmp_path / "files"
    (root / "etc" / "tollgate").mkdir(parents=True)
    (root / "etc" / "tollgate" / "release.json").write_text('{"modules": []}')
    (root / "etc" / "config").mkdir()
    (root / "etc" / "config" / "network").write_text("config interface 'lan'\n")
    return root


class TestStageOverlay:
    """Tests for stage_overlay function."""

    def test_copies_tree(self, tmp_path, overlay):
        """Should copy the overlay into <toolchain>/files."""
        toolchain = tmp_path / "ib"
        toolchain.mkdir()

        staged = stage_overlay(overlay, toolchain)

        assert staged == toolchain / FILES_DIRNAME
        assert (staged / "etc" / "tollgate" / "release.json").exists()
        assert (staged / "etc" / "config" / "network").read_text().startswith("config")

    def test_replaces_previous_content(self, tmp_path, overlay):
        """Should remove files staged by an earlier run."""
        toolchain = tmp_path / "ib"
        stale = toolchain / FILES_DIRNAME / "stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")

        stage_overlay(overlay, toolchain)

        assert not stale.exists()

    def test_missing_source(self, tmp_path):
        """Should stage an empty directory when there is no overlay."""
        toolchain = tmp_path / "ib"

        staged = stage_overlay(tmp_path / "nope", toolchain)

        assert staged.is_dir()
        assert list(staged.iterdir()) == []

    def test_source_is_file(self, tmp_path):
        """Should reject a source that is not a directory."""
        source = tmp_path / "files"
        source.write_text("x")

        with pytest.raises(OverlayStagingError) as exc_info:
            stage_overlay(source, tmp_path / "ib")
        assert exc_info.value.code == "overlay_not_dir"


class TestStageDirectory:
    """Tests for stage_directory function."""

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_internal_symlink_copied(self, tmp_path, overlay):
        """Should replace an in-tree symlink with its content."""
        (overlay / "link").symlink_to(overlay / "etc" / "config" / "network")
        dest = tmp_path / "dest"

        stage_directory(overlay, dest)

        assert not (dest / "link").is_symlink()
        assert (dest / "link").read_text().startswith("config")

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_escaping_symlink_rejected(self, tmp_path, overlay):
        """Should refuse symlinks that point outside the overlay."""
        outside = tmp_path / "secret"
        outside.write_text("secret")
        (overlay / "escape").symlink_to(outside)

        with pytest.raises(OverlayStagingError) as exc_info:
            stage_directory(overlay, tmp_path / "dest")
        assert exc_info.value.code == "symlink_escape"


class TestComputeTreeHash:
    """Tests for compute_tree_hash function."""

    def test_deterministic(self, overlay):
        """Should hash identical trees identically."""
        assert compute_tree_hash(overlay) == compute_tree_hash(overlay)

    def test_content_change(self, overlay):
        """Should change when file content changes."""
        before = compute_tree_hash(overlay)
        (overlay / "etc" / "config" / "network").write_text("changed")
        assert compute_tree_hash(overlay) != before

    def test_missing_directory(self, tmp_path):
        """Should hash a missing tree like an empty one."""
        empty = tmp_path / "empty"
        empty.mkdir()
        assert compute_tree_hash(tmp_path / "missing") == compute_tree_hash(empty)
