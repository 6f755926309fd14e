"""Tests for log.py module."""

import io
import logging

import pytest
from rich.console import Console
from rich.logging import RichHandler

from tollgate_build.log import configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_installs_rich_handler(self):
        """Should attach a RichHandler and set the level from a name."""
        handler = configure_logging("debug")

        root = logging.getLogger()
        assert isinstance(handler, RichHandler)
        assert handler in root.handlers
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_replaces_previous_handler(self):
        """Calling twice should leave a single RichHandler."""
        configure_logging()
        configure_logging(logging.WARNING)

        rich_handlers = [h for h in logging.getLogger().handlers if isinstance(h, RichHandler)]
        assert len(rich_handlers) == 1
        assert logging.getLogger().level == logging.WARNING

    def test_writes_to_console(self):
        """Should render records through the given console."""
        buffer = io.StringIO()
        configure_logging(console=Console(file=buffer, width=200))

        logging.getLogger("tollgate_build.test").info("Staged overlay %s", "files")

        assert "tollgate_build.test: Staged overlay files" in buffer.getvalue()
