"""Logging setup for the command line.

Library modules only create module-level loggers; the CLI calls
configure_logging() once to attach a rich console handler to the root
logger.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(name)s: %(message)s"


def configure_logging(
    level: str | int = logging.INFO,
    console: Console | None = None,
) -> logging.Handler:
    """Route log records through rich on stderr.

    Calling this again replaces the handler installed by a previous call.

    Args:
        level: Root log level name or number.
        console: Console to write to (defaults to a stderr console).

    Returns:
        The installed handler.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return handler


__all__ = ["configure_logging"]
