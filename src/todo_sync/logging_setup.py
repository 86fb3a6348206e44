"""Logging configuration for the command-line entry point."""

import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: Union[int, str] = logging.WARNING,
                      console: Optional[Console] = None) -> logging.Logger:
    """Route ``todo_sync`` loggers through a rich handler on stderr.

    Calling it again only changes the level.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    root = logging.getLogger("todo_sync")
    root.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)
    return root
