"""Logging setup for the taskweave CLI.

Library modules only create loggers; handlers are installed here, once, by
the command line entry point.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_HANDLER_NAME = "taskweave-rich"


def setup_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Install a rich handler on the `taskweave` logger.

    Args:
        verbose: Log at DEBUG instead of INFO.
        console: Console to log to (default: a stderr console).
    """
    logger = logging.getLogger("taskweave")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=True,
        markup=False,
    )
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
