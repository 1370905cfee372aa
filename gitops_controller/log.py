"""Logging setup for the controller."""

import logging

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "gitops_controller"


def configure_logging(level: str = "INFO", console: Console = None) -> logging.Logger:
    """Attach a rich handler to the package logger.

    Calling it again replaces the handler instead of stacking a second one.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False
    return logger
