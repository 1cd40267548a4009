"""
Logging setup shared by the resolvers, the SDK and the CLI.
"""

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_HANDLER_NAME = "token_cost_guard.console"


def setup_logging(level: int = logging.INFO, format_string: Optional[str] = None) -> None:
    """
    Configure the root logger with a single stdout handler.

    Calling it again replaces the level and format instead of adding
    another handler.

    Args:
        level: Logging level for the root logger and handler
        format_string: Optional logging format, DEFAULT_FORMAT otherwise
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        if handler.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return the named logger; configuration comes from setup_logging."""
    return logging.getLogger(name)
