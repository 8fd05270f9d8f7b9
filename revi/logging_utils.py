"""
Logging setup for revi.

Verbosity maps to a root log level; records go to stderr through rich so
they do not interleave badly with rendered diffs on stdout.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def level_for_verbosity(verbosity: int) -> int:
    """
    verbosity == 0 -> WARNING
    verbosity == 1 -> INFO
    verbosity >= 2 -> DEBUG
    """

    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(verbosity: int) -> None:
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=verbosity >= 2,
        show_path=False,
        markup=False,
    )
    logging.basicConfig(
        level=level_for_verbosity(verbosity),
        format="%(name)s: %(message)s",
        handlers=[handler],
        force=True,
    )
