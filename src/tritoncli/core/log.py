"""Logging setup for the CLI: rich handler on stderr, level from -v or TRITON_LOG_LEVEL."""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

from tritoncli.core.constants import ENV_LOG_LEVEL

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


def resolve_level(verbose: bool = False) -> int:
    if verbose:
        return logging.DEBUG
    level = os.environ.get(ENV_LOG_LEVEL, "WARNING").upper()
    if level not in _LEVELS:
        level = "WARNING"
    return getattr(logging, level)


def configure_logging(verbose: bool = False) -> None:
    """Route the ``tritoncli`` logger tree to stderr."""
    root = logging.getLogger("tritoncli")
    root.setLevel(resolve_level(verbose))
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            show_time=verbose,
            show_path=verbose,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(handler)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
