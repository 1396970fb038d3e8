"""Logging configuration for the ``parley`` logger tree."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str = "INFO", log_file: str = "") -> None:
    """Attach a handler to the ``parley`` logger once; later calls only change the level."""
    global _configured
    root = logging.getLogger("parley")
    root.setLevel(level.upper())
    if _configured:
        return

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True
