"""Logging wiring for the command-line entrypoint."""

from __future__ import annotations

import logging
import sys


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep deferq records; let other libraries through only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "deferq" or record.name.startswith("deferq."):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(level: int | str = logging.INFO, *, force: bool = False) -> None:
    """Configure the root logger with one stderr handler.

    Like ``logging.basicConfig``, leaves an already configured root logger
    alone unless ``force`` is set. Call this once, before the first record.
    """

    root = logging.getLogger()
    if root.handlers and not force:
        return
    root.setLevel(level)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    console.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(console)

    logging.captureWarnings(True)
