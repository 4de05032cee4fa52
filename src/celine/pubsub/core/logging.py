from __future__ import annotations

import logging
import sys
from typing import IO, Iterable

from pythonjsonlogger import jsonlogger

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that flood the output at DEBUG.
NOISY_LOGGERS = ("aiomqtt",)


def configure_logging(
    level: str = "INFO",
    stream: IO[str] | None = None,
    noisy: Iterable[str] = NOISY_LOGGERS,
) -> logging.Handler:
    """
    Route all records to one JSON handler on the root logger.

    Loggers named in ``noisy`` never go below INFO, even when ``level`` is
    DEBUG. Returns the installed handler.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))

    # Replace rather than append so repeated calls don't duplicate output
    root.handlers = [handler]

    for name in noisy:
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))

    return handler
