"""Diagnostic log sink selection.

A pool never touches process-wide logging state. The ``log`` option picks
which logger its components write to.
"""

import itertools
import logging
from typing import Callable, Union

PACKAGE_LOGGER = "codispool"

_instance_ids = itertools.count(1)


class CallableHandler(logging.Handler):
    """Logging handler that forwards formatted records to a plain function."""

    def __init__(self, sink: Callable[[str], None]):
        super().__init__()
        self.sink = sink

    def emit(self, record: logging.LogRecord):
        try:
            self.sink(self.format(record))
        except Exception:
            self.handleError(record)


def resolve_logger(log: Union[bool, Callable[[str], None]] = True) -> logging.Logger:
    """
    Build the logger a pool instance writes to.

    Args:
        log: ``True`` for the ``codispool`` logger hierarchy, ``False`` to
            silence the instance, or a callable that receives each message

    Returns:
        Logger for the instance
    """
    if log is True:
        return logging.getLogger(PACKAGE_LOGGER)

    # Private loggers are not registered with the logging manager, so they
    # never propagate to handlers configured by the application.
    name = f"{PACKAGE_LOGGER}.instance{next(_instance_ids)}"
    logger = logging.Logger(name, level=logging.DEBUG)
    logger.propagate = False

    if callable(log):
        handler = CallableHandler(log)
        handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        logger.addHandler(handler)
    else:
        logger.addHandler(logging.NullHandler())

    return logger
