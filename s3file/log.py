"""Log sinks for the ``s3file`` logger.

The reader and writer only ever call ``logger.<level>(fmt, *args)``.  Where
those messages go is decided here: a stream, a file, a callback, or
nowhere.  By default nothing is installed and records propagate to the
root logger like any other library.
"""

from __future__ import annotations

import logging
from typing import IO, Any, Callable

logger = logging.getLogger("s3file")

LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL,
    "CRITICAL": logging.CRITICAL,
}

LogCallback = Callable[[Any, int, str], None]

_FORMAT = "%(levelname)s: %(filename)s(%(lineno)d): %(message)s"

_sink: logging.Handler | None = None


class CallbackHandler(logging.Handler):
    """Forward each formatted record to ``callback(user_data, levelno, msg)``."""

    def __init__(self, callback: LogCallback, user_data: Any = None) -> None:
        super().__init__()
        self.callback = callback
        self.user_data = user_data

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            self.callback(self.user_data, record.levelno, msg)
        except Exception:
            self.handleError(record)


def _install(handler: logging.Handler | None) -> None:
    global _sink
    if _sink is not None:
        logger.removeHandler(_sink)
        if isinstance(_sink, logging.FileHandler):
            _sink.close()
    _sink = handler
    if handler is None:
        logger.propagate = True
        return
    logger.addHandler(handler)
    logger.propagate = False


def set_loglevel(level: str | int) -> str:
    """Set the minimum level; return the name of the previous one."""
    previous = logging.getLevelName(logger.getEffectiveLevel())
    if isinstance(level, str):
        try:
            level = LEVELS[level.upper()]
        except KeyError:
            raise ValueError(f"unknown log level: {level!r}") from None
    logger.setLevel(level)
    return previous


def set_logfp(stream: IO[str] | None) -> None:
    """Send messages to *stream*; ``None`` silences the logger."""
    if stream is None:
        _install(logging.NullHandler())
        return
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(_FORMAT))
    _install(handler)


def get_logfp() -> IO[str] | None:
    if isinstance(_sink, logging.StreamHandler):
        return _sink.stream
    return None


def set_logfile(path: str) -> None:
    """Append messages to the file at *path*."""
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(_FORMAT))
    _install(handler)


def set_callback(callback: LogCallback | None, user_data: Any = None) -> None:
    if callback is None:
        _install(None)
        return
    handler = CallbackHandler(callback, user_data)
    handler.setFormatter(logging.Formatter("%(message)s"))
    _install(handler)


def reset() -> None:
    """Remove any installed sink and go back to propagating to the root."""
    _install(None)
    logger.setLevel(logging.NOTSET)
