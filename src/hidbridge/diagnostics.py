"""Diagnostic reporting: Python logging plus the host's log-sink callback.

Every component logs through a ``Reporter`` so each diagnostic line goes
to the module logger *and* to the ``on_log_message(text)`` sink the host
application renders.  A misbehaving sink is logged, never propagated
into the read/write paths.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

LogSink = Callable[[str], None]

# Longest payload dump forwarded per line
HEX_PREVIEW_BYTES = 64


def compose_hex(data: bytes, limit: int = HEX_PREVIEW_BYTES) -> str:
    """Hex dump of *data* for log lines, truncated after *limit* bytes."""
    if not data:
        return ""
    text = data[:limit].hex(" ")
    if len(data) > limit:
        text += f" … (+{len(data) - limit})"
    return text


class Reporter:
    """Fan-out of one diagnostic event to a logger and an optional sink."""

    def __init__(self, logger: logging.Logger, sink: Optional[LogSink] = None):
        self.logger = logger
        self.sink = sink

    def child(self, logger: logging.Logger) -> 'Reporter':
        """Same sink, different logger (one per module)."""
        return Reporter(logger, self.sink)

    def emit(self, level: int, msg: str, *args) -> None:
        self.logger.log(level, msg, *args)
        if self.sink is None:
            return
        try:
            self.sink(msg % args if args else msg)
        except Exception:
            self.logger.exception("Log sink raised; message dropped")

    def debug(self, msg: str, *args) -> None:
        self.emit(logging.DEBUG, msg, *args)

    def info(self, msg: str, *args) -> None:
        self.emit(logging.INFO, msg, *args)

    def warning(self, msg: str, *args) -> None:
        self.emit(logging.WARNING, msg, *args)

    def error(self, msg: str, *args) -> None:
        self.emit(logging.ERROR, msg, *args)
