# -*- coding: utf-8 -*-
"""
Process logging for the engine.

Severity routing (container platforms classify by stream):
- DEBUG..WARNING → STDOUT
- ERROR, CRITICAL → STDERR

Records go through a QueueHandler; a QueueListener thread owns the streams,
so a blocked stdout stalls that thread and never the event loop running the
sweeper and ledger transactions.
"""

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener
from typing import Optional

import config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Library loggers that are chatty at INFO
NOISY_LOGGERS = {
    "aiogram.event": logging.WARNING,
    "aiohttp.access": logging.WARNING,
    "asyncio": logging.WARNING,
}


class MaxLevelFilter(logging.Filter):
    """Pass records up to max_level (inclusive)"""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record):
        return record.levelno <= self.max_level


_log_listener: Optional[QueueListener] = None


def _resolve_level(level: Optional[str]) -> int:
    name = (level or config.LOG_LEVEL or "INFO").upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        print(f"WARNING: unknown LOG_LEVEL={name}, using INFO", file=sys.stderr)
        return logging.INFO
    return resolved


def setup_logging(level: Optional[str] = None) -> QueueListener:
    """
    Install the queue handler on the root logger and start the listener.

    Safe to call again (tests, reloads): the previous listener is stopped
    first. Must run before the first log line of the process.
    """
    global _log_listener
    stop_logging()

    root_level = _resolve_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(root_level)
    stdout_handler.addFilter(MaxLevelFilter(logging.WARNING))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    root_logger.addHandler(QueueHandler(queue.Queue()))
    _log_listener = QueueListener(
        root_logger.handlers[0].queue,
        stdout_handler,
        stderr_handler,
        respect_handler_level=True,
    )
    _log_listener.start()

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(noisy_level, root_level))

    atexit.unregister(stop_logging)
    atexit.register(stop_logging)
    return _log_listener


def stop_logging() -> None:
    """Flush and stop the listener thread (idempotent)"""
    global _log_listener
    if _log_listener is not None:
        _log_listener.stop()
        _log_listener = None
