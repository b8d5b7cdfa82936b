"""
Logging for the workflow engine.

Operators watch a Rich console; the file gets one JSON object per line.
Component events are logged as JSON messages through log_event, and the
file formatter lifts their fields to the top level so a session can be
followed by grepping its session_id.

File writes go through a QueueHandler so a slow disk never stalls the
event loop while a correlation wait or autosave is pending.
"""

from __future__ import annotations

import atexit
import logging
import queue
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener
from typing import Any, Dict, Optional, Set, Tuple

from rich.logging import RichHandler

from swapflow.core.json_utils import dumps, loads

# Events that repeat in bursts: a flapping broker or a backend that is down
# for the length of an autosave retry loop.
NOISY_EVENTS = frozenset({
    "transport_reconnect",
    "autosave_failed",
    "correlation_late_response",
})


def _as_event(message: str) -> Optional[Dict[str, Any]]:
    if not message.startswith("{"):
        return None
    try:
        data = loads(message)
    except ValueError:
        return None
    return data if isinstance(data, dict) and "event" in data else None


class JsonFormatter(logging.Formatter):
    """One JSON object per record; event fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        line: Dict[str, Any] = {
            "ts": record.created,
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": message,
        }
        event = _as_event(message)
        if event is not None:
            for key, value in event.items():
                line.setdefault(key, value)
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return dumps(line)


class ThrottledFilter(logging.Filter):
    """
    Lets the first of a burst through and drops repeats of the same noisy
    event for the same session until cooldown_sec has passed.
    """

    def __init__(self, cooldown_sec: float = 30.0, events: Optional[Set[str]] = None):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = set(NOISY_EVENTS if events is None else events)
        self._last: Dict[Tuple[str, str], float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        event = _as_event(record.getMessage())
        if event is None or event["event"] not in self.events:
            return True
        scope = str(event.get("session_id") or event.get("reference_id") or "")
        key = (event["event"], scope)
        previous = self._last.get(key)
        if previous is not None and record.created - previous < self.cooldown_sec:
            return False
        self._last[key] = record.created
        return True


def _console_handler(level: int, throttle: bool) -> logging.Handler:
    handler = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)
    if throttle:
        handler.addFilter(ThrottledFilter())
    return handler


def _file_handler(path: str, level: int, background: bool) -> logging.Handler:
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(JsonFormatter())
    file_handler.setLevel(level)
    if not background:
        return file_handler

    records: queue.Queue = queue.Queue(maxsize=10_000)
    listener = QueueListener(records, file_handler, respect_handler_level=True)
    listener.start()
    atexit.register(listener.stop)

    handler = QueueHandler(records)
    handler.setLevel(level)
    return handler


def build_logger(
    name: str = "swapflow",
    level: int = logging.INFO,
    file_path: Optional[str] = "swapflow.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure the engine logger once; later calls only change the level.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON log file, None for console only
        async_file: Write the file from a background listener thread
        throttle_warnings: Drop bursts of noisy events on the console
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    logger.addHandler(_console_handler(level, throttle_warnings))
    if file_path:
        logger.addHandler(_file_handler(file_path, level, async_file))
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "step_advanced", session_id=sid, step=3)
    """
    logger.log(level, dumps({"event": event, **data}))


def event_logger(logger: logging.Logger, level: int = logging.INFO, **context):
    """
    Bind a logger into the log_event(event, **kwargs) callback shape that
    components accept, with fixed context fields merged into every event.
    """
    def _emit(event: str, **kwargs) -> None:
        log_event(logger, event, level=level, **{**context, **kwargs})
    return _emit
