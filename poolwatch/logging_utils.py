"""Process-wide logging setup for the refresh worker."""

from __future__ import annotations

import json
import logging
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Iterable

TEXT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "aiohttp.access")

_HANDLER_MARKER = "_poolwatch_stdout"

# attributes every LogRecord carries; anything else came in through ``extra=``
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class UTCTextFormatter(logging.Formatter):
    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT, datefmt=TEXT_DATEFMT)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        body: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            body.setdefault(key, value)
        if record.exc_info:
            body["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(body, ensure_ascii=False, separators=(",", ":"), default=str)


def _find_stdout_handler(root: logging.Logger) -> logging.StreamHandler | None:
    for handler in root.handlers:
        if getattr(handler, _HANDLER_MARKER, False) and isinstance(handler, logging.StreamHandler):
            return handler
    return None


def setup_stdout_logging(
    *,
    level: int | str = logging.INFO,
    json_output: bool = False,
    propagate_off: Iterable[str] = QUIET_LOGGERS,
) -> logging.StreamHandler:
    """Install (or reconfigure) the single stdout handler on the root logger.

    Calling it again only swaps level and formatter, so repeated setup never
    duplicates output.
    """

    root = logging.getLogger()
    root.setLevel(level)
    handler = _find_stdout_handler(root)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter() if json_output else UTCTextFormatter())
    for name in propagate_off:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler


class _WarningThrottle:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}

    def allow(self, key: str, interval: float) -> bool:
        now = time.monotonic()
        with self._lock:
            previous = self._last.get(key)
            if previous is not None and now - previous < interval:
                return False
            self._last[key] = now
            return True

    def clear(self) -> None:
        with self._lock:
            self._last.clear()


_throttle = _WarningThrottle()


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Log ``message`` as a warning unless ``key`` already warned within ``minutes``."""

    if not _throttle.allow(key, max(0.0, minutes) * 60.0):
        return False
    (logger or logging.getLogger()).warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    _throttle.clear()


__all__ = [
    "JsonFormatter",
    "UTCTextFormatter",
    "reset_warn_once_cache",
    "setup_stdout_logging",
    "warn_once_per",
]
