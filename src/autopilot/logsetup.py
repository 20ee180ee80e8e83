from __future__ import annotations

import json
import logging
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

LOG_FILENAME = "autopilot.log"
RING_BUFFER_CAPACITY = 1000
CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# LogRecord attributes that are not caller-supplied ``extra`` fields.
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _component(record: logging.LogRecord) -> str:
    name = record.name
    if name.startswith("autopilot."):
        name = name[len("autopilot.") :]
    return name


def record_to_entry(record: logging.LogRecord) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
        "level": record.levelname.lower(),
        "component": _component(record),
        "message": record.getMessage(),
    }
    meta: dict[str, Any] = {}
    for key, value in vars(record).items():
        if key in _RESERVED_ATTRS:
            continue
        if key in {"phase", "step"}:
            entry[key] = value
        else:
            meta[key] = value
    if record.exc_info:
        meta["exception"] = logging.Formatter().formatException(record.exc_info)
    if meta:
        entry["meta"] = meta
    return entry


class JsonLinesFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(record_to_entry(record), ensure_ascii=False, default=str)


class RingBufferHandler(logging.Handler):
    """Keeps the most recent log entries in memory for live viewers."""

    def __init__(self, capacity: int = RING_BUFFER_CAPACITY, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.capacity = capacity
        self._entries: deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._entries.append(record_to_entry(record))
        except Exception:
            self.handleError(record)

    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


def configure_logging(
    log_dir: Path,
    *,
    verbose: bool = False,
    quiet: bool = False,
) -> RingBufferHandler:
    """Install file, console and in-memory handlers on the ``autopilot`` logger."""
    root = logging.getLogger("autopilot")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)
    root.propagate = False

    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JsonLinesFormatter())
    root.addHandler(file_handler)

    console = logging.StreamHandler()
    if quiet:
        console.setLevel(logging.ERROR)
    elif verbose:
        console.setLevel(logging.DEBUG)
    else:
        console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    ring = RingBufferHandler()
    root.addHandler(ring)
    return ring
