"""In-memory ring buffer of recent log records, served over HTTP.

Both the orchestrator and the sandbox agent attach a ``RingBufferHandler``
to the root logger at startup and expose ``GET /logs``, so recent activity
(including script ``console`` output, logged under
``chromevm.agent.script``) can be read without container log access.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone


def _record_to_dict(record: logging.LogRecord) -> dict:
    return {
        "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "name": record.name,
        "message": record.getMessage(),
    }


class RingBufferHandler(logging.Handler):
    """A logging.Handler that pushes records into a LogBuffer.

    Attach this to the root logger after ``logging.basicConfig()``::

        handler = RingBufferHandler(log_buffer)
        logging.getLogger().addHandler(handler)
    """

    def __init__(self, log_buffer: LogBuffer, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self._buffer = log_buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._buffer.push(_record_to_dict(record))
        except Exception:
            self.handleError(record)


class LogBuffer:
    """Bounded, thread-safe store of recent log entries."""

    def __init__(self, maxlen: int = 5_000) -> None:
        self._buffer: deque[dict] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def push(self, entry: dict) -> None:
        with self._lock:
            self._buffer.append(entry)

    def query(
        self,
        *,
        level: str | None = None,
        name: str | None = None,
        contains: str | None = None,
        limit: int = 200,
    ) -> list[dict]:
        """Matching entries, newest first.

        ``level`` is a minimum (``"WARNING"`` also returns errors), ``name``
        a logger-name prefix, ``contains`` a substring of the message.
        """
        level_num = logging.getLevelName(level.upper()) if level else None
        if not isinstance(level_num, int):
            level_num = None

        with self._lock:
            entries = list(self._buffer)

        results: list[dict] = []
        for entry in reversed(entries):
            if level_num is not None and logging.getLevelName(entry["level"]) < level_num:
                continue
            if name is not None and not entry["name"].startswith(name):
                continue
            if contains is not None and contains not in entry["message"]:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    @property
    def size(self) -> int:
        return len(self._buffer)

    @property
    def maxlen(self) -> int:
        return self._buffer.maxlen or 0

    def attach(self) -> RingBufferHandler:
        """Install a handler for this buffer on the root logger."""
        handler = RingBufferHandler(self)
        logging.getLogger().addHandler(handler)
        return handler

    def detach(self, handler: RingBufferHandler) -> None:
        logging.getLogger().removeHandler(handler)
