"""
Console logging plus a ring buffer of recent records for /logs.

Records emitted while a proxy request is in flight are tagged with its
source URL, and records that close a request carry its outcome, so the
buffer can be read per request.
"""

from __future__ import annotations

import logging
import threading
import traceback
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Deque, Dict, Iterator, List, Tuple

_BUFFER_MAX = 2000
_buffer: Deque[Dict[str, object]] = deque(maxlen=_BUFFER_MAX)
_lock = threading.Lock()
_next_id = 1
_installed = False

# Source URL of the request being handled; copied into worker threads by to_thread
_current_url: ContextVar[str | None] = ContextVar("imgproxy_request_url", default=None)

_PROXY_LOGGERS = (
    "imgproxy.core.fetcher",
    "imgproxy.core.pipeline",
    "imgproxy.services.proxy_service",
)


@contextmanager
def request_context(url: str | None) -> Iterator[None]:
    """Tag every record logged inside the block with `url`."""
    token = _current_url.set(url)
    try:
        yield
    finally:
        _current_url.reset(token)


def _format_message(record: logging.LogRecord) -> str:
    message = record.getMessage()
    if record.exc_info:
        return f"{message}\n{''.join(traceback.format_exception(*record.exc_info))}".rstrip()
    if record.exc_text:
        return f"{message}\n{record.exc_text}".rstrip()
    return message


class _RequestLogHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        if record.name == "uvicorn.access":
            return
        global _next_id
        try:
            url = _current_url.get()
            outcome = getattr(record, "outcome", None)
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
            message = _format_message(record)
            tag = f" [{outcome}]" if outcome else ""
            with _lock:
                _buffer.append({
                    "id": _next_id,
                    "ts": ts,
                    "level": record.levelname,
                    "logger": record.name,
                    "url": url,
                    "outcome": outcome,
                    "message": message,
                    "line": f"{ts} {record.levelname}{tag} {record.name}: {message}",
                })
                _next_id += 1
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "INFO") -> None:
    """Give the root logger a console handler unless one is already set up."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    if any(not isinstance(h, _RequestLogHandler) for h in root_logger.handlers):
        return
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(console)


def install_log_buffer() -> None:
    global _installed
    if _installed:
        return
    handler = _RequestLogHandler(level=logging.INFO)
    for name in ("", "uvicorn", "uvicorn.error"):
        logger = logging.getLogger(name or None)
        if handler not in logger.handlers:
            logger.addHandler(handler)
    for name in _PROXY_LOGGERS:
        logger = logging.getLogger(name)
        if logger.getEffectiveLevel() > logging.INFO:
            logger.setLevel(logging.INFO)
    _installed = True


def get_log_entries(
    since_id: int | None,
    limit: int,
    url: str | None = None,
) -> Tuple[List[Dict[str, object]], int | None]:
    """Entries newer than `since_id`, optionally only those of one source URL."""
    with _lock:
        items = list(_buffer)
        newest = int(_buffer[-1]["id"]) if _buffer else None
    if since_id is not None:
        items = [entry for entry in items if int(entry["id"]) > since_id]
    if url:
        items = [entry for entry in items if entry.get("url") == url]
    if limit and len(items) > limit:
        items = items[-limit:]
    last_id = int(items[-1]["id"]) if items else newest
    return items, last_id


def clear_log_entries() -> None:
    global _next_id
    with _lock:
        _buffer.clear()
        _next_id = 1
