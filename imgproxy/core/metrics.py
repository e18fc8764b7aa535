"""
In-memory request counters for the proxy, exposed on /health/detailed.

One call per finished request; counters only grow until reset.
"""

from collections import Counter
from threading import Lock
from typing import Any, Dict, Optional

_lock = Lock()
_outcomes: Counter = Counter()
_statuses: Counter = Counter()
_formats: Counter = Counter()
_bytes_in = 0


def _status_class(status_code: int) -> str:
    return f"{status_code // 100}xx"


def record_request(
    outcome: str,
    status_code: int,
    output_format: Optional[str] = None,
    bytes_in: int = 0,
) -> None:
    """
    Count one finished request.

    `outcome` is "ok" or the error kind; `output_format` is only given for
    emitted images and `bytes_in` is the size of the fetched source.
    """
    global _bytes_in
    with _lock:
        _outcomes[outcome] += 1
        _statuses[_status_class(status_code)] += 1
        if output_format:
            _formats[output_format] += 1
        _bytes_in += max(0, bytes_in)


def get_proxy_metrics() -> Dict[str, Any]:
    with _lock:
        total = sum(_outcomes.values())
        return {
            "requests": total,
            "outcomes": dict(_outcomes),
            "statuses": dict(_statuses),
            "formats": dict(_formats),
            "bytes_in": _bytes_in,
            "error_rate": round((total - _outcomes["ok"]) / total, 4) if total else 0.0,
        }


def reset_proxy_metrics() -> None:
    global _bytes_in
    with _lock:
        _outcomes.clear()
        _statuses.clear()
        _formats.clear()
        _bytes_in = 0
