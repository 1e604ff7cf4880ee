"""Per-event-loop shared state."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_http_date(timestamp: Optional[float] = None) -> str:
    """Format a Unix timestamp (default: now) as an HTTP Date header value."""
    if timestamp is None:
        timestamp = time.time()
    t = time.gmtime(timestamp)
    return "%s, %02u %s %04u %02u:%02u:%02u GMT" % (
        _WEEKDAYS[t.tm_wday],
        t.tm_mday % 99,
        _MONTHS[t.tm_mon - 1],
        t.tm_year % 9999,
        t.tm_hour % 99,
        t.tm_min % 99,
        t.tm_sec % 99,
    )


class LoopData:
    """State shared by everything running on one event loop."""

    CORK_BUFFER_SIZE = 16 * 1024

    def __init__(self) -> None:
        self._defer_lock = threading.Lock()
        self._current_defer_queue = 0
        self._defer_queues: List[List[Callable[[], None]]] = [[], []]
        self._post_handlers: Dict[Any, Callable[[Any], None]] = {}
        self._pre_handlers: Dict[Any, Callable[[Any], None]] = {}

        self.date = ""
        self.no_mark = False

        self.cork_buffer = bytearray(self.CORK_BUFFER_SIZE)
        self.cork_offset = 0
        self.corked_socket: Any = None

        self.zlib_context: Any = None
        self.inflation_stream: Any = None
        self.deflation_stream: Any = None

        self.date_timer: Any = None
        self.update_date()

    def update_date(self, timestamp: Optional[float] = None) -> None:
        """Refresh the cached Date header value."""
        self.date = format_http_date(timestamp)