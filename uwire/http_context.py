"""HTTP connection behaviour: routing, timeouts, streaming bodies and responses."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import IntFlag
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Union

from .backpressure import BackPressure

Data = Union[bytes, bytearray, memoryview, str]

# Longest an HTTP connection may wait on an outstanding request or rejected data.
HTTP_IDLE_TIMEOUT_S = 10
# Clients uploading slower than this many bytes per second get dropped.
HTTP_RECEIVE_THROUGHPUT_BYTES = 16 * 1024

_PARAMETER = re.compile(r":([^/]*)")


def _to_bytes(data: Data) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def parameter_offsets(pattern: str) -> Dict[str, int]:
    """Map each ``:name`` parameter of a route pattern to its position."""
    return {m.group(1): offset for offset, m in enumerate(_PARAMETER.finditer(pattern))}


class ResponseState(IntFlag):
    HTTP_RESPONSE_PENDING = 1
    HTTP_CONNECTION_CLOSE = 2


@dataclass
class HttpRequest:
    """A parsed request line and headers; header names are matched case-insensitively."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    ancient: bool = False
    parameters: List[str] = field(default_factory=list)
    parameter_offsets: Dict[str, int] = field(default_factory=dict)
    yield_: bool = False

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, key: str) -> str:
        """The header value, or an empty string if absent."""
        return self.headers.get(key.lower(), "")


class HttpResponse:
    """The response side of one HTTP connection.

    The transport provides ``write(data) -> int`` (bytes accepted),
    ``shutdown()``, ``close()``, ``set_timeout(seconds)`` and the
    attributes ``is_closed`` and ``is_shut_down``.
    """

    def __init__(self, transport: Any) -> None:
        self.transport = transport
        self.state = ResponseState(0)
        self.buffer = BackPressure()
        self.received_bytes_per_timeout = 0
        self._begin()

    def _begin(self) -> None:
        self.status = "200 OK"
        self.headers: List[tuple] = []
        self.offset = 0
        self.aborted_handler: Optional[Callable[[], Any]] = None
        self.data_handler: Optional[Callable[[bytes, bool], Any]] = None
        self.writable_handler: Optional[Callable[[int], bool]] = None
        self._headers_written = False
        self._chunked = False

    @property
    def buffered_amount(self) -> int:
        return len(self.buffer)

    def _send(self, data: bytes) -> bool:
        """Write or buffer; return True if nothing is left buffered."""
        if self.buffer:
            self.buffer.append(data)
            return False
        written = self.transport.write(data)
        if written < len(data):
            self.buffer.append(data[written:])
            return False
        return True

    def _drain(self) -> bool:
        if self.buffer:
            pending = self.buffer.view()
            self.buffer.erase(self.transport.write(pending))
        return not self.buffer

    def _head(self, extra: str) -> bytes:
        lines = [f"HTTP/1.1 {self.status}\r\n"]
        lines.extend(f"{key}: {value}\r\n" for key, value in self.headers)
        lines.append(extra)
        lines.append("\r\n")
        self._headers_written = True
        return "".join(lines).encode("latin-1")

    def _write_continue(self) -> None:
        self._send(b"HTTP/1.1 100 Continue\r\n\r\n")

    def write(self, data: Data) -> bool:
        """Send part of the body using chunked encoding; False on backpressure."""
        body = _to_bytes(data)
        out = b""
        if not self._headers_written:
            out = self._head("Transfer-Encoding: chunked\r\n")
            self._chunked = True
        if body:
            out += f"{len(body):x}\r\n".encode("ascii") + body + b"\r\n"
            self.offset += len(body)
        if out:
            self._send(out)
        return not self.buffer

    def end(self, data: Data = b"") -> None:
        """Finish the response, closing the connection if it was marked to close."""
        if not self.state & ResponseState.HTTP_RESPONSE_PENDING:
            raise RuntimeError("no pending request to respond to")
        body = _to_bytes(data)
        if self._chunked:
            out = f"{len(body):x}\r\n".encode("ascii") + body + b"\r\n" if body else b""
            out += b"0\r\n\r\n"
        else:
            out = self._head(f"Content-Length: {len(body)}\r\n") + body
        self.offset += len(body)
        self._send(out)

        self.aborted_handler = None
        self.writable_handler = None
        self.state &= ~ResponseState.HTTP_RESPONSE_PENDING

        if self.state & ResponseState.HTTP_CONNECTION_CLOSE and not self.buffer:
            self.transport.shutdown()
            self.transport.close()
        else:
            self.transport.set_timeout(HTTP_IDLE_TIMEOUT_S)

    def on_aborted(self, handler: Callable[[], Any]) -> "HttpResponse":
        """Call ``handler`` if the connection closes before the response ends."""
        self.aborted_handler = handler
        return self

    def on_data(self, handler: Callable[[bytes, bool], Any]) -> "HttpResponse":
        """Receive body chunks as ``handler(data, fin)``."""
        self.data_handler = handler
        return self

    def on_writable(self, handler: Callable[[int], bool]) -> "HttpResponse":
        """Call ``handler(offset)`` when the transport can take more data."""
        self.writable_handler = handler
        return self

    def has_responded(self) -> bool:
        """Whether there is no request waiting for a response."""
        return not self.state & ResponseState.HTTP_RESPONSE_PENDING


Handler = Callable[[HttpResponse, HttpRequest], Any]


@dataclass
class _Route:
    method: str
    pattern: str
    segments: List[str]
    priority: int
    order: int
    handler: Handler
    offsets: Dict[str, int]

    def sort_key(self) -> tuple:
        kinds = tuple(
            2 if seg == "*" else 1 if seg.startswith(":") else 0 for seg in self.segments
        )
        return (self.priority, kinds, self.order)

    def match(self, path: List[str]) -> Optional[List[str]]:
        params: List[str] = []
        last = len(self.segments) - 1
        for position, (seg, part) in enumerate(zip(self.segments, path)):
            if seg == "*" and position == last:
                return params
            if seg.startswith(":"):
                params.append(part)
            elif seg != part:
                return None
        if len(path) == len(self.segments):
            return params
        if len(path) == last and self.segments[last] == "*":
            return params
        return None


class HttpContext:
    """Routes requests to handlers and manages connection lifetimes."""

    HIGH_PRIORITY = 0xD0000000
    MEDIUM_PRIORITY = 0xE0000000
    LOW_PRIORITY = 0xF0000000

    def __init__(self) -> None:
        self._routes: List[_Route] = []
        self._filters: List[Callable[[HttpResponse, int], Any]] = []
        self._order = count()
        self.upgraded_websocket: Any = None
        self.is_parsing_http = False

    def filter(self, handler: Callable[[HttpResponse, int], Any]) -> None:
        """Call ``handler(response, 1)`` on open and ``handler(response, -1)`` on close."""
        self._filters.append(handler)

    def on_http(
        self, method: str, pattern: str, handler: Optional[Handler], upgrade: bool = False
    ) -> None:
        """Register a handler, or remove the matching route if ``handler`` is None."""
        if method == "*":
            priority = self.LOW_PRIORITY
        elif upgrade:
            priority = self.HIGH_PRIORITY
        else:
            priority = self.MEDIUM_PRIORITY

        if handler is None:
            self._routes = [
                r for r in self._routes
                if not (r.method == method and r.pattern == pattern and r.priority == priority)
            ]
            return

        self._routes.append(
            _Route(method, pattern, pattern.split("/"), priority, next(self._order),
                   handler, parameter_offsets(pattern))
        )
        self._routes.sort(key=_Route.sort_key)

    def _route(self, response: HttpResponse, request: HttpRequest) -> bool:
        path = request.url.split("?", 1)[0].split("/")
        for route in self._routes:
            if route.method not in ("*", request.method):
                continue
            params = route.match(path)
            if params is None:
                continue
            request.yield_ = False
            request.parameters = params
            request.parameter_offsets = route.offsets
            if request.header("expect") == "100-continue":
                response._write_continue()
            route.handler(response, request)
            if not request.yield_:
                return True
        return False

    def handle_open(self, response: HttpResponse) -> HttpResponse:
        """A connection opened: arm the idle timeout and run filters."""
        response.transport.set_timeout(HTTP_IDLE_TIMEOUT_S)
        response.state = ResponseState(0)
        response.buffer.clear()
        response.received_bytes_per_timeout = 0
        response._begin()
        for handler in self._filters:
            handler(response, 1)
        return response

    def handle_close(self, response: HttpResponse) -> None:
        """A connection closed: run filters and signal any pending request as aborted."""
        for handler in self._filters:
            handler(response, -1)
        aborted = response.aborted_handler
        if aborted:
            aborted()
        response._begin()

    def handle_request(self, response: HttpResponse, request: HttpRequest) -> bool:
        """Dispatch one parsed request; return whether parsing may continue."""
        transport = response.transport
        self.is_parsing_http = True
        try:
            transport.set_timeout(0)
            if response.state & ResponseState.HTTP_RESPONSE_PENDING:
                transport.close()
                return False

            response._begin()
            response.state = ResponseState.HTTP_RESPONSE_PENDING
            if request.ancient or len(request.header("connection")) == 5:
                response.state |= ResponseState.HTTP_CONNECTION_CLOSE

            if not self._route(response, request):
                transport.close()
                return False

            if self.upgraded_websocket is not None:
                return False
            if transport.is_closed or transport.is_shut_down:
                return False

            if not response.has_responded() and response.aborted_handler is None:
                raise RuntimeError(
                    "returning from a request handler without responding "
                    "or attaching an abort handler is forbidden"
                )
            if not response.has_responded() and response.data_handler is not None:
                transport.set_timeout(HTTP_IDLE_TIMEOUT_S)
            return True
        finally:
            self.is_parsing_http = False

    def handle_body(self, response: HttpResponse, data: Data, fin: bool) -> bool:
        """Deliver a piece of the request body; return whether parsing may continue."""
        handler = response.data_handler
        if handler is None:
            return True
        chunk = _to_bytes(data)
        transport = response.transport
        if fin:
            transport.set_timeout(0)
        else:
            response.received_bytes_per_timeout += len(chunk)
            if response.received_bytes_per_timeout >= HTTP_RECEIVE_THROUGHPUT_BYTES * HTTP_IDLE_TIMEOUT_S:
                transport.set_timeout(HTTP_IDLE_TIMEOUT_S)
                response.received_bytes_per_timeout = 0
        handler(chunk, fin)
        if transport.is_closed or transport.is_shut_down:
            return False
        if fin:
            response.data_handler = None
        return True

    def handle_writable(self, response: HttpResponse) -> None:
        """The transport can take more data: ask the user or drain backpressure."""
        transport = response.transport
        if response.writable_handler is not None:
            transport.set_timeout(0)
            response.writable_handler(response.offset)
            return

        response._drain()
        if (
            response.state & ResponseState.HTTP_CONNECTION_CLOSE
            and not response.state & ResponseState.HTTP_RESPONSE_PENDING
            and not response.buffer
        ):
            transport.shutdown()
            transport.close()
        transport.set_timeout(HTTP_IDLE_TIMEOUT_S)

    def handle_timeout(self, response: HttpResponse) -> None:
        """Force close on timeout rather than a graceful shutdown."""
        response.transport.close()