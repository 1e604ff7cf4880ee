import pytest

from uwire.http_context import (
    HTTP_IDLE_TIMEOUT_S,
    HttpContext,
    HttpRequest,
    HttpResponse,
    parameter_offsets,
)


class FakeTransport:
    def __init__(self, capacity=None):
        self.capacity = capacity
        self.data = bytearray()
        self.is_closed = False
        self.is_shut_down = False
        self.timeouts = []

    def write(self, data):
        n = len(data) if self.capacity is None else min(self.capacity, len(data))
        if self.capacity is not None:
            self.capacity -= n
        self.data += bytes(data[:n])
        return n

    def shutdown(self):
        self.is_shut_down = True

    def close(self):
        self.is_closed = True

    def set_timeout(self, seconds):
        self.timeouts.append(seconds)


def make(capacity=None):
    ctx = HttpContext()
    transport = FakeTransport(capacity)
    res = ctx.handle_open(HttpResponse(transport))
    return ctx, res, transport


def test_parameter_offsets():
    assert parameter_offsets("/users/:id/posts/:post") == {"id": 0, "post": 1}
    assert parameter_offsets("/static") == {}


def test_simple_route_responds():
    ctx, res, transport = make()
    ctx.on_http("GET", "/hello", lambda r, q: r.end("hello"))
    assert ctx.handle_request(res, HttpRequest("GET", "/hello"))
    assert bytes(transport.data).startswith(b"HTTP/1.1 200 OK\r\n")
    assert bytes(transport.data).endswith(b"\r\n\r\nhello")
    assert res.has_responded()
    assert not transport.is_closed


def test_unrouted_request_closes():
    ctx, res, transport = make()
    ctx.on_http("GET", "/a", lambda r, q: r.end())
    assert ctx.handle_request(res, HttpRequest("GET", "/b")) is False
    assert transport.is_closed


def test_pipelined_request_while_pending_closes():
    ctx, res, transport = make()
    ctx.on_http("GET", "/slow", lambda r, q: r.on_aborted(lambda: None))
    assert ctx.handle_request(res, HttpRequest("GET", "/slow"))
    assert not res.has_responded()
    assert ctx.handle_request(res, HttpRequest("GET", "/slow")) is False
    assert transport.is_closed


def test_connection_close_header_closes_after_end():
    ctx, res, transport = make()
    ctx.on_http("GET", "/", lambda r, q: r.end("bye"))
    req = HttpRequest("GET", "/", {"Connection": "close"})
    assert ctx.handle_request(res, req) is False
    assert transport.is_shut_down and transport.is_closed


def test_ancient_request_closes():
    ctx, res, transport = make()
    ctx.on_http("GET", "/", lambda r, q: r.end())
    ctx.handle_request(res, HttpRequest("GET", "/", ancient=True))
    assert transport.is_closed


def test_handler_without_response_or_abort_raises():
    ctx, res, _ = make()
    ctx.on_http("GET", "/", lambda r, q: None)
    with pytest.raises(RuntimeError):
        ctx.handle_request(res, HttpRequest("GET", "/"))


def test_end_twice_raises():
    ctx, res, _ = make()
    ctx.on_http("GET", "/", lambda r, q: r.end())
    ctx.handle_request(res, HttpRequest("GET", "/"))
    with pytest.raises(RuntimeError):
        res.end()


def test_aborted_called_on_close_and_filters():
    ctx, res, transport = make()
    events = []
    ctx.filter(lambda r, kind: events.append(kind))
    ctx.handle_open(res)
    ctx.on_http("GET", "/", lambda r, q: r.on_aborted(lambda: events.append("aborted")))
    ctx.handle_request(res, HttpRequest("GET", "/"))
    ctx.handle_close(res)
    assert events == [1, -1, "aborted"]


def test_no_abort_after_response():
    ctx, res, _ = make()
    events = []
    ctx.on_http("GET", "/", lambda r, q: (r.on_aborted(lambda: events.append("x")), r.end()))
    ctx.handle_request(res, HttpRequest("GET", "/"))
    ctx.handle_close(res)
    assert events == []


def test_yield_falls_through():
    ctx, res, transport = make()
    seen = []

    def first(r, q):
        seen.append("first")
        q.yield_ = True

    ctx.on_http("GET", "/x", first)
    ctx.on_http("*", "/*", lambda r, q: (seen.append("any"), r.end("any")))
    assert ctx.handle_request(res, HttpRequest("GET", "/x"))
    assert seen == ["first", "any"]
    assert bytes(transport.data).endswith(b"any")


def test_specific_method_beats_wildcard_method():
    ctx, res, transport = make()
    ctx.on_http("*", "/x", lambda r, q: r.end("star"))
    ctx.on_http("GET", "/x", lambda r, q: r.end("get"))
    ctx.handle_request(res, HttpRequest("GET", "/x"))
    assert bytes(transport.data).endswith(b"get")


def test_static_beats_parameter():
    ctx, res, transport = make()
    ctx.on_http("GET", "/u/:id", lambda r, q: r.end("param"))
    ctx.on_http("GET", "/u/me", lambda r, q: r.end("static"))
    ctx.handle_request(res, HttpRequest("GET", "/u/me"))
    assert bytes(transport.data).endswith(b"static")


def test_parameters_captured():
    ctx, res, _ = make()
    captured = {}

    def handler(r, q):
        captured["params"] = list(q.parameters)
        captured["offsets"] = dict(q.parameter_offsets)
        r.end()

    ctx.on_http("GET", "/users/:id/posts/:post", handler)
    request = HttpRequest("GET", "/users/42/posts/7?x=1")
    assert ctx.handle_request(res, request) is True
    assert res.has_responded() is True
    assert list(request.parameters) == ["42", "7"]
    assert captured["params"] == ["42", "7"]
    assert captured["offsets"] == {"id": 0, "post": 1}


def test_remove_route():
    ctx, res, transport = make()
    ctx.on_http("GET", "/a", lambda r, q: r.end())
    ctx.on_http("GET", "/a", None)
    assert ctx.handle_request(res, HttpRequest("GET", "/a")) is False
    assert transport.is_closed


def test_expect_continue():
    ctx, res, transport = make()
    ctx.on_http("POST", "/", lambda r, q: r.end())
    ctx.handle_request(res, HttpRequest("POST", "/", {"Expect": "100-continue"}))
    assert bytes(transport.data).startswith(b"HTTP/1.1 100 Continue\r\n\r\n")


def test_body_streaming():
    ctx, res, transport = make()
    received = []

    def handler(r, q):
        r.on_aborted(lambda: None)
        r.on_data(lambda data, fin: received.append((data, fin)))

    ctx.on_http("POST", "/", handler)
    assert ctx.handle_request(res, HttpRequest("POST", "/"))
    assert transport.timeouts[-1] == HTTP_IDLE_TIMEOUT_S
    assert ctx.handle_body(res, b"abc", False)
    assert ctx.handle_body(res, b"def", True)
    assert received == [(b"abc", False), (b"def", True)]
    assert transport.timeouts[-1] == 0
    assert res.data_handler is None
    assert ctx.handle_body(res, b"ignored", True)
    assert len(received) == 2


def test_body_stops_if_closed_in_handler():
    ctx, res, transport = make()

    def handler(r, q):
        r.on_aborted(lambda: None)
        r.on_data(lambda data, fin: transport.close())

    ctx.on_http("POST", "/", handler)
    ctx.handle_request(res, HttpRequest("POST", "/"))
    assert ctx.handle_body(res, b"x", False) is False


def test_backpressure_drained_on_writable():
    ctx, res, transport = make(capacity=10)
    ctx.on_http("GET", "/", lambda r, q: r.end("a fairly long body"))
    ctx.handle_request(res, HttpRequest("GET", "/"))
    assert res.buffered_amount > 0
    assert len(transport.data) == 10
    transport.capacity = None
    ctx.handle_writable(res)
    assert res.buffered_amount == 0
    assert bytes(transport.data).endswith(b"a fairly long body")
    assert transport.timeouts[-1] == HTTP_IDLE_TIMEOUT_S


def test_writable_handler_gets_offset():
    ctx, res, transport = make()
    offsets = []

    def handler(r, q):
        r.on_aborted(lambda: None)
        r.write("12345")
        r.on_writable(lambda off: offsets.append(off) or True)

    ctx.on_http("GET", "/", handler)
    ctx.handle_request(res, HttpRequest("GET", "/"))
    ctx.handle_writable(res)
    assert offsets == [5]
    assert transport.timeouts[-1] == 0


def test_chunked_write_then_end():
    ctx, res, transport = make()

    def handler(r, q):
        r.write("abc")
        r.end("de")

    ctx.on_http("GET", "/", handler)
    ctx.handle_request(res, HttpRequest("GET", "/"))
    out = bytes(transport.data)
    assert b"Transfer-Encoding: chunked\r\n" in out
    assert out.endswith(b"3\r\nabc\r\n2\r\nde\r\n0\r\n\r\n")
    assert res.offset == 5


def test_timeout_closes():
    ctx, res, transport = make()
    ctx.handle_timeout(res)
    assert transport.is_closed


def test_request_header_case_insensitive():
    req = HttpRequest("GET", "/", {"Content-Type": "text/plain"})
    assert req.header("content-type") == "text/plain"
    assert req.header("missing") == ""