# uwire

Protocol building blocks for HTTP and WebSocket servers. It is pure Python
and needs nothing outside the standard library.

## What is inside

- `uwire.chunked` decodes HTTP/1.1 chunked transfer encoding incrementally.
  - `ChunkDecoder(state=0, trailer=False)` keeps its state between calls, so
    data can arrive in pieces of any size.
  - `next_chunk(data)` returns the next chunk, or `None`, together with the
    unconsumed rest of the data.
  - `chunks(data)` yields every chunk available and leaves the unconsumed tail
    in `remaining`.
  - A final empty chunk is yielded as `b""`.
  - `state` returns to 0 once a whole body has been consumed.
  - The helpers `chunk_size`, `has_chunk_size`, `is_parsing_chunked_encoding`
    and `is_parsing_invalid_chunked_encoding` inspect a state value.
- `uwire.backpressure.BackPressure` is an outgoing byte buffer.
  - `erase(n)` marks bytes as sent. They are dropped from the underlying buffer
    only once they make up more than 1/32 of it.
  - `view()` returns the bytes not yet sent, and `len()` gives their count.
  - `total_length()` gives the size of the underlying buffer.
- `uwire.bloom_filter.BloomFilter` is a 256-bit filter for quick checks on
  header names.
  - It provides `add`, `might_have` and `reset`.
  - Keys shorter than two bytes always report as possibly present.
- `uwire.loop_data` holds date formatting and per-loop state.
  - `format_http_date(timestamp=None)` builds `Date` header values such as
    `Thu, 01 Jan 1970 00:00:00 GMT`.
  - `LoopData` holds per-loop state, including the cached `date` and a
    `CORK_BUFFER_SIZE` of 16 KiB.
- `uwire.topics` provides publish/subscribe with queued delivery through
  `TopicTree`, `Topic` and `Subscriber`.
  - Messages are queued by `publish` and handed to
    `callback(subscriber, message, flags)` on `drain`.
  - `flags` carries `FIRST` and `LAST`. A truthy return from the callback stops
    the rest of that subscriber's batch.
  - A sender never receives its own messages.
- `uwire.websocket` sends WebSocket frames over a transport you supply.
  - It provides `format_frame`, `format_close_payload` and the `OpCode` and
    `SendStatus` enums.
  - `WebSocket` covers fragmentation (`send_first_fragment`, `send_fragment`,
    `send_last_fragment`) and corking (`cork`).
  - It enforces a backpressure limit (`WebSocketSettings.max_backpressure`).
  - It covers closing (`end`, `close`) and topic subscriptions (`subscribe`,
    `unsubscribe`, `is_subscribed`, `iterate_topics`, `publish`).
  - With compression enabled, outgoing payloads are compressed with raw
    deflate.
- `uwire.http_context` routes requests and reacts to connection events.
  - `HttpContext` routes requests by method and URL pattern: `/users/:id`, and
    `*` as the last segment.
  - It reacts to connection events through `handle_open`, `handle_close`,
    `handle_request`, `handle_body`, `handle_writable` and `handle_timeout`.
  - It applies the idle timeout and the minimum upload rate.
  - `HttpRequest` and `HttpResponse` are the objects handlers receive.
  - `parameter_offsets(pattern)` maps route parameters to their positions.

## Transports

`WebSocket` and `HttpResponse` write through a transport object of your own.
It provides:

- `write(data)`, returning the number of bytes accepted
- `shutdown()`
- `close()`
- `set_timeout(seconds)`
- an `is_closed` attribute

`HttpResponse` also reads `is_shut_down`, and `WebSocket` also calls
`shutdown_read()`. Bytes the transport does not accept are kept as
backpressure.

## Example: decoding a chunked body

```python
from uwire.chunked import ChunkDecoder

decoder = ChunkDecoder()
body = b"5\r\nHello\r\n6\r\n world\r\n0\r\n\r\n"
print(b"".join(decoder.chunks(body)))  # b'Hello world'
print(decoder.state)                   # 0
```

## Example: publish/subscribe

```python
from uwire.topics import TopicTree

received = {}

def deliver(subscriber, message, flags):
    received.setdefault(subscriber, []).append(message)
    return False

tree = TopicTree(deliver)
alice = tree.create_subscriber()
tree.subscribe(alice, "news")
tree.publish(None, "news", "hello")
tree.drain()
print(received[alice])  # ['hello']
```

## What this package does not do

The package has no server of its own. It does not:

- open or listen on sockets
- run an event loop
- parse raw HTTP requests. `HttpContext.handle_request` expects an
  `HttpRequest` you have already built.
- parse incoming WebSocket frames or decompress them
- perform the WebSocket upgrade handshake

It has no command-line program.

## Running the tests

```
pip install -e .[test]
pytest
```