"""Building blocks for HTTP and WebSocket servers: chunked decoding, backpressure, pub/sub topics, WebSocket framing and HTTP routing."""

__version__ = "0.1.0"