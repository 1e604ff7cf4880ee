"""WebSocket connection: framing, sending, closing and pub/sub."""

from __future__ import annotations

import os
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterator, Optional, Union

from .backpressure import BackPressure
from .loop_data import LoopData
from .topics import Subscriber, TopicTree

Data = Union[bytes, bytearray, memoryview, str]

MAX_CLOSE_PAYLOAD = 123
_COMPRESSED_BIT = 0x40
_DEFLATE_TAIL = b"\x00\x00\xff\xff"


class OpCode(IntEnum):
    CONTINUATION = 0
    TEXT = 1
    BINARY = 2
    CLOSE = 8
    PING = 9
    PONG = 10


class SendStatus(IntEnum):
    BACKPRESSURE = 0
    SUCCESS = 1
    DROPPED = 2


def _to_bytes(data: Data) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def format_frame(
    payload: Data,
    opcode: OpCode = OpCode.BINARY,
    fin: bool = True,
    compress: bool = False,
    is_server: bool = True,
) -> bytes:
    """Build one WebSocket frame; client frames are masked with a random key."""
    body = _to_bytes(payload)
    first = (0x80 if fin else 0) | (_COMPRESSED_BIT if compress and opcode else 0) | int(opcode)
    mask_bit = 0 if is_server else 0x80
    length = len(body)
    if length < 126:
        header = bytes((first, mask_bit | length))
    elif length <= 0xFFFF:
        header = bytes((first, mask_bit | 126)) + length.to_bytes(2, "big")
    else:
        header = bytes((first, mask_bit | 127)) + length.to_bytes(8, "big")
    if is_server:
        return header + body
    mask = os.urandom(4)
    masked = bytes(b ^ mask[i & 3] for i, b in enumerate(body))
    return header + mask + masked


def format_close_payload(code: int, message: Data = b"") -> bytes:
    """Close frame body: status code and reason, or nothing for code 0 or 1005."""
    if code and code != 1005:
        return (code & 0xFFFF).to_bytes(2, "big") + _to_bytes(message)
    return b""


@dataclass
class WebSocketSettings:
    """Behaviour shared by all WebSockets of one context."""

    is_server: bool = True
    max_backpressure: int = 0
    close_on_backpressure_limit: bool = False
    reset_idle_timeout_on_send: bool = False
    idle_timeout: int = 120
    close_timeout: int = 4
    compression: bool = False
    dedicated_compressor: bool = False
    dropped_handler: Optional[Callable[["WebSocket", bytes, OpCode], Any]] = None
    subscription_handler: Optional[Callable[["WebSocket", str, int, int], Any]] = None
    close_handler: Optional[Callable[["WebSocket", int, Any], Any]] = None


class WebSocket:
    """A WebSocket over a transport.

    The transport provides ``write(data) -> int`` (bytes accepted),
    ``shutdown()``, ``shutdown_read()``, ``close()``, ``set_timeout(seconds)``
    and an ``is_closed`` attribute. Topic-tree messages are tuples of
    ``(message, opcode, compress)``.
    """

    def __init__(
        self,
        transport: Any,
        settings: Optional[WebSocketSettings] = None,
        topic_tree: Optional[TopicTree] = None,
        user_data: Any = None,
    ) -> None:
        self.transport = transport
        self.settings = settings or WebSocketSettings()
        self.topic_tree = topic_tree
        self.user_data = user_data
        self.buffer = BackPressure()
        self.subscriber: Optional[Subscriber] = None
        self.is_shutting_down = False
        self.has_timed_out = False
        self.compression_enabled = self.settings.compression
        self._corked = False
        self._cork_buffer = bytearray()
        self._deflater: Any = None

    @property
    def buffered_amount(self) -> int:
        """Bytes waiting in user-space backpressure."""
        return len(self.buffer)

    @property
    def is_corked(self) -> bool:
        return self._corked

    def _write(self, data: bytes) -> bool:
        """Write or buffer ``data``; return True if backpressure remains."""
        if self._corked:
            self._cork_buffer += data
            return False
        if self.buffer:
            pending = self.buffer.view()
            written = self.transport.write(pending)
            self.buffer.erase(written)
            if written < len(pending):
                self.buffer.append(data)
                return True
        if data:
            written = self.transport.write(data)
            if written < len(data):
                self.buffer.append(data[written:])
                return True
        return False

    def _uncork(self) -> bool:
        self._corked = False
        data = bytes(self._cork_buffer)
        self._cork_buffer.clear()
        return self._write(data)

    def _deflate(self, message: bytes) -> bytes:
        if self.settings.dedicated_compressor:
            if self._deflater is None:
                self._deflater = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
            compressor = self._deflater
        else:
            compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
        out = compressor.compress(message) + compressor.flush(zlib.Z_SYNC_FLUSH)
        return out[:-4] if out.endswith(_DEFLATE_TAIL) else out

    def close(self) -> bool:
        """Close abruptly; returns False if already closed or shutting down."""
        if self.transport.is_closed or self.is_shutting_down:
            return False
        self.transport.close()
        return True

    def send(
        self,
        message: Data,
        opcode: OpCode = OpCode.BINARY,
        compress: bool = False,
        fin: bool = True,
    ) -> SendStatus:
        """Send or buffer one frame.

        Returns DROPPED when over the backpressure limit, BACKPRESSURE when
        data had to be buffered, SUCCESS otherwise.
        """
        payload = _to_bytes(message)
        opcode = OpCode(opcode)
        settings = self.settings

        if settings.max_backpressure and settings.max_backpressure < self.buffered_amount:
            if settings.close_on_backpressure_limit:
                self.transport.shutdown_read()
            if settings.dropped_handler:
                settings.dropped_handler(self, payload, opcode)
            return SendStatus.DROPPED

        if self.subscriber is not None and self.topic_tree is not None:
            self.topic_tree.drain(self.subscriber)

        if compress:
            if payload and opcode < 3 and self.compression_enabled:
                payload = self._deflate(payload)
            else:
                compress = False

        frame = format_frame(payload, opcode, fin, compress, settings.is_server)
        if self._write(frame):
            return SendStatus.BACKPRESSURE

        if settings.reset_idle_timeout_on_send:
            self.transport.set_timeout(settings.idle_timeout)
            self.has_timed_out = False
        return SendStatus.SUCCESS

    def send_first_fragment(
        self, message: Data, opcode: OpCode = OpCode.BINARY, compress: bool = False
    ) -> SendStatus:
        """Start a fragmented message."""
        return self.send(message, opcode, compress, False)

    def send_fragment(self, message: Data, compress: bool = False) -> SendStatus:
        """Continue a fragmented message."""
        return self.send(message, OpCode.CONTINUATION, compress, False)

    def send_last_fragment(self, message: Data, compress: bool = False) -> SendStatus:
        """Finish a fragmented message."""
        return self.send(message, OpCode.CONTINUATION, compress, True)

    def end(self, code: int = 0, message: Data = b"") -> None:
        """Send a close frame, unsubscribe from everything and emit the close event."""
        if self.is_shutting_down:
            return
        self.is_shutting_down = True

        reason = _to_bytes(message)[:MAX_CLOSE_PAYLOAD]
        status = self.send(format_close_payload(code, reason), OpCode.CLOSE)
        if not self._corked and status is not SendStatus.BACKPRESSURE:
            self.transport.shutdown()

        settings = self.settings
        self.transport.set_timeout(settings.close_timeout)

        if self.subscriber is not None and settings.subscription_handler:
            for topic in list(self.subscriber.topics):
                settings.subscription_handler(self, topic.name, len(topic) - 1, len(topic))

        if self.topic_tree is not None:
            self.topic_tree.free_subscriber(self.subscriber)
        self.subscriber = None

        if settings.close_handler:
            settings.close_handler(self, code, message)

    def cork(self, handler: Callable[[], Any]) -> None:
        """Run ``handler`` with writes batched into one, unless already corked."""
        if self._corked:
            handler()
            return
        self._corked = True
        try:
            handler()
        finally:
            self._uncork()

    def _require_tree(self) -> TopicTree:
        if self.topic_tree is None:
            raise RuntimeError("this WebSocket has no topic tree")
        return self.topic_tree

    def subscribe(self, topic: str) -> bool:
        """Subscribe to ``topic``; always succeeds."""
        tree = self._require_tree()
        if self.subscriber is None:
            self.subscriber = tree.create_subscriber()
            self.subscriber.user = self
        topic_obj = tree.subscribe(self.subscriber, topic)
        if topic_obj is not None and self.settings.subscription_handler:
            self.settings.subscription_handler(self, topic, len(topic_obj), len(topic_obj) - 1)
        return True

    def unsubscribe(self, topic: str) -> bool:
        """Unsubscribe from ``topic``; True if we were subscribed."""
        if self.subscriber is None:
            return False
        ok, _last, new_count = self._require_tree().unsubscribe(self.subscriber, topic)
        if ok and self.settings.subscription_handler:
            self.settings.subscription_handler(self, topic, new_count, new_count + 1)
        return ok

    def is_subscribed(self, topic: str) -> bool:
        """Whether this socket is subscribed to ``topic``."""
        if self.subscriber is None or self.topic_tree is None:
            return False
        topic_obj = self.topic_tree.lookup_topic(topic)
        return topic_obj is not None and self.subscriber in topic_obj

    def iterate_topics(self, callback: Callable[[str], Any]) -> None:
        """Call ``callback`` with every subscribed topic name.

        Subscribing or unsubscribing from within the callback raises.
        """
        if self.subscriber is None or self.topic_tree is None:
            return
        tree = self.topic_tree
        tree.iterating_subscriber = self.subscriber
        try:
            for topic in list(self.subscriber.topics):
                callback(topic.name)
        finally:
            tree.iterating_subscriber = None

    def topics(self) -> Iterator[str]:
        """Names of the subscribed topics."""
        if self.subscriber is not None:
            yield from [t.name for t in self.subscriber.topics]

    def publish(
        self,
        topic: str,
        message: Data,
        opcode: OpCode = OpCode.TEXT,
        compress: bool = False,
    ) -> bool:
        """Publish to other subscribers of ``topic``; False unless we subscribe to something.

        Large messages are sent right away instead of being queued.
        """
        if self.subscriber is None:
            return False
        tree = self._require_tree()
        payload = _to_bytes(message)
        if len(payload) >= LoopData.CORK_BUFFER_SIZE:
            topic_obj = tree.lookup_topic(topic)
            if topic_obj is None:
                return False
            for subscriber in list(topic_obj):
                if subscriber is not self.subscriber:
                    subscriber.user.send(payload, opcode, compress)
            return True
        return tree.publish(self.subscriber, topic, (payload, OpCode(opcode), compress))