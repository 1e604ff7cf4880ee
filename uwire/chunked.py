"""Incremental decoder for HTTP chunked transfer encoding."""

from __future__ import annotations

from typing import Iterator, Optional, Tuple, Union

_MASK64 = (1 << 64) - 1

STATE_HAS_SIZE = 1 << 63
STATE_IS_CHUNKED = 1 << 62
STATE_SIZE_MASK = ~(3 << 62) & _MASK64
STATE_IS_ERROR = _MASK64
STATE_SIZE_OVERFLOW = 0x0F << 56

Buffer = Union[bytes, bytearray, memoryview]


def chunk_size(state: int) -> int:
    """The size part of a decoder state."""
    return state & STATE_SIZE_MASK


def has_chunk_size(state: int) -> bool:
    """Whether the state holds a fully read chunk size."""
    return bool(state & STATE_HAS_SIZE)


def is_parsing_chunked_encoding(state: int) -> bool:
    """Whether the decoder is in the middle of a chunked body."""
    return bool(state & ~STATE_SIZE_MASK & _MASK64)


def is_parsing_invalid_chunked_encoding(state: int) -> bool:
    """Whether the decoder hit malformed input."""
    return state == STATE_IS_ERROR


def _dec_chunk_size(state: int, by: int) -> int:
    return (state & ~STATE_SIZE_MASK & _MASK64) | (chunk_size(state) - by)


def _consume_hex_number(data: memoryview, state: int) -> Tuple[memoryview, int]:
    pos = 0
    length = len(data)
    # Bytes above 127 count as negative characters and end the number.
    while pos < length and 32 < data[pos] < 128:
        digit = data[pos]
        if digit >= ord("a"):
            digit -= ord("a") - ord(":")
        elif digit >= ord("A"):
            digit -= ord("A") - ord(":")
        number = (digit - ord("0")) & 0xFFFFFFFF
        if number > 16 or chunk_size(state) & STATE_SIZE_OVERFLOW:
            return data[pos:], STATE_IS_ERROR
        state = ((chunk_size(state) * 16 + number) & _MASK64) | STATE_IS_CHUNKED
        pos += 1
    while pos < length and data[pos] != 0x0A:
        pos += 1
    if pos < length:
        state = ((state + 2) & _MASK64) | STATE_HAS_SIZE | STATE_IS_CHUNKED
        pos += 1
    return data[pos:], state


class ChunkDecoder:
    """Decodes a chunked body fed in arbitrary pieces.

    ``state`` is 0 once a whole body, including its final empty chunk,
    has been consumed. ``remaining`` holds the unconsumed tail of the
    last input given to :meth:`chunks`.
    """

    def __init__(self, state: int = 0, trailer: bool = False) -> None:
        self.state = state
        self.trailer = trailer
        self.remaining: memoryview = memoryview(b"")

    def next_chunk(self, data: Buffer) -> Tuple[Optional[bytes], memoryview]:
        """Return the next chunk (possibly empty) or None, and the rest of ``data``.

        None means all data was consumed, the body ended or the input is
        invalid; check the state to tell these apart.
        """
        view = memoryview(data).cast("B") if not isinstance(data, memoryview) else data
        state = self.state
        try:
            while len(view):
                size = chunk_size(state)
                if not state & STATE_IS_CHUNKED and has_chunk_size(state) and size:
                    # Dropping the trailer.
                    take = min(len(view), size)
                    view = view[take:]
                    state = _dec_chunk_size(state, take)
                    if chunk_size(state) == 0:
                        state = 0
                        return None, view
                    continue

                if not has_chunk_size(state):
                    view, state = _consume_hex_number(view, state)
                    if is_parsing_invalid_chunked_encoding(state):
                        return None, view
                    if has_chunk_size(state) and chunk_size(state) == 2:
                        state = (4 if self.trailer else 2) | STATE_HAS_SIZE
                        return b"", view
                    continue

                if len(view) >= size:
                    emit = bytes(view[: size - 2]) if size > 2 else None
                    view = view[size:]
                    state = STATE_IS_CHUNKED
                    if emit is not None:
                        return emit, view
                    continue

                emit = b""
                if size > 2:
                    emit = bytes(view[: min(len(view), size - 2)])
                state = _dec_chunk_size(state, len(view)) | STATE_IS_CHUNKED
                view = view[len(view):]
                return (emit if emit else None), view
            return None, view
        finally:
            self.state = state

    def chunks(self, data: Buffer) -> Iterator[bytes]:
        """Yield every chunk available in ``data``, updating ``remaining``."""
        view = memoryview(data)
        self.remaining = view
        while True:
            chunk, view = self.next_chunk(view)
            self.remaining = view
            if chunk is None:
                return
            yield chunk