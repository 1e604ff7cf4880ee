"""Outgoing byte buffer with lazy removal of already-sent data."""

from __future__ import annotations


class BackPressure:
    """Bytes waiting to be written to a socket.

    Erased bytes are only dropped from the underlying buffer once they
    make up more than 1/32 of it, so repeated small writes stay cheap.
    """

    __slots__ = ("_buffer", "pending_removal")

    def __init__(self, data: bytes = b"") -> None:
        self._buffer = bytearray(data)
        self.pending_removal = 0

    def append(self, data: bytes) -> None:
        """Queue more bytes at the end."""
        self._buffer += data

    def erase(self, length: int) -> None:
        """Mark ``length`` bytes at the front as sent."""
        self.pending_removal += length
        if self.pending_removal > (len(self._buffer) >> 5):
            del self._buffer[: self.pending_removal]
            self.pending_removal = 0

    def __len__(self) -> int:
        return len(self._buffer) - self.pending_removal

    def __bool__(self) -> bool:
        return len(self) > 0

    def clear(self) -> None:
        """Drop everything, sent or not."""
        self.pending_removal = 0
        self._buffer.clear()

    def resize(self, length: int) -> None:
        """Truncate or zero-pad the unsent bytes to ``length``."""
        target = length + self.pending_removal
        current = len(self._buffer)
        if target < current:
            del self._buffer[target:]
        else:
            self._buffer.extend(bytes(target - current))

    def view(self) -> bytes:
        """The bytes not yet sent."""
        return bytes(self._buffer[self.pending_removal :])

    def total_length(self) -> int:
        """Length of the underlying buffer, including pending removal."""
        return len(self._buffer)