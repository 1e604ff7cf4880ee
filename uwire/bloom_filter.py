"""A tiny 256-bit bloom filter for HTTP header names."""

from __future__ import annotations

_MULTIPLIER = 1843993368
_MASK32 = 0xFFFFFFFF


def _as_bytes(key: str | bytes) -> bytes:
    return key.encode("utf-8") if isinstance(key, str) else bytes(key)


def _positions(key: bytes) -> bytes:
    features = bytes((key[0], key[-1], key[-2], key[len(key) >> 1]))
    value = int.from_bytes(features, "little")
    value = (value * _MULTIPLIER) & _MASK32
    return value.to_bytes(4, "little")


class BloomFilter:
    """Set membership with no false negatives.

    Keys shorter than two bytes always report as possibly present.
    """

    __slots__ = ("_bits",)

    def __init__(self) -> None:
        self._bits = 0

    def might_have(self, key: str | bytes) -> bool:
        """Whether ``key`` may have been added."""
        raw = _as_bytes(key)
        if len(raw) < 2:
            return True
        return all(self._bits >> pos & 1 for pos in _positions(raw))

    def add(self, key: str | bytes) -> None:
        """Record ``key``; keys shorter than two bytes are ignored."""
        raw = _as_bytes(key)
        if len(raw) >= 2:
            for pos in _positions(raw):
                self._bits |= 1 << pos

    def reset(self) -> None:
        """Forget every key."""
        self._bits = 0