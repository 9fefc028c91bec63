"""One-byte two's-complement checksum used by the Garmin serial link.

The checksum is the negated modulo-256 sum of the packet ID, size byte and
every data byte. A receiver that adds the checksum byte to the running sum
of the received bytes ends up with exactly zero.
"""

from __future__ import annotations


class ChecksumAccumulator:
    """Running 8-bit sum over a sequence of bytes."""

    def __init__(self) -> None:
        self._sum = 0

    @property
    def value(self) -> int:
        return self._sum

    def reset(self) -> None:
        self._sum = 0

    def absorb(self, byte: int) -> None:
        self._sum = (self._sum + byte) & 0xFF

    def absorb_all(self, data: bytes) -> None:
        for byte in data:
            self.absorb(byte)

    def finalize(self) -> int:
        """Return the byte that brings the running sum back to zero."""
        return -self._sum & 0xFF


def checksum(data: bytes) -> int:
    """Compute the checksum byte for ``data`` (ID + size + payload)."""
    acc = ChecksumAccumulator()
    acc.absorb_all(data)
    return acc.finalize()
