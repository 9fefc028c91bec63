"""Exceptions raised by the serial link layer."""

from __future__ import annotations


class LinkError(Exception):
    """Base class for every failure of a single encode/decode/exchange."""


class PayloadTooLarge(LinkError):
    """An outgoing payload does not fit in the one-byte size field."""

    def __init__(self, size: int) -> None:
        super().__init__(f"Payload is {size} bytes, maximum is 255")
        self.size = size


class FramingError(LinkError):
    """A frame sentinel (start DLE, end DLE or ETX) was not where expected.

    ``byte`` is the byte found in its place, or None if the frame ran out.
    """

    def __init__(self, message: str, byte: int | None = None) -> None:
        super().__init__(message)
        self.byte = byte


class ChecksumMismatch(LinkError):
    """All bytes of a frame arrived but the checksum does not add up."""

    def __init__(self, residual: int) -> None:
        super().__init__(f"Checksum verification failed (residual 0x{residual:02X})")
        self.residual = residual


class TransportError(LinkError):
    """The underlying byte stream failed, timed out, or returned short."""


class ProtocolError(LinkError):
    """The device answered with something the link exchange did not expect."""
