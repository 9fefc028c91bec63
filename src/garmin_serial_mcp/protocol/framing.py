"""Packet encoder and framing state machine for the Garmin serial link.

Frame layout::

    +-----+---------+---------+------------------+----------+-----+-----+
    | DLE | Type ID |  Size   |     Payload      | Checksum | DLE | ETX |
    | 1 B |  1 B    |  1 B    |   0-255 bytes    |   1 B    | 1 B | 1 B |
    +-----+---------+---------+------------------+----------+-----+-----+

- DLE (0x10) / ETX (0x03): frame delimiters, never escaped
- Size: number of payload bytes, before escaping
- Checksum: two's complement of the modulo-256 sum of type ID, size and payload

Any type ID, size, payload or checksum byte equal to DLE is sent twice
("DLE stuffing"). The extra DLE is not counted in the size or the checksum.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from .checksum import ChecksumAccumulator
from .errors import (
    ChecksumMismatch,
    FramingError,
    PayloadTooLarge,
    TransportError,
)

logger = logging.getLogger(__name__)

DLE = 0x10
ETX = 0x03
MAX_PAYLOAD_SIZE = 255
MAX_RESYNC_DISCARD = 1024


class ByteTransport(Protocol):
    """Blocking byte stream the codec reads from and writes to.

    ``read`` returns exactly ``min_bytes`` bytes or raises
    :class:`TransportError`; a short read is a failure, never a short byte.
    ``timeout=None`` means the transport's own configured timeout.
    """

    def read(self, min_bytes: int = 1, timeout: float | None = None) -> bytes:
        ...

    def write(self, data: bytes) -> int:
        ...


@dataclass(frozen=True)
class Packet:
    """A typed packet exchanged over the link."""

    type_id: int
    payload: bytes = b""

    def __post_init__(self) -> None:
        if not 0 <= self.type_id <= 0xFF:
            raise ValueError(f"Packet type ID must be 0-255, got {self.type_id}")
        object.__setattr__(self, "payload", bytes(self.payload))

    def __repr__(self) -> str:
        return (
            f"Packet(type_id={self.type_id}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


def _put_escaped(frame: bytearray, byte: int) -> None:
    frame.append(byte)
    if byte == DLE:
        frame.append(byte)


def encode_packet(packet: Packet) -> bytes:
    """Serialize a packet into a complete wire frame.

    Args:
        packet: The packet to send. Its payload must be at most 255 bytes.

    Returns:
        The escaped frame, delimiters included, ready for a single write.

    Raises:
        PayloadTooLarge: If the payload does not fit the size byte.
    """
    size = len(packet.payload)
    if size > MAX_PAYLOAD_SIZE:
        raise PayloadTooLarge(size)

    acc = ChecksumAccumulator()
    frame = bytearray([DLE])
    for byte in bytes([packet.type_id, size]) + packet.payload:
        _put_escaped(frame, byte)
        acc.absorb(byte)
    _put_escaped(frame, acc.finalize())
    frame += bytes([DLE, ETX])
    return bytes(frame)


def write_packet(transport: ByteTransport, packet: Packet) -> int:
    """Encode ``packet`` and hand the whole frame to the transport at once.

    Returns:
        Number of bytes written.

    Raises:
        PayloadTooLarge: Before anything is written.
        TransportError: If the write fails.
    """
    frame = encode_packet(packet)
    logger.debug("TX: %s", frame.hex(" "))
    try:
        return transport.write(frame)
    except TransportError:
        raise
    except OSError as e:
        raise TransportError(f"Write failed: {e}") from e


def _physical_reader(transport: ByteTransport) -> Callable[[], int]:
    """Wrap a transport as a one-byte-at-a-time reader."""

    def read_byte() -> int:
        try:
            data = transport.read(1)
        except TransportError:
            raise
        except OSError as e:
            raise TransportError(f"Read failed: {e}") from e
        if len(data) != 1:
            raise TransportError("Read timed out")
        return data[0]

    return read_byte


class _BufferReader:
    """One-byte reader over an in-memory frame.

    Running out of bytes means the frame itself was cut short, so it is
    reported as a framing problem rather than a transport failure.
    """

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def __call__(self) -> int:
        if self._pos >= len(self._data):
            raise FramingError(f"Frame truncated after {len(self._data)} bytes")
        byte = self._data[self._pos]
        self._pos += 1
        return byte


def _decode_frame(read_byte: Callable[[], int], start_consumed: bool = False) -> Packet:
    """Run the framing state machine once over ``read_byte``."""
    if not start_consumed:
        byte = read_byte()
        if byte != DLE:
            raise FramingError(f"Expected DLE at frame start, got 0x{byte:02X}", byte)

    acc = ChecksumAccumulator()

    def read_logical() -> int:
        byte = read_byte()
        if byte == DLE:
            # Stuffed DLE: the pair is one data byte
            read_byte()
        acc.absorb(byte)
        return byte

    type_id = read_logical()
    size = read_logical()
    payload = bytearray()
    while len(payload) < size:
        payload.append(read_logical())
    read_logical()  # checksum

    if acc.value != 0:
        raise ChecksumMismatch(acc.value)

    byte = read_byte()
    if byte != DLE:
        raise FramingError(f"Expected DLE before ETX, got 0x{byte:02X}", byte)
    byte = read_byte()
    if byte != ETX:
        raise FramingError(f"Expected ETX at frame end, got 0x{byte:02X}", byte)

    return Packet(type_id=type_id, payload=bytes(payload))


def decode_packet(transport: ByteTransport) -> Packet:
    """Read exactly one frame from the transport.

    The next byte on the stream must be the start DLE; garbage before it is
    not skipped (see :func:`read_packet_resync` for that).

    Raises:
        FramingError: A start DLE, end DLE or ETX was missing.
        ChecksumMismatch: The frame arrived intact but failed verification.
        TransportError: The transport failed or timed out mid-frame.
    """
    packet = _decode_frame(_physical_reader(transport))
    logger.debug("RX: %r", packet)
    return packet


def parse_packet(data: bytes) -> Packet:
    """Decode a single complete frame held in memory.

    Raises:
        FramingError: The frame is malformed, truncated, or followed by
            extra bytes.
        ChecksumMismatch: The checksum does not verify.
    """
    reader = _BufferReader(bytes(data))
    packet = _decode_frame(reader)
    if reader.remaining:
        raise FramingError(f"{reader.remaining} unexpected bytes after ETX")
    return packet


def _skip_past_frame_end(read_byte: Callable[[], int], limit: int) -> int:
    """Consume bytes up to and including the next unstuffed DLE ETX.

    Returns the number of bytes consumed, which stops at ``limit + 1``.
    """
    count = 0
    after_dle = False
    while count <= limit:
        byte = read_byte()
        count += 1
        if after_dle:
            if byte == ETX:
                break
            after_dle = False
        elif byte == DLE:
            after_dle = True
    return count


def read_packet_resync(
    transport: ByteTransport, max_discard: int = MAX_RESYNC_DISCARD
) -> Packet:
    """Read the next valid frame, skipping noise and corrupt frames.

    Bytes are discarded until a DLE is seen, and decoding starts from there.
    A frame whose checksum fails is dropped along with everything up to the
    next DLE ETX. A frame with a misplaced sentinel is abandoned at the
    offending byte, and a DLE found there is tried again as a start DLE, so
    a frame that lost its trailer does not take the next frame with it.
    Transport failures propagate immediately.

    Args:
        transport: The byte stream.
        max_discard: Give up after this many stray bytes or bad frames.

    Raises:
        FramingError: No valid frame was found within ``max_discard``.
        TransportError: The transport failed or timed out.
    """
    physical = _physical_reader(transport)
    pending: list[int] = []

    def read_byte() -> int:
        if pending:
            return pending.pop()
        return physical()

    discarded = 0
    while discarded <= max_discard:
        if read_byte() != DLE:
            discarded += 1
            continue
        try:
            packet = _decode_frame(read_byte, start_consumed=True)
        except ChecksumMismatch as e:
            logger.warning("Dropping corrupt frame: %s", e)
            discarded += 1 + _skip_past_frame_end(read_byte, max_discard - discarded)
            continue
        except FramingError as e:
            logger.warning("Dropping corrupt frame: %s", e)
            if e.byte == DLE:
                pending.append(e.byte)
            discarded += 1
            continue
        if discarded:
            logger.debug("Resynchronized after discarding %d bytes", discarded)
        logger.debug("RX: %r", packet)
        return packet

    raise FramingError(f"No valid frame found after discarding {discarded} bytes")
