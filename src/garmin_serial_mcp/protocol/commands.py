"""Basic link packet IDs and packet builders.

Every device implements the L000 Basic Link Protocol, which is used to ask
the device who it is before any product-specific protocol is chosen.
"""

from __future__ import annotations

from enum import IntEnum

from .framing import Packet, encode_packet


class PacketID(IntEnum):
    """Packet type identifiers of the basic link protocol."""

    ACK = 6
    NAK = 21
    EXT_PRODUCT_DATA = 248  # may not be implemented in all devices
    PROTOCOL_ARRAY = 253  # may not be implemented in all devices
    PRODUCT_RQST = 254
    PRODUCT_DATA = 255


# Packets that are never themselves acknowledged
HANDSHAKE_IDS = frozenset({PacketID.ACK, PacketID.NAK})


def build_packet(type_id: int, payload: bytes = b"") -> Packet:
    """Build a packet, validating the type ID."""
    return Packet(type_id=int(type_id), payload=payload)


def build_frame(type_id: int, payload: bytes = b"") -> bytes:
    """Build the wire frame for a packet in one step."""
    return encode_packet(build_packet(type_id, payload))


def build_product_request() -> Packet:
    """Build a Product Request (254) asking the device to identify itself."""
    return build_packet(PacketID.PRODUCT_RQST)


def build_ack(packet_id: int) -> Packet:
    """Build an ACK for a received packet.

    The acknowledged ID is sent as a 16-bit little-endian value.
    """
    if not 0 <= packet_id <= 0xFF:
        raise ValueError(f"Packet ID must be 0-255, got {packet_id}")
    return build_packet(PacketID.ACK, int(packet_id).to_bytes(2, "little"))


def build_nak(packet_id: int | None = None) -> Packet:
    """Build a NAK.

    A corrupted packet's ID usually cannot be trusted, so the ID is optional.
    """
    if packet_id is None:
        return build_packet(PacketID.NAK)
    if not 0 <= packet_id <= 0xFF:
        raise ValueError(f"Packet ID must be 0-255, got {packet_id}")
    return build_packet(PacketID.NAK, int(packet_id).to_bytes(2, "little"))
