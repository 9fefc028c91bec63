"""Response parsing for basic link packets."""

from __future__ import annotations

from dataclasses import dataclass

from ..models.product import ProductData, ProtocolArray, split_strings
from .commands import PacketID
from .framing import Packet


@dataclass
class AckResponse:
    """Parsed ACK (6) or NAK (21) packet."""

    acknowledged_id: int | None
    is_nak: bool = False

    def __repr__(self) -> str:
        kind = "NAK" if self.is_nak else "ACK"
        return f"AckResponse({kind}, acknowledged_id={self.acknowledged_id})"


def parse_ack(packet: Packet) -> AckResponse | None:
    """Parse an ACK or NAK packet.

    Devices send the acknowledged ID as one or two little-endian bytes; an
    empty NAK carries no ID.
    """
    if packet.type_id not in (PacketID.ACK, PacketID.NAK):
        return None
    acknowledged = int.from_bytes(packet.payload[:2], "little") if packet.payload else None
    return AckResponse(
        acknowledged_id=acknowledged,
        is_nak=packet.type_id == PacketID.NAK,
    )


def parse_product_data(packet: Packet) -> ProductData | None:
    """Parse a Product Data packet."""
    if packet.type_id != PacketID.PRODUCT_DATA:
        return None
    try:
        return ProductData.from_bytes(packet.payload)
    except ValueError:
        return None


def parse_ext_product_data(packet: Packet) -> list[str] | None:
    """Parse an Extended Product Data packet into its strings."""
    if packet.type_id != PacketID.EXT_PRODUCT_DATA:
        return None
    return split_strings(packet.payload)


def parse_protocol_array(packet: Packet) -> ProtocolArray | None:
    """Parse a Protocol Array packet."""
    if packet.type_id != PacketID.PROTOCOL_ARRAY:
        return None
    return ProtocolArray.from_bytes(packet.payload)


def parse_response(packet: Packet):
    """Auto-dispatch a packet to the appropriate parser.

    Returns the parsed object, or the raw Packet if no specific parser
    matches.
    """
    parsers = {
        PacketID.ACK: parse_ack,
        PacketID.NAK: parse_ack,
        PacketID.PRODUCT_DATA: parse_product_data,
        PacketID.EXT_PRODUCT_DATA: parse_ext_product_data,
        PacketID.PROTOCOL_ARRAY: parse_protocol_array,
    }
    parser = parsers.get(packet.type_id)
    if parser:
        result = parser(packet)
        if result is not None:
            return result
    return packet
