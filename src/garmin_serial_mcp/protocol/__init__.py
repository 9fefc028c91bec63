"""Protocol layer: packet framing, checksum, packet IDs, and response parsing."""

from .errors import (
    ChecksumMismatch,
    FramingError,
    LinkError,
    PayloadTooLarge,
    ProtocolError,
    TransportError,
)
from .framing import (
    Packet,
    decode_packet,
    encode_packet,
    parse_packet,
    read_packet_resync,
    write_packet,
)
from .commands import PacketID, build_packet
