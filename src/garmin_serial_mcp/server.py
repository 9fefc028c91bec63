"""MCP server entry point for Garmin GPS units on a serial link.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .protocol.commands import PacketID, build_packet
from .protocol.errors import LinkError
from .protocol.framing import MAX_PAYLOAD_SIZE, encode_packet, parse_packet
from .protocol.parser import parse_response
from .transport.serial_connection import (
    DEFAULT_BAUDRATE,
    SerialConnection,
    list_serial_ports,
)

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "garmin-serial",
    instructions="MCP server for Garmin GPS units on a DLE/ETX serial link",
)

# Global connection state
_connection: SerialConnection | None = None


def _get_connection() -> SerialConnection:
    """Get the active serial connection, raising if not connected."""
    if _connection is None or not _connection.connected:
        raise RuntimeError(
            "Not connected to device. Use the 'connect' tool first."
        )
    return _connection


def _link_error(e: LinkError) -> dict[str, str]:
    return {"error": str(e), "kind": type(e).__name__}


def _parse_hex(payload_hex: str) -> bytes:
    return bytes.fromhex(payload_hex.replace(":", " "))


def _describe(packet) -> dict[str, Any]:
    """Render a packet and whatever it parses to as a JSON-friendly dict."""
    result: dict[str, Any] = {
        "type_id": packet.type_id,
        "payload_hex": packet.payload.hex(" "),
        "length": len(packet.payload),
    }
    try:
        result["type_name"] = PacketID(packet.type_id).name
    except ValueError:
        pass

    parsed = parse_response(packet)
    if parsed is packet:
        return result
    if hasattr(parsed, "to_dict"):
        result["parsed"] = parsed.to_dict()
    elif hasattr(parsed, "to_list"):
        result["parsed"] = parsed.to_list()
    elif isinstance(parsed, list):
        result["parsed"] = parsed
    else:
        result["parsed"] = {
            "acknowledged_id": parsed.acknowledged_id,
            "nak": parsed.is_nak,
        }
    return result


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_ports() -> dict[str, Any]:
    """List serial ports present on this host with human-readable names."""
    ports = list_serial_ports()
    return {
        "ports": [
            {"device": p.device, "name": p.name, "hwid": p.hwid} for p in ports
        ]
    }


@mcp.tool()
def connect(port: str, baudrate: int = DEFAULT_BAUDRATE) -> dict[str, Any]:
    """Open a serial connection to a Garmin unit.

    Sends a Product Request to confirm the device and retrieve its
    product ID, software version and description.

    Args:
        port: Serial device, e.g. /dev/ttyUSB0, /dev/cu.usbserial or COM3.
        baudrate: Link speed (default 9600).
    """
    global _connection
    if _connection is not None and _connection.connected:
        return {
            "connected": True,
            "message": "Already connected",
            "port": _connection.device_info.port,
        }

    _connection = SerialConnection(port, baudrate=baudrate)
    _connection.open()

    result: dict[str, Any] = {"connected": True, "port": port, "baudrate": baudrate}
    try:
        info = _connection.request_product_data()
    except LinkError as e:
        logger.warning("Product request failed: %s", e)
        result["identify_error"] = str(e)
    else:
        result.update(info.to_dict())
    return result


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Close the serial connection."""
    global _connection
    if _connection is None:
        return {"disconnected": True}
    _connection.close()
    _connection = None
    return {"disconnected": True}


@mcp.tool()
def get_product_data() -> dict[str, Any]:
    """Retrieve product identification (ID, software version, description).

    Sends a Product Request (254) and parses the Product Data (255) reply
    along with any Extended Product Data and Protocol Array that follow.
    """
    conn = _get_connection()
    try:
        info = conn.request_product_data()
    except LinkError as e:
        return _link_error(e)
    return info.to_dict()


# ─── RAW PACKET TOOLS ────────────────────────────────────────────────

@mcp.tool()
def send_packet(
    type_id: int,
    payload_hex: str = "",
    expect_ack: bool = True,
) -> dict[str, Any]:
    """Send one packet to the device.

    Args:
        type_id: Packet type ID (0-255).
        payload_hex: Payload as hex, e.g. "0a 00" (max 255 bytes).
        expect_ack: Wait for the device to acknowledge the packet.
    """
    try:
        packet = build_packet(type_id, _parse_hex(payload_hex))
    except ValueError as e:
        return {"error": str(e)}

    conn = _get_connection()
    try:
        conn.send_packet(packet, expect_ack=expect_ack)
    except LinkError as e:
        return _link_error(e)
    return {"sent": True, "type_id": type_id, "acknowledged": expect_ack}


@mcp.tool()
def read_packet(acknowledge: bool = True) -> dict[str, Any]:
    """Read the next packet from the device.

    Args:
        acknowledge: Send an ACK for the received packet.
    """
    conn = _get_connection()
    try:
        packet = conn.receive_packet(acknowledge=acknowledge)
    except LinkError as e:
        return _link_error(e)
    return _describe(packet)


@mcp.tool()
def encode_frame(type_id: int, payload_hex: str = "") -> dict[str, Any]:
    """Show the wire frame for a packet without sending it.

    Args:
        type_id: Packet type ID (0-255).
        payload_hex: Payload as hex.
    """
    try:
        packet = build_packet(type_id, _parse_hex(payload_hex))
    except ValueError as e:
        return {"error": str(e)}

    try:
        frame = encode_packet(packet)
    except LinkError as e:
        return _link_error(e)
    return {"frame_hex": frame.hex(" "), "length": len(frame)}


@mcp.tool()
def decode_frame(frame_hex: str) -> dict[str, Any]:
    """Decode a captured wire frame (DLE ... DLE ETX) into a packet.

    Args:
        frame_hex: The complete frame as hex.
    """
    try:
        data = _parse_hex(frame_hex)
    except ValueError as e:
        return {"error": str(e)}

    try:
        packet = parse_packet(data)
    except LinkError as e:
        return _link_error(e)
    return _describe(packet)


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("garmin://device/info")
def resource_device_info() -> str:
    """Port, speed, and product identification of the connected unit."""
    if _connection is None or not _connection.connected:
        return json.dumps({"connected": False})

    info = _connection.device_info
    return json.dumps({
        "connected": True,
        "port": info.port,
        "baudrate": info.baudrate,
        "product_id": info.product_id,
        "software_version": info.software_version,
        "description": info.description,
    })


@mcp.resource("garmin://device/status")
def resource_device_status() -> str:
    """Connection state."""
    connected = _connection is not None and _connection.connected
    return json.dumps({"connected": connected})


@mcp.resource("garmin://protocol/packet-ids")
def resource_packet_ids() -> str:
    """Basic link packet IDs and framing constants."""
    return json.dumps({
        "packet_ids": {pid.name: pid.value for pid in PacketID},
        "dle": 0x10,
        "etx": 0x03,
        "max_payload": MAX_PAYLOAD_SIZE,
    })


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def diagnose_link(port: str) -> str:
    """Walk through checking a serial link to a Garmin unit.

    Args:
        port: Serial device the unit should be on.
    """
    return f"""Check the Garmin link on {port}.

1. Use list_ports to confirm {port} is present.
2. Use connect with port={port}. A product ID and description mean the
   link works end to end.
3. If connect reports a TransportError, the unit is not answering: check
   the cable, that the unit is powered on, and that its interface is set
   to Garmin (GRMN/GRMN) at 9600 baud.
4. FramingError or ChecksumMismatch means bytes arrive but are garbled:
   check the baud rate and cable quality. Use read_packet a few times and
   decode_frame on captured bytes to narrow it down."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
