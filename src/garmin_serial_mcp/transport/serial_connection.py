"""Serial connection to a Garmin GPS unit.

Uses ``pyserial``. The device talks 9600 baud, 8 data bits, no parity,
one stop bit, with no flow control. A read blocks until all requested bytes
arrive or the read timeout, which covers the whole read, expires.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import serial
from serial.tools import list_ports

from ..models.product import ProductInfo
from ..protocol.commands import (
    HANDSHAKE_IDS,
    PacketID,
    build_ack,
    build_nak,
    build_product_request,
)
from ..protocol.errors import (
    ChecksumMismatch,
    FramingError,
    ProtocolError,
    TransportError,
)
from ..protocol.framing import Packet, decode_packet, write_packet
from ..protocol.parser import (
    parse_ack,
    parse_ext_product_data,
    parse_product_data,
    parse_protocol_array,
)

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 9600
READ_TIMEOUT = 1.0
WRITE_TIMEOUT = 1.0
FOLLOW_UP_TIMEOUT = 0.5
MAX_FOLLOW_UP_PACKETS = 16


@dataclass
class SerialPortInfo:
    """A serial port found on the host."""

    device: str
    name: str
    hwid: str = ""


@dataclass
class DeviceInfo:
    """What we know about the connected unit."""

    port: str = ""
    baudrate: int = DEFAULT_BAUDRATE
    product_id: int | None = None
    software_version: float | None = None
    description: str = ""


def _best_port_name(port) -> str:
    """Pick the most human-readable name pyserial has for a port."""
    for candidate in (port.product, port.description, port.name):
        if candidate and candidate != "n/a":
            return candidate
    return os.path.basename(port.device)


def list_serial_ports() -> list[SerialPortInfo]:
    """List the serial ports currently present on the host."""
    ports = [
        SerialPortInfo(device=p.device, name=_best_port_name(p), hwid=p.hwid or "")
        for p in list_ports.comports()
    ]
    return sorted(ports, key=lambda p: p.device)


class SerialConnection:
    """Manages the serial link to a Garmin unit.

    Implements the blocking ``read``/``write`` byte stream the packet codec
    needs, plus the basic link exchange on top of it.

    Usage::

        with SerialConnection("/dev/ttyUSB0") as conn:
            info = conn.request_product_data()
    """

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: float = READ_TIMEOUT,
        write_timeout: float = WRITE_TIMEOUT,
        exclusive: bool = True,
    ) -> None:
        self._port = port
        self._baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = write_timeout
        self._exclusive = exclusive
        self._serial: serial.Serial | None = None
        self._lock = threading.RLock()
        self._device_info = DeviceInfo(port=port, baudrate=baudrate)

    @property
    def connected(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    def __enter__(self) -> SerialConnection:
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ─── Connection lifecycle ─────────────────────────────────────────

    def open(self) -> DeviceInfo:
        """Open and configure the serial port.

        Raises:
            ConnectionError: If the port cannot be opened.
        """
        if self.connected:
            return self._device_info

        try:
            self._serial = serial.Serial(
                port=self._port,
                baudrate=self._baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.timeout,
                write_timeout=self.write_timeout,
                exclusive=self._exclusive,
            )
        except (serial.SerialException, ValueError) as e:
            raise ConnectionError(
                f"Could not open serial port {self._port} at {self._baudrate} baud: {e}"
            ) from e

        # Drop anything the unit sent before we were listening
        self._serial.reset_input_buffer()
        logger.info("Opened %s at %d baud", self._port, self._baudrate)
        return self._device_info

    def close(self) -> None:
        """Close the serial port."""
        if self._serial is None:
            return

        try:
            self._serial.close()
        except Exception as e:
            logger.warning("Error closing %s: %s", self._port, e)
        finally:
            self._serial = None
            logger.info("Closed %s", self._port)

    # ─── Byte stream ──────────────────────────────────────────────────

    def read(self, min_bytes: int = 1, timeout: float | None = None) -> bytes:
        """Read exactly ``min_bytes`` bytes.

        Args:
            min_bytes: Number of bytes required.
            timeout: Time allowed for the whole read in seconds; defaults to
                ``self.timeout``.

        Raises:
            TransportError: If not connected, the read fails, or the timeout
                expires before ``min_bytes`` arrive.
        """
        if not self.connected:
            raise TransportError("Not connected to device")

        effective = self.timeout if timeout is None else timeout
        if self._serial.timeout != effective:
            self._serial.timeout = effective

        try:
            data = self._serial.read(min_bytes)
        except serial.SerialException as e:
            raise TransportError(f"Read failed: {e}") from e

        if len(data) < min_bytes:
            raise TransportError(
                f"Read timed out after {effective}s ({len(data)}/{min_bytes} bytes)"
            )
        return bytes(data)

    def write(self, data: bytes) -> int:
        """Write the whole of ``data``.

        Raises:
            TransportError: If not connected, the write fails or times out,
                or not every byte was accepted.
        """
        if not self.connected:
            raise TransportError("Not connected to device")

        try:
            written = self._serial.write(data)
            self._serial.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write failed: {e}") from e

        if written is not None and written != len(data):
            raise TransportError(f"Short write: {written}/{len(data)} bytes")
        return len(data)

    @contextmanager
    def _read_timeout(self, seconds: float) -> Iterator[None]:
        saved = self.timeout
        self.timeout = seconds
        try:
            yield
        finally:
            self.timeout = saved

    # ─── Packet exchange ──────────────────────────────────────────────

    def send_packet(self, packet: Packet, expect_ack: bool = True) -> None:
        """Send a packet and, by default, wait for the device's ACK.

        Raises:
            PayloadTooLarge: Before anything is written.
            TransportError: If the link fails or times out.
            ProtocolError: If the device NAKs or acknowledges another packet.
        """
        with self._lock:
            write_packet(self, packet)
            if expect_ack:
                self._expect_ack(packet.type_id)

    def _expect_ack(self, type_id: int) -> None:
        reply = decode_packet(self)
        ack = parse_ack(reply)
        if ack is None:
            raise ProtocolError(
                f"Expected ACK for packet {type_id}, got packet {reply.type_id}"
            )
        if ack.is_nak:
            raise ProtocolError(f"Device rejected packet {type_id} (NAK)")
        if ack.acknowledged_id is not None and ack.acknowledged_id != type_id:
            raise ProtocolError(
                f"Device acknowledged packet {ack.acknowledged_id}, expected {type_id}"
            )

    def receive_packet(
        self, acknowledge: bool = True, timeout: float | None = None
    ) -> Packet:
        """Read one packet, acknowledging it unless it is an ACK/NAK itself.

        Raises:
            FramingError, ChecksumMismatch: If the frame is bad.
            TransportError: If the link fails or times out.
        """
        with self._lock:
            if timeout is None:
                packet = decode_packet(self)
            else:
                with self._read_timeout(timeout):
                    packet = decode_packet(self)
            if acknowledge and packet.type_id not in HANDSHAKE_IDS:
                write_packet(self, build_ack(packet.type_id))
            return packet

    def _send_nak(self) -> bool:
        """Drop the rest of a bad frame and ask the device to resend.

        Returns False if the NAK could not be sent.
        """
        try:
            self._serial.reset_input_buffer()
            write_packet(self, build_nak())
        except (serial.SerialException, TransportError) as e:
            logger.warning("Could not send NAK: %s", e)
            return False
        return True

    def expect_packet(self, type_id: int) -> Packet:
        """Read one packet and require a particular type ID."""
        packet = self.receive_packet()
        if packet.type_id != type_id:
            raise ProtocolError(f"Expected packet {type_id}, got {packet.type_id}")
        return packet

    def send_and_receive(self, packet: Packet) -> Packet:
        """Send a packet, wait for its ACK, and return the device's reply."""
        with self._lock:
            self.send_packet(packet)
            return self.receive_packet()

    def request_product_data(self) -> ProductInfo:
        """Ask the unit to identify itself.

        Sends a Product Request, expects an ACK and a Product Data packet,
        then collects any Extended Product Data and Protocol Array packets
        that follow shortly after. A corrupt follow-up packet is NAKed and
        skipped; at most MAX_FOLLOW_UP_PACKETS are read.

        Raises:
            TransportError: If the link fails or the unit does not answer.
            ProtocolError: If the unit answers with something unexpected.
        """
        with self._lock:
            self.send_packet(build_product_request())
            packet = self.expect_packet(PacketID.PRODUCT_DATA)
            product = parse_product_data(packet)
            if product is None:
                raise ProtocolError(
                    f"Malformed product data ({len(packet.payload)} bytes)"
                )
            info = ProductInfo(product=product)

            for _ in range(MAX_FOLLOW_UP_PACKETS):
                try:
                    follow = self.receive_packet(timeout=FOLLOW_UP_TIMEOUT)
                except TransportError:
                    break
                except (FramingError, ChecksumMismatch) as e:
                    logger.warning("Corrupt packet after product data: %s", e)
                    if not self._send_nak():
                        break
                    continue
                if follow.type_id == PacketID.EXT_PRODUCT_DATA:
                    info.ext_data.extend(parse_ext_product_data(follow))
                elif follow.type_id == PacketID.PROTOCOL_ARRAY:
                    info.protocols = parse_protocol_array(follow)
                    break
                else:
                    logger.debug("Ignoring unsolicited %r", follow)

        self._device_info.product_id = product.product_id
        self._device_info.software_version = product.software_version
        self._device_info.description = product.description
        logger.info(
            "Product %d, software %.2f: %s",
            product.product_id,
            product.software_version,
            product.description,
        )
        return info
