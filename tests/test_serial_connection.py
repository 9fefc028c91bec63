"""Tests for the pyserial-backed connection and the basic link exchange."""

import struct
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import serial

from garmin_serial_mcp.protocol.commands import PacketID, build_ack, build_nak
from garmin_serial_mcp.protocol.errors import (
    ChecksumMismatch,
    PayloadTooLarge,
    ProtocolError,
    TransportError,
)
from garmin_serial_mcp.protocol.framing import Packet, encode_packet
from garmin_serial_mcp.transport.serial_connection import (
    DEFAULT_BAUDRATE,
    MAX_FOLLOW_UP_PACKETS,
    READ_TIMEOUT,
    SerialConnection,
    list_serial_ports,
)

PRODUCT_PAYLOAD = struct.pack("<Hh", 73, 320) + b"GPS 12XL Software Version 3.20\x00"


class FakeSerial:
    """Stand-in for serial.Serial with a scripted receive buffer."""

    def __init__(self, incoming: bytes = b""):
        self.incoming = bytearray(incoming)
        self.written: list[bytes] = []
        self.is_open = True
        self.timeout = READ_TIMEOUT
        self.timeouts_seen: list[float] = []
        self.short_write = False
        self.fail_close = False

    def feed(self, *packets: Packet) -> None:
        for packet in packets:
            self.incoming += encode_packet(packet)

    def read(self, size: int = 1) -> bytes:
        self.timeouts_seen.append(self.timeout)
        data = bytes(self.incoming[:size])
        del self.incoming[:size]
        return data

    def write(self, data: bytes) -> int:
        self.written.append(bytes(data))
        return len(data) - 1 if self.short_write else len(data)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        self.incoming.clear()

    def close(self) -> None:
        if self.fail_close:
            raise OSError("close failed")
        self.is_open = False


@pytest.fixture
def fake_serial():
    return FakeSerial()


@pytest.fixture
def conn(fake_serial):
    """An open SerialConnection backed by FakeSerial."""
    with patch("serial.Serial", return_value=fake_serial) as serial_cls:
        connection = SerialConnection("/dev/ttyUSB0")
        connection.open()
        connection.serial_cls = serial_cls
        yield connection


def test_open_configures_port(conn):
    """The port is opened 9600 8N1 with exclusive access."""
    kwargs = conn.serial_cls.call_args.kwargs
    assert kwargs["port"] == "/dev/ttyUSB0"
    assert kwargs["baudrate"] == DEFAULT_BAUDRATE == 9600
    assert kwargs["bytesize"] == serial.EIGHTBITS
    assert kwargs["parity"] == serial.PARITY_NONE
    assert kwargs["stopbits"] == serial.STOPBITS_ONE
    assert kwargs["timeout"] == READ_TIMEOUT
    assert kwargs["exclusive"] is True
    assert conn.connected


def test_open_failure_raises_connection_error():
    """A port that cannot be opened raises ConnectionError."""
    with patch("serial.Serial", side_effect=serial.SerialException("busy")):
        with pytest.raises(ConnectionError):
            SerialConnection("/dev/ttyUSB9").open()


def test_context_manager_closes(fake_serial):
    """Leaving the with-block closes the port."""
    with patch("serial.Serial", return_value=fake_serial):
        with SerialConnection("/dev/ttyUSB0") as connection:
            assert connection.connected
    assert not fake_serial.is_open
    assert not connection.connected


def test_close_swallows_errors(conn, fake_serial):
    """Errors while closing are logged, and state is cleared anyway."""
    fake_serial.fail_close = True
    conn.close()
    assert not conn.connected


def test_read_exact(conn, fake_serial):
    """read returns exactly the requested number of bytes."""
    fake_serial.incoming += b"\x10\x03\x00"
    assert conn.read(2) == b"\x10\x03"


def test_read_timeout(conn):
    """A read that comes back short is a TransportError."""
    with pytest.raises(TransportError):
        conn.read(1)


def test_read_uses_explicit_timeout(conn, fake_serial):
    """A per-call timeout is applied to the port."""
    fake_serial.incoming += b"\x00"
    conn.read(1, timeout=0.25)
    assert fake_serial.timeouts_seen == [0.25]


def test_read_serial_exception(conn, fake_serial):
    """pyserial errors become TransportError."""
    fake_serial.read = MagicMock(side_effect=serial.SerialException("gone"))
    with pytest.raises(TransportError):
        conn.read(1)


def test_read_not_connected():
    """Reading before open is a TransportError."""
    with pytest.raises(TransportError):
        SerialConnection("/dev/ttyUSB0").read(1)


def test_short_write(conn, fake_serial):
    """A write that does not take every byte is a TransportError."""
    fake_serial.short_write = True
    with pytest.raises(TransportError):
        conn.write(b"\x10\xfe\x00\x02\x10\x03")


def test_send_packet_waits_for_ack(conn, fake_serial):
    """send_packet writes the frame and consumes the matching ACK."""
    fake_serial.feed(build_ack(PacketID.PRODUCT_RQST))
    conn.send_packet(Packet(PacketID.PRODUCT_RQST))
    assert fake_serial.written == [bytes([0x10, 0xFE, 0x00, 0x02, 0x10, 0x03])]
    assert not fake_serial.incoming


def test_send_packet_without_ack(conn, fake_serial):
    """expect_ack=False only writes."""
    conn.send_packet(Packet(0x0A, b"\x01\x00"), expect_ack=False)
    assert len(fake_serial.written) == 1


def test_send_packet_nak(conn, fake_serial):
    """A NAK from the device is a ProtocolError."""
    fake_serial.feed(Packet(PacketID.NAK, b"\xfe\x00"))
    with pytest.raises(ProtocolError):
        conn.send_packet(Packet(PacketID.PRODUCT_RQST))


def test_send_packet_wrong_ack(conn, fake_serial):
    """An ACK for another packet ID is a ProtocolError."""
    fake_serial.feed(build_ack(0x0A))
    with pytest.raises(ProtocolError):
        conn.send_packet(Packet(PacketID.PRODUCT_RQST))


def test_send_packet_no_answer(conn):
    """Silence after sending is a TransportError."""
    with pytest.raises(TransportError):
        conn.send_packet(Packet(PacketID.PRODUCT_RQST))


def test_send_packet_too_large(conn, fake_serial):
    """Oversize payloads never reach the port."""
    with pytest.raises(PayloadTooLarge):
        conn.send_packet(Packet(0x01, bytes(256)))
    assert fake_serial.written == []


def test_receive_packet_acknowledges(conn, fake_serial):
    """A received data packet is ACKed."""
    fake_serial.feed(Packet(0x22, b"\x01\x02"))
    packet = conn.receive_packet()
    assert packet == Packet(0x22, b"\x01\x02")
    assert fake_serial.written == [encode_packet(build_ack(0x22))]


def test_receive_packet_does_not_ack_ack(conn, fake_serial):
    """ACK packets themselves are not acknowledged."""
    fake_serial.feed(build_ack(0x22))
    conn.receive_packet()
    assert fake_serial.written == []


def test_receive_packet_corrupt(conn, fake_serial):
    """A bad checksum surfaces and nothing is acknowledged."""
    fake_serial.incoming += bytes([0x10, 0x22, 0x00, 0x00, 0x10, 0x03])
    with pytest.raises(ChecksumMismatch):
        conn.receive_packet()
    assert fake_serial.written == []


def test_request_product_data(conn, fake_serial):
    """The full product exchange collects product, extended data and protocols."""
    protocols = struct.pack("<BH", ord("L"), 1) + struct.pack("<BH", ord("A"), 10)
    fake_serial.feed(
        build_ack(PacketID.PRODUCT_RQST),
        Packet(PacketID.PRODUCT_DATA, PRODUCT_PAYLOAD),
        Packet(PacketID.EXT_PRODUCT_DATA, b"SN 42\x00"),
        Packet(PacketID.PROTOCOL_ARRAY, protocols),
    )

    info = conn.request_product_data()

    assert info.product.product_id == 73
    assert info.product.description == "GPS 12XL Software Version 3.20"
    assert info.ext_data == ["SN 42"]
    assert info.protocols.to_list() == ["L001", "A010"]
    assert fake_serial.written == [
        encode_packet(Packet(PacketID.PRODUCT_RQST)),
        encode_packet(build_ack(PacketID.PRODUCT_DATA)),
        encode_packet(build_ack(PacketID.EXT_PRODUCT_DATA)),
        encode_packet(build_ack(PacketID.PROTOCOL_ARRAY)),
    ]
    assert conn.device_info.product_id == 73


def test_request_product_data_without_follow_up(conn, fake_serial):
    """Units without a Protocol Array end the exchange after Product Data."""
    fake_serial.feed(
        build_ack(PacketID.PRODUCT_RQST),
        Packet(PacketID.PRODUCT_DATA, PRODUCT_PAYLOAD),
    )
    info = conn.request_product_data()
    assert info.protocols is None
    assert info.ext_data == []
    assert conn.timeout == READ_TIMEOUT


def test_request_product_data_naks_corrupt_follow_up(conn, fake_serial):
    """A garbled Extended Product Data packet is NAKed; product data survives."""
    fake_serial.feed(
        build_ack(PacketID.PRODUCT_RQST),
        Packet(PacketID.PRODUCT_DATA, PRODUCT_PAYLOAD),
    )
    fake_serial.incoming += bytes([0x10, 0xF8, 0x00, 0x00, 0x10, 0x03])

    info = conn.request_product_data()

    assert info.product.product_id == 73
    assert info.ext_data == []
    assert fake_serial.written[-1] == encode_packet(build_nak())
    assert conn.device_info.product_id == 73


def test_request_product_data_accepts_resent_follow_up(conn, fake_serial):
    """The packet the unit resends after a NAK is collected and ACKed."""
    fake_serial.feed(
        build_ack(PacketID.PRODUCT_RQST),
        Packet(PacketID.PRODUCT_DATA, PRODUCT_PAYLOAD),
    )
    fake_serial.incoming += bytes([0x10, 0xF8, 0x00, 0x00, 0x10, 0x03])
    resend = encode_packet(Packet(PacketID.EXT_PRODUCT_DATA, b"SN 42\x00"))

    original_reset = fake_serial.reset_input_buffer

    def reset_then_resend():
        original_reset()
        fake_serial.incoming += resend

    fake_serial.reset_input_buffer = reset_then_resend

    info = conn.request_product_data()

    assert info.ext_data == ["SN 42"]
    assert fake_serial.written[-2:] == [
        encode_packet(build_nak()),
        encode_packet(build_ack(PacketID.EXT_PRODUCT_DATA)),
    ]


def test_request_product_data_caps_follow_ups(conn, fake_serial):
    """An endless stream of unrelated packets does not stall the exchange."""
    fake_serial.feed(
        build_ack(PacketID.PRODUCT_RQST),
        Packet(PacketID.PRODUCT_DATA, PRODUCT_PAYLOAD),
        *([Packet(0x33)] * (MAX_FOLLOW_UP_PACKETS + 5)),
    )

    info = conn.request_product_data()

    assert info.product.product_id == 73
    # request, ACK for product data, one ACK per follow-up read
    assert len(fake_serial.written) == 2 + MAX_FOLLOW_UP_PACKETS
    assert fake_serial.incoming


def test_request_product_data_wrong_reply(conn, fake_serial):
    """Anything but Product Data after the ACK is a ProtocolError."""
    fake_serial.feed(build_ack(PacketID.PRODUCT_RQST), Packet(0x33))
    with pytest.raises(ProtocolError):
        conn.request_product_data()


def test_list_serial_ports():
    """Ports get the most readable name available."""
    ports = [
        SimpleNamespace(
            device="/dev/ttyUSB0",
            product=None,
            description="USB-Serial Controller",
            name="ttyUSB0",
            hwid="USB VID:PID=067B:2303",
        ),
        SimpleNamespace(
            device="/dev/ttyS0", product=None, description="n/a", name=None, hwid="n/a"
        ),
    ]
    with patch("serial.tools.list_ports.comports", return_value=ports):
        result = list_serial_ports()

    assert [p.device for p in result] == ["/dev/ttyS0", "/dev/ttyUSB0"]
    assert result[0].name == "ttyS0"
    assert result[1].name == "USB-Serial Controller"
