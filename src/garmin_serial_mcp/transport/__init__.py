"""Serial transport and port discovery."""

from .serial_connection import SerialConnection, list_serial_ports
