"""Transport layer for the programmer's serial link."""

from spdtool.transport.base import SerialConfig, Transport
from spdtool.transport.serial_link import SerialTransport, list_serial_ports

__all__ = [
    "SerialConfig",
    "SerialTransport",
    "Transport",
    "list_serial_ports",
]
