"""pyserial implementation of the programmer transport."""

from __future__ import annotations

import time

import serial
from serial.tools.list_ports import comports

from spdtool.exceptions import NotConnectedError, TransportError, WriteTimeoutError
from spdtool.transport.base import SerialConfig, Transport
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)


def list_serial_ports() -> list[str]:
    """Return the device names of all serial ports on this host."""
    return sorted(p.device for p in comports())


class SerialTransport(Transport):
    """Transport over a USB CDC serial port using pyserial."""

    def __init__(self, config: SerialConfig) -> None:
        self._config = config
        self._serial: serial.Serial | None = None

    @property
    def config(self) -> SerialConfig:
        return self._config

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def name(self) -> str:
        return self._config.port

    def open(self) -> None:
        if self.is_open:
            return

        logger.info("serial_opening", port=self._config.port, baudrate=self._config.baudrate)
        try:
            port = serial.Serial()
            port.port = self._config.port
            port.baudrate = self._config.baudrate
            port.timeout = 0
            port.write_timeout = self._config.write_timeout_s
            port.dtr = self._config.dtr
            port.rts = self._config.rts
            port.open()
        except (serial.SerialException, ValueError) as exc:
            raise TransportError(
                f"Cannot open {self._config.port}: {exc}", port=self._config.port
            ) from exc

        self._serial = port
        time.sleep(self._config.boot_delay_s)
        self.flush()
        logger.info("serial_opened", port=self._config.port)

    def close(self) -> None:
        if self._serial is None:
            return
        logger.info("serial_closing", port=self._config.port)
        try:
            if self._serial.is_open:
                self._serial.close()
        except serial.SerialException as exc:
            logger.warning("serial_close_error", port=self._config.port, error=str(exc))
        finally:
            self._serial = None
        logger.info("serial_closed", port=self._config.port)

    def _require_open(self) -> serial.Serial:
        if self._serial is None or not self._serial.is_open:
            raise NotConnectedError(f"Serial port {self._config.port} is not open")
        return self._serial

    def write(self, data: bytes) -> None:
        port = self._require_open()
        try:
            written = port.write(data)
        except serial.SerialTimeoutException as exc:
            raise WriteTimeoutError(
                f"Write of {len(data)} bytes timed out", port=self._config.port
            ) from exc
        except serial.SerialException as exc:
            raise TransportError(f"Write failed: {exc}", port=self._config.port) from exc
        if written is not None and written != len(data):
            raise WriteTimeoutError(
                f"Only {written}/{len(data)} bytes queued", port=self._config.port
            )

    def read_byte(self, timeout: float) -> int | None:
        port = self._require_open()
        timeout = max(timeout, 0.0)
        try:
            # Each timeout assignment reconfigures the port
            if port.timeout != timeout:
                port.timeout = timeout
            data = port.read(1)
        except serial.SerialException as exc:
            raise TransportError(f"Read failed: {exc}", port=self._config.port) from exc
        if not data:
            return None
        return data[0]

    def flush(self) -> None:
        port = self._require_open()
        try:
            port.reset_input_buffer()
            port.reset_output_buffer()
        except serial.SerialException as exc:
            raise TransportError(f"Flush failed: {exc}", port=self._config.port) from exc
        logger.debug("serial_flushed", port=self._config.port)
