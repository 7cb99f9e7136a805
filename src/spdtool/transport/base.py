"""Abstract transport layer for the programmer's serial channel."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class SerialConfig:
    """Serial port configuration for the programmer."""

    port: str
    baudrate: int = 115200
    write_timeout_s: float = 2.0
    # The firmware needs about two seconds after the port opens before it
    # parses commands reliably.
    boot_delay_s: float = 2.0
    dtr: bool = True
    rts: bool = True


class Transport(ABC):
    """Exclusive byte channel to one programmer.

    Implementations provide whole-buffer writes, single-byte reads with a
    timeout, and buffer flushing. ``close()`` must be idempotent.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the channel is claimed."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable endpoint name (port path)."""

    @abstractmethod
    def open(self) -> None:
        """Claim the channel, wait for the device to boot and flush buffers.

        Raises:
            TransportError: If the endpoint cannot be claimed.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the channel. Safe to call more than once."""

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Queue *data* in a single write.

        Raises:
            WriteTimeoutError: If the bytes could not be queued in time.
        """

    @abstractmethod
    def read_byte(self, timeout: float) -> int | None:
        """Return one byte, or None if nothing arrived within *timeout* seconds."""

    @abstractmethod
    def flush(self) -> None:
        """Discard anything pending in the input and output buffers."""

    def __enter__(self) -> Transport:
        self.open()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
