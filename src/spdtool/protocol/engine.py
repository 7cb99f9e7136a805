"""Request/response engine for the programmer's framed serial protocol.

One exchange is a single command write followed by a receive loop that
reads marker bytes until a response, ready or unsupported marker
arrives. Alerts seen while waiting are handed to the
:class:`~spdtool.protocol.alerts.AlertDispatcher` and the wait resumes.
Between exchanges, :meth:`ProtocolEngine.listen` drains unsolicited
alerts the same way.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from spdtool.exceptions import (
    ChecksumMismatchError,
    ProtocolMisuseError,
    ResponseTimeoutError,
    UnsupportedHardwareError,
)
from spdtool.protocol.alerts import AlertDispatcher
from spdtool.protocol.framing import READY_PAYLOAD, build_command, verify_checksum
from spdtool.protocol.types import Marker, Opcode
from spdtool.transport.base import Transport
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Receive-loop timing, in seconds."""

    default_timeout_s: float = 2.0
    # The length byte must follow the marker almost immediately; a longer
    # stall means the frame was lost.
    length_timeout_s: float = 0.1
    payload_timeout_s: float = 0.1
    checksum_timeout_s: float = 0.05
    alert_timeout_s: float = 0.05
    poll_interval_s: float = 0.001


def _opcode_name(opcode: Opcode | int) -> str:
    try:
        return Opcode(opcode).name
    except ValueError:
        return f"0x{int(opcode):02X}"


class ProtocolEngine:
    """Encodes commands and decodes the multiplexed response stream.

    Access to the transport is serialized: :meth:`exchange` holds an
    exclusive section across the send and the receive, so one caller can
    never observe another caller's response. :meth:`send` and
    :meth:`receive` are the two halves of an exchange and must be called
    inside :meth:`exclusive`.
    """

    def __init__(
        self,
        transport: Transport,
        dispatcher: AlertDispatcher | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher or AlertDispatcher()
        self._config = config or EngineConfig()
        self._lock = threading.Lock()
        self._owner: int | None = None

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def dispatcher(self) -> AlertDispatcher:
        return self._dispatcher

    @property
    def config(self) -> EngineConfig:
        return self._config

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the channel for one logical exchange.

        Raises:
            ProtocolMisuseError: The calling thread already holds the
                channel, e.g. an alert handler issuing a command.
        """
        if self._owner == threading.get_ident():
            raise ProtocolMisuseError(
                "Channel already held by this thread; alert handlers must not "
                "issue commands",
                dispatching=self._dispatcher.dispatching,
            )
        with self._lock:
            self._owner = threading.get_ident()
            try:
                yield
            finally:
                self._owner = None

    def _require_exclusive(self, operation: str) -> None:
        if self._owner != threading.get_ident():
            raise ProtocolMisuseError(
                f"{operation}() must be called inside exclusive()",
                operation=operation,
            )

    def send(self, opcode: Opcode | int, *params: int | bytes) -> None:
        """Write ``[opcode] + params`` as one transport write.

        Stale input is discarded first so a late frame from an earlier
        exchange cannot be taken as this command's response.

        Raises:
            ProtocolMisuseError: The caller does not hold :meth:`exclusive`.
        """
        self._require_exclusive("send")
        frame = build_command(opcode, *params)
        self._transport.flush()
        self._transport.write(frame)
        logger.debug(
            "command_sent",
            opcode=_opcode_name(opcode),
            param_count=len(frame) - 1,
        )

    def receive(self, timeout: float | None = None) -> bytes:
        """Wait for the response to the command just sent.

        Returns the response payload (possibly empty), or ``READY_PAYLOAD``
        for a bare ready marker.

        Raises:
            ResponseTimeoutError: No marker before *timeout*, or a stalled
                length/payload/checksum phase.
            ChecksumMismatchError: The payload checksum did not match.
            UnsupportedHardwareError: The firmware rejected the request.
            ProtocolMisuseError: The caller does not hold :meth:`exclusive`.
        """
        self._require_exclusive("receive")
        cfg = self._config
        budget = cfg.default_timeout_s if timeout is None else timeout
        deadline = time.monotonic() + budget

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            marker = self._transport.read_byte(min(remaining, cfg.poll_interval_s))
            if marker is None:
                continue

            if marker == Marker.RESPONSE:
                return self._read_response()
            if marker == Marker.ALERT:
                self._read_alert()
                continue
            if marker == Marker.READY:
                return READY_PAYLOAD
            if marker == Marker.UNKNOWN:
                raise UnsupportedHardwareError("Device reports unsupported hardware")
            logger.debug("stray_byte_skipped", value=f"0x{marker:02X}")

        raise ResponseTimeoutError(
            f"No response within {budget:.3f}s", phase="marker", timeout_s=budget
        )

    def exchange(
        self,
        opcode: Opcode | int,
        *params: int | bytes,
        timeout: float | None = None,
    ) -> bytes:
        """Send one command and return its response payload."""
        with self.exclusive():
            self.send(opcode, *params)
            try:
                return self.receive(timeout)
            except ChecksumMismatchError as exc:
                logger.warning(
                    "checksum_mismatch",
                    opcode=_opcode_name(opcode),
                    expected=f"0x{exc.expected:02X}",
                    actual=f"0x{exc.actual:02X}",
                )
                raise

    def listen(self, duration: float) -> int:
        """Dispatch alerts that arrive while no command is outstanding.

        Reads the line for *duration* seconds. Anything other than an alert
        is skipped. Returns the number of alerts dispatched.
        """
        dispatched = 0
        with self.exclusive():
            deadline = time.monotonic() + max(duration, 0.0)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return dispatched
                marker = self._transport.read_byte(min(remaining, self._config.poll_interval_s))
                if marker is None:
                    continue
                if marker == Marker.ALERT:
                    dispatched += self._read_alert()
                else:
                    logger.debug("stray_byte_skipped", value=f"0x{marker:02X}")

    def _read_alert(self) -> int:
        # A marker whose code byte never arrives is dropped
        code = self._read_exact(1, self._config.alert_timeout_s, "alert", required=False)
        if code is None:
            logger.debug("alert_code_missing")
            return 0
        self._dispatcher.dispatch(code[0])
        return 1

    def _read_response(self) -> bytes:
        cfg = self._config
        length = self._read_exact(1, cfg.length_timeout_s, "length")[0]
        if length == 0:
            return b""
        payload = self._read_exact(length, cfg.payload_timeout_s, "payload")
        received = self._read_exact(1, cfg.checksum_timeout_s, "checksum")[0]
        verify_checksum(payload, received)
        return payload

    def _read_exact(
        self,
        count: int,
        budget: float,
        phase: str,
        required: bool = True,
    ) -> bytes | None:
        """Read *count* bytes before *budget* elapses.

        Returns None on a stall when *required* is False, otherwise raises
        ResponseTimeoutError naming *phase*.
        """
        deadline = time.monotonic() + budget
        out = bytearray()
        while len(out) < count:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if not required:
                    return None
                raise ResponseTimeoutError(
                    f"Stalled reading {phase}: {len(out)}/{count} bytes",
                    phase=phase,
                    received=len(out),
                    expected=count,
                )
            b = self._transport.read_byte(min(remaining, self._config.poll_interval_s))
            if b is not None:
                out.append(b)
        return bytes(out)
