"""Exception hierarchy for programmer communication and SPD operations.

Every error carries an :class:`ErrorKind` and a context dict (address,
offset, register, page, phase, ...) so callers can render a precise
message without re-deriving it.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Classification shared by all spdtool errors."""

    INVALID_ARGUMENT = "invalid_argument"
    TIMEOUT = "timeout"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    UNSUPPORTED_HARDWARE = "unsupported_hardware"
    DEVICE_REPORTED_FAILURE = "device_reported_failure"
    EXHAUSTED_RETRIES = "exhausted_retries"
    TRANSPORT = "transport"
    NOT_CONNECTED = "not_connected"
    CANCELLED = "cancelled"
    PROTOCOL_MISUSE = "protocol_misuse"


# Kinds the paging layer may retry with backoff
RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.CHECKSUM_MISMATCH,
    ErrorKind.DEVICE_REPORTED_FAILURE,
})


class SpdToolError(Exception):
    """Base exception for all spdtool errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, **context: Any) -> None:
        self.context: dict[str, Any] = context
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class InvalidArgumentError(SpdToolError, ValueError):
    """Caller-side validation failed; nothing was sent to the device."""

    kind = ErrorKind.INVALID_ARGUMENT


class TransportError(SpdToolError):
    """The serial channel could not be opened, written or read."""

    kind = ErrorKind.TRANSPORT


class WriteTimeoutError(TransportError):
    """A command could not be queued on the serial port in time."""

    kind = ErrorKind.TIMEOUT


class NotConnectedError(SpdToolError):
    """An operation was attempted on a closed connection."""

    kind = ErrorKind.NOT_CONNECTED


class ResponseTimeoutError(SpdToolError):
    """No byte arrived within the budget for a receive phase.

    ``phase`` is one of ``marker``, ``length``, ``payload`` or ``checksum``.
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, phase: str = "marker", **context: Any) -> None:
        self.phase = phase
        super().__init__(message, phase=phase, **context)


class ChecksumMismatchError(SpdToolError):
    """The additive checksum of a response payload did not match."""

    kind = ErrorKind.CHECKSUM_MISMATCH

    def __init__(self, expected: int, actual: int, **context: Any) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch: frame says 0x{expected:02X}, payload sums to 0x{actual:02X}",
            expected=expected,
            actual=actual,
            **context,
        )


class UnsupportedHardwareError(SpdToolError):
    """The firmware answered with the unsupported-hardware marker."""

    kind = ErrorKind.UNSUPPORTED_HARDWARE


class DeviceReportedFailureError(SpdToolError):
    """A well-formed response whose payload encodes failure."""

    kind = ErrorKind.DEVICE_REPORTED_FAILURE


class WriteProtectionError(DeviceReportedFailureError):
    """Write protection could not be cleared before programming."""


class ExhaustedRetriesError(SpdToolError):
    """A chunk still failed after every configured attempt."""

    kind = ErrorKind.EXHAUSTED_RETRIES

    def __init__(
        self,
        message: str,
        offset: int,
        attempts: int,
        last_kind: ErrorKind | None = None,
        **context: Any,
    ) -> None:
        self.offset = offset
        self.attempts = attempts
        self.last_kind = last_kind
        super().__init__(
            message, offset=offset, attempts=attempts, last_kind=last_kind, **context
        )


class PartialWriteError(ExhaustedRetriesError):
    """Some chunks of a whole-image write could not be programmed."""

    def __init__(
        self,
        message: str,
        failed_offsets: list[int],
        attempts: int,
        **context: Any,
    ) -> None:
        self.failed_offsets = list(failed_offsets)
        super().__init__(
            message,
            offset=failed_offsets[0] if failed_offsets else 0,
            attempts=attempts,
            last_kind=ErrorKind.DEVICE_REPORTED_FAILURE,
            failed_offsets=self.failed_offsets,
            **context,
        )


class OperationCancelledError(SpdToolError):
    """A whole-image operation was cancelled between chunks."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str, offset: int, **context: Any) -> None:
        self.offset = offset
        super().__init__(message, offset=offset, **context)


class ProtocolMisuseError(SpdToolError):
    """The engine's exclusive section was used incorrectly.

    Raised when an alert handler tries to talk to the device from inside
    the receive loop that is dispatching it, or when half of an exchange
    is sent or received without holding the section.
    """

    kind = ErrorKind.PROTOCOL_MISUSE
