"""Command encoding, response framing and checksums.

Wire layout::

    request   [opcode:1][params:0..N]
    response  0x26 [len:1] [payload:len] [checksum:1]
    alert     0x40 [code:1]
    ready     0x21
    unknown   0x3F

The checksum is the sum of the payload bytes modulo 256.
"""

from __future__ import annotations

from collections.abc import Iterable

from spdtool.exceptions import ChecksumMismatchError, InvalidArgumentError
from spdtool.protocol.types import Marker, Opcode

MAX_PAYLOAD = 255

# Payload returned for a bare READY marker
READY_PAYLOAD = bytes([Marker.READY])


def checksum(payload: Iterable[int]) -> int:
    """Additive checksum: sum of payload bytes modulo 256."""
    return sum(payload) & 0xFF


def verify_checksum(payload: bytes, received: int) -> None:
    """Raise ChecksumMismatchError if *received* does not match *payload*."""
    actual = checksum(payload)
    if actual != received:
        raise ChecksumMismatchError(expected=received, actual=actual, length=len(payload))


def _param_bytes(params: Iterable[int | bytes]) -> bytes:
    out = bytearray()
    for p in params:
        if isinstance(p, (bytes, bytearray)):
            out += p
        else:
            if not 0 <= p <= 0xFF:
                raise InvalidArgumentError(f"Parameter byte out of range: {p}", value=p)
            out.append(p)
    return bytes(out)


def build_command(opcode: Opcode | int, *params: int | bytes) -> bytes:
    """Encode a request as ``[opcode] + params``.

    Params may be single byte values or byte strings, which are spliced in.
    """
    return bytes([int(opcode)]) + _param_bytes(params)


def build_response_frame(payload: bytes) -> bytes:
    """Encode a response frame as the firmware would send it."""
    if len(payload) > MAX_PAYLOAD:
        raise InvalidArgumentError(
            f"Payload {len(payload)} bytes exceeds {MAX_PAYLOAD}", length=len(payload)
        )
    if not payload:
        return bytes([Marker.RESPONSE, 0])
    return bytes([Marker.RESPONSE, len(payload)]) + payload + bytes([checksum(payload)])


def build_alert_frame(code: int) -> bytes:
    return bytes([Marker.ALERT, code])


def split_u16(value: int) -> tuple[int, int]:
    """Split a 16-bit value into (low, high) bytes."""
    return value & 0xFF, (value >> 8) & 0xFF
