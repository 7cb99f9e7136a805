"""Wire protocol: constants, framing, the request/response engine and alerts."""

from spdtool.protocol.alerts import AlertDispatcher, AlertEvent, AlertKind, interpret_alert
from spdtool.protocol.engine import EngineConfig, ProtocolEngine
from spdtool.protocol.framing import build_command, checksum
from spdtool.protocol.types import AlertCode, ClockMode, HubRegister, Marker, Opcode, Pin

__all__ = [
    "AlertCode",
    "AlertDispatcher",
    "AlertEvent",
    "AlertKind",
    "ClockMode",
    "EngineConfig",
    "HubRegister",
    "Marker",
    "Opcode",
    "Pin",
    "ProtocolEngine",
    "build_command",
    "checksum",
    "interpret_alert",
]
