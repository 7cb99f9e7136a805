"""Typed commands, connection lifecycle and result models for the SPD programmer."""

from spdtool.device.client import SpdToolClient
from spdtool.device.models import (
    BusChange,
    ConnectionState,
    DeviceIdentity,
    ModuleInfo,
    ModuleType,
    PmicInfo,
    RswpMap,
    RswpSupport,
    VerifyResult,
    WriteReport,
)

__all__ = [
    "BusChange",
    "ConnectionState",
    "DeviceIdentity",
    "ModuleInfo",
    "ModuleType",
    "PmicInfo",
    "RswpMap",
    "RswpSupport",
    "SpdToolClient",
    "VerifyResult",
    "WriteReport",
]
