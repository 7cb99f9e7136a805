"""Pydantic models for programmer state, detected modules and operation results."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from spdtool.protocol.types import RSWP_DDR3, RSWP_DDR4, RSWP_DDR5


class ConnectionState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"


class ModuleType(StrEnum):
    NOT_DETECTED = "not_detected"
    DDR3_OR_OTHER = "ddr3_or_other"
    DDR4 = "ddr4"
    DDR5 = "ddr5"


class ModuleInfo(BaseModel):
    """Result of one detection call at an SPD address."""

    model_config = ConfigDict(frozen=True)

    address: int
    module_type: ModuleType = ModuleType.NOT_DETECTED
    size: int = 0

    @property
    def detected(self) -> bool:
        return self.module_type != ModuleType.NOT_DETECTED

    @property
    def address_hex(self) -> str:
        return f"0x{self.address:02X}"

    def __str__(self) -> str:
        return f"Address: {self.address_hex}, Type: {self.module_type.value}, Size: {self.size} bytes"


class RswpSupport(BaseModel):
    """Reversible write protection capabilities reported by the firmware."""

    model_config = ConfigDict(frozen=True)

    ddr5: bool = False
    ddr4: bool = False
    ddr3: bool = False

    @classmethod
    def from_mask(cls, mask: int) -> RswpSupport:
        return cls(
            ddr5=bool(mask & RSWP_DDR5),
            ddr4=bool(mask & RSWP_DDR4),
            ddr3=bool(mask & RSWP_DDR3),
        )

    def __str__(self) -> str:
        supported = [
            name for name, flag in (("DDR5", self.ddr5), ("DDR4", self.ddr4), ("DDR3", self.ddr3))
            if flag
        ]
        return ", ".join(supported) if supported else "None"


class DeviceIdentity(BaseModel):
    """Identity of a connected programmer."""

    port: str
    version: int
    name: str = ""

    @property
    def version_text(self) -> str:
        """Firmware version rendered as YYYY-MM-DD (it is stored as YYYYMMDD)."""
        v = self.version
        return f"{v // 10000}-{(v // 100) % 100:02d}-{v % 100:02d}"


class RswpBlockStatus(BaseModel):
    block: int
    protected: bool


class RswpMap(BaseModel):
    """Protection state of every DDR5 RSWP block at one address."""

    address: int
    blocks: list[RswpBlockStatus] = Field(default_factory=list)

    @property
    def protected_blocks(self) -> list[int]:
        return [b.block for b in self.blocks if b.protected]


class PmicInfo(BaseModel):
    """Identification decoded from a PMIC register image."""

    address: int
    device_id: int | None = None
    revision: int | None = None
    output_status: int | None = None

    @property
    def power_good(self) -> list[bool]:
        """PG1..PG4 flags from the output status register, if read."""
        if self.output_status is None:
            return []
        return [bool(self.output_status & (1 << i)) for i in range(4)]


class WriteReport(BaseModel):
    """Outcome of a whole-image write that completed."""

    address: int
    module_type: ModuleType
    bytes_written: int
    chunks: int
    retried_chunks: int = 0
    fallback_chunks: list[int] = Field(default_factory=list)
    rswp_cleared: bool = True


class VerifyResult(BaseModel):
    """Comparison of an image read back from the module with an expected image."""

    address: int
    size: int
    mismatched_offsets: list[int] = Field(default_factory=list)

    @property
    def matches(self) -> bool:
        return not self.mismatched_offsets


class BusChange(BaseModel):
    """Outcome of one bus monitor rescan."""

    present: list[int] = Field(default_factory=list)
    added: list[int] = Field(default_factory=list)
    removed: list[int] = Field(default_factory=list)
    # "alert" when a slave-count alert forced the rescan, else "interval"
    trigger: str = "interval"

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)
