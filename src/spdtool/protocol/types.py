"""Opcodes, frame markers, alert codes and address constants.

Values must match the programmer firmware's command enum.
"""

from __future__ import annotations

from enum import IntEnum


class Opcode(IntEnum):
    """Command opcodes understood by the firmware."""

    VERSION = 0x02
    PING = 0x04
    NAME = 0x05
    FACTORY_RESET = 0x06
    SPD_READ_PAGE = 0x07
    SPD_WRITE_BYTE = 0x08
    SPD_WRITE_PAGE = 0x09
    SPD_WRITE_TEST = 0x0A
    DDR4_DETECT = 0x0B
    DDR5_DETECT = 0x0C
    SPD5_HUB_REG = 0x0D
    SPD_SIZE = 0x0E
    SCAN_BUS = 0x0F
    BUS_CLOCK = 0x10
    PROBE_ADDRESS = 0x11
    PIN_CONTROL = 0x14
    PIN_RESET = 0x15
    RSWP = 0x16
    PSWP = 0x17
    RSWP_REPORT = 0x18
    EEPROM = 0x19


# Sub-selector bytes shared by several commands
CMD_DISABLE = 0x00
CMD_ENABLE = 0x01
CMD_GET = 0xFF


class Marker(IntEnum):
    """Single-byte sentinels that multiplex the inbound stream."""

    RESPONSE = 0x26  # '&' length-prefixed, checksummed payload follows
    ALERT = 0x40  # '@' one alert code byte follows
    READY = 0x21  # '!' no payload
    UNKNOWN = 0x3F  # '?' firmware does not support the requested hardware


class AlertCode(IntEnum):
    """Alert codes pushed by the firmware."""

    READY = 0x21  # '!'
    SLAVE_COUNT_INCREASED = 0x2B  # '+'
    SLAVE_COUNT_DECREASED = 0x2D  # '-'
    CLOCK_INCREASED = 0x2F  # '/'
    CLOCK_DECREASED = 0x5C  # '\'


class Pin(IntEnum):
    """Controllable GPIO pins on the programmer."""

    HV_SWITCH = 0x00  # 9V high voltage for EEPROM programming
    SA1_SWITCH = 0x01


class ClockMode(IntEnum):
    """I2C bus clock selection."""

    STANDARD_100KHZ = 0
    FAST_400KHZ = 1


class HubRegister(IntEnum):
    """SPD5 hub management registers (MRxx)."""

    MR0 = 0x00
    MR1 = 0x01
    MR6 = 0x06
    MR11 = 0x0B  # page select
    MR12 = 0x0C  # RSWP blocks 0-7
    MR13 = 0x0D  # RSWP blocks 8-15
    MR14 = 0x0E
    MR18 = 0x12
    MR20 = 0x14
    MR48 = 0x30  # status
    MR52 = 0x34


# Only the paging and RSWP block registers may be written
WRITABLE_HUB_REGISTERS: frozenset[int] = frozenset({
    HubRegister.MR11,
    HubRegister.MR12,
    HubRegister.MR13,
})

HUB_REGISTER_COUNT = 128

# I2C address ranges (7-bit)
SPD_ADDRESS_MIN = 0x50
SPD_ADDRESS_MAX = 0x57
PMIC_ADDRESS_MIN = 0x48
PMIC_ADDRESS_MAX = 0x4F
I2C_ADDRESS_MAX = 0x7F

# RSWP_REPORT capability bits
RSWP_DDR5 = 0x20
RSWP_DDR4 = 0x10
RSWP_DDR3 = 0x08

# Firmware limits
MAX_READ_LENGTH = 64
MAX_WRITE_LENGTH = 16
WRITE_PAGE_SIZE = 16
MAX_SPD_OFFSET = 1023
MAX_DEVICE_NAME_LENGTH = 16
MAX_EEPROM_READ = 32
INTERNAL_EEPROM_SIZE = 256
RSWP_BLOCK_COUNT = 16
PMIC_REGISTER_COUNT = 256

# SPD_SIZE response code -> bytes
SIZE_CODE_BYTES: dict[int, int] = {
    1: 256,
    2: 512,
    3: 1024,
}


def size_code_to_bytes(code: int) -> int:
    """Convert an SPD_SIZE response code to a byte count (0 if unknown)."""
    return SIZE_CODE_BYTES.get(code, 0)


def is_spd_address(address: int) -> bool:
    return SPD_ADDRESS_MIN <= address <= SPD_ADDRESS_MAX


def is_pmic_address(address: int) -> bool:
    return PMIC_ADDRESS_MIN <= address <= PMIC_ADDRESS_MAX
