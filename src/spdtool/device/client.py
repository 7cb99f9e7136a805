"""Typed command interface to the SPD programmer.

Each method validates its arguments against the firmware's fixed limits,
sends exactly one command through the :class:`ProtocolEngine` and
decodes the response payload. Invalid arguments raise
:class:`InvalidArgumentError` before anything is written to the port.

Usage:
    with SpdToolClient.from_port("/dev/ttyACM0") as tool:
        info = tool.detect_module(0x50)
        data = tool.read_spd(0x50, 0, 64)
"""

from __future__ import annotations

import time
from collections.abc import Callable

from spdtool.device.models import (
    ConnectionState,
    DeviceIdentity,
    ModuleInfo,
    ModuleType,
    RswpSupport,
)
from spdtool.exceptions import (
    DeviceReportedFailureError,
    InvalidArgumentError,
    NotConnectedError,
    SpdToolError,
    TransportError,
)
from spdtool.protocol.alerts import AlertDispatcher, AlertEvent
from spdtool.protocol.engine import EngineConfig, ProtocolEngine
from spdtool.protocol.framing import READY_PAYLOAD, split_u16
from spdtool.protocol.types import (
    CMD_DISABLE,
    CMD_ENABLE,
    CMD_GET,
    HUB_REGISTER_COUNT,
    I2C_ADDRESS_MAX,
    INTERNAL_EEPROM_SIZE,
    MAX_DEVICE_NAME_LENGTH,
    MAX_EEPROM_READ,
    MAX_READ_LENGTH,
    MAX_SPD_OFFSET,
    MAX_WRITE_LENGTH,
    PMIC_ADDRESS_MAX,
    PMIC_ADDRESS_MIN,
    PMIC_REGISTER_COUNT,
    RSWP_BLOCK_COUNT,
    SPD_ADDRESS_MAX,
    SPD_ADDRESS_MIN,
    WRITABLE_HUB_REGISTERS,
    WRITE_PAGE_SIZE,
    ClockMode,
    Opcode,
    Pin,
    is_pmic_address,
    is_spd_address,
    size_code_to_bytes,
)
from spdtool.transport.base import SerialConfig, Transport
from spdtool.utils.logging import get_logger

logger = get_logger(__name__)

# Per-command response budgets (seconds); anything else uses the engine default
_PING_TIMEOUT_S = 0.5
_BYTE_WRITE_TIMEOUT_S = 1.5
_PAGE_WRITE_TIMEOUT_S = 2.0
_WRITE_TEST_TIMEOUT_S = 2.0
_FACTORY_RESET_TIMEOUT_S = 3.0

_CONNECT_PING_ATTEMPTS = 3
_CONNECT_RETRY_DELAY_S = 0.1

_SUCCESS = bytes([1])
_READ_FAILURE = bytes([0])


def _is_success(payload: bytes) -> bool:
    return payload == _SUCCESS


def _read_result(payload: bytes) -> bytes | None:
    return None if payload == _READ_FAILURE else payload


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not low <= value <= high:
        raise InvalidArgumentError(
            f"{name} must be {low}-{high}, got {value}", **{name: value}
        )


def _check_spd_address(address: int) -> None:
    if not is_spd_address(address):
        raise InvalidArgumentError(
            f"Address must be in range 0x{SPD_ADDRESS_MIN:02X}-0x{SPD_ADDRESS_MAX:02X}",
            address=address,
        )


def _check_pmic_address(address: int) -> None:
    if not is_pmic_address(address):
        raise InvalidArgumentError(
            f"Address must be in range 0x{PMIC_ADDRESS_MIN:02X}-0x{PMIC_ADDRESS_MAX:02X}",
            address=address,
        )


class SpdToolClient:
    """One programmer on one transport, addressed through typed commands."""

    def __init__(
        self,
        transport: Transport,
        dispatcher: AlertDispatcher | None = None,
        engine_config: EngineConfig | None = None,
    ) -> None:
        self._transport = transport
        self._engine = ProtocolEngine(transport, dispatcher, engine_config)
        self._state = ConnectionState.CLOSED
        self._identity: DeviceIdentity | None = None
        # Set while connect() pings a device that is not yet OPEN
        self._connecting = False

    @classmethod
    def from_port(
        cls,
        port: str,
        baudrate: int = 115200,
        dispatcher: AlertDispatcher | None = None,
        engine_config: EngineConfig | None = None,
    ) -> SpdToolClient:
        """Build a client on a serial port. Call :meth:`connect` to open it."""
        from spdtool.transport.serial_link import SerialTransport

        transport = SerialTransport(SerialConfig(port=port, baudrate=baudrate))
        return cls(transport, dispatcher=dispatcher, engine_config=engine_config)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.OPEN and self._transport.is_open

    @property
    def identity(self) -> DeviceIdentity | None:
        return self._identity

    @property
    def engine(self) -> ProtocolEngine:
        return self._engine

    @property
    def alerts(self) -> AlertDispatcher:
        return self._engine.dispatcher

    def subscribe_alerts(self, handler: Callable[[AlertEvent], None]) -> Callable[[], None]:
        """Register an alert observer; returns its unsubscribe callable."""
        return self._engine.dispatcher.subscribe(handler)

    def wait_for_alerts(self, timeout: float) -> int:
        """Listen for unsolicited alerts for *timeout* seconds.

        Alerts are delivered to subscribers as they arrive. Returns how many
        were dispatched.
        """
        self._require_connection()
        return self._engine.listen(timeout)

    # --- Connection ---

    def connect(self) -> DeviceIdentity:
        """Open the transport, confirm the device answers and read its identity.

        The connection becomes OPEN only after a successful ping. On failure
        the state stays CLOSED, every command raises NotConnectedError and
        the transport is left for the caller to release with :meth:`close`.
        """
        if self.is_connected and self._identity is not None:
            return self._identity

        logger.info("device_connecting", port=self._transport.name)
        if not self._transport.is_open:
            self._transport.open()

        responded = False
        self._connecting = True
        try:
            for attempt in range(1, _CONNECT_PING_ATTEMPTS + 1):
                try:
                    if self.ping():
                        responded = True
                        break
                except SpdToolError as exc:
                    logger.warning(
                        "connect_ping_failed", attempt=attempt, error=str(exc), kind=exc.kind.value
                    )
                    time.sleep(_CONNECT_RETRY_DELAY_S)
        finally:
            self._connecting = False
        if not responded:
            raise TransportError(
                f"Device not responding to ping after {_CONNECT_PING_ATTEMPTS} attempts",
                port=self._transport.name,
            )

        self._state = ConnectionState.OPEN
        try:
            self._identity = DeviceIdentity(
                port=self._transport.name,
                version=self.get_version(),
                name=self.get_name(),
            )
        except SpdToolError:
            self._state = ConnectionState.CLOSED
            raise
        logger.info(
            "device_connected",
            port=self._transport.name,
            name=self._identity.name,
            version=f"0x{self._identity.version:08X}",
        )
        return self._identity

    def close(self) -> None:
        """Release the transport. Safe to call more than once."""
        if self._state == ConnectionState.OPEN:
            logger.info("device_disconnecting", port=self._transport.name)
        self._state = ConnectionState.CLOSED
        self._identity = None
        self._transport.close()

    def __enter__(self) -> SpdToolClient:
        try:
            self.connect()
        except Exception:
            self.close()
            raise
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _require_connection(self) -> None:
        if not self._transport.is_open or (
            self._state != ConnectionState.OPEN and not self._connecting
        ):
            raise NotConnectedError(
                "Device not connected. Call connect() first.", state=self._state.value
            )

    def _exchange(self, opcode: Opcode, *params: int | bytes, timeout: float | None = None) -> bytes:
        self._require_connection()
        return self._engine.exchange(opcode, *params, timeout=timeout)

    # --- Device ---

    def ping(self) -> bool:
        return self._exchange(Opcode.PING, timeout=_PING_TIMEOUT_S) == READY_PAYLOAD

    def get_version(self) -> int:
        """Firmware version, a YYYYMMDD number sent as 4 little-endian bytes."""
        payload = self._exchange(Opcode.VERSION)
        if len(payload) != 4:
            raise DeviceReportedFailureError(
                f"Invalid version response: {len(payload)} bytes", length=len(payload)
            )
        return int.from_bytes(payload, "little")

    def get_name(self) -> str:
        """Device name; the payload is cut at the first NUL, if any."""
        payload = self._exchange(Opcode.NAME, CMD_GET)
        end = payload.find(0)
        if end >= 0:
            payload = payload[:end]
        return payload.decode("ascii", errors="replace")

    def set_name(self, name: str) -> bool:
        if not name:
            raise InvalidArgumentError("Name cannot be empty")
        if len(name) > MAX_DEVICE_NAME_LENGTH:
            raise InvalidArgumentError(
                f"Name must be {MAX_DEVICE_NAME_LENGTH} characters or less", name=name
            )
        try:
            raw = name.encode("ascii")
        except UnicodeEncodeError as exc:
            raise InvalidArgumentError("Name must be ASCII", name=name) from exc
        return _is_success(self._exchange(Opcode.NAME, len(raw), raw))

    def factory_reset(self) -> bool:
        """Erase all settings stored on the programmer."""
        logger.warning("factory_reset_requested", port=self._transport.name)
        return _is_success(self._exchange(Opcode.FACTORY_RESET, timeout=_FACTORY_RESET_TIMEOUT_S))

    # --- I2C bus ---

    def scan_bus(self) -> list[int]:
        """SPD addresses that answered; bit i of the response means 0x50 + i."""
        payload = self._exchange(Opcode.SCAN_BUS)
        if not payload:
            return []
        mask = payload[0]
        return [SPD_ADDRESS_MIN + i for i in range(8) if mask & (1 << i)]

    def probe_address(self, address: int) -> bool:
        _check_range("address", address, 0, I2C_ADDRESS_MAX)
        return _is_success(self._exchange(Opcode.PROBE_ADDRESS, address))

    def get_clock_mode(self) -> ClockMode:
        payload = self._exchange(Opcode.BUS_CLOCK, CMD_GET)
        if not payload:
            raise DeviceReportedFailureError("Failed to get I2C clock mode")
        try:
            return ClockMode(payload[0])
        except ValueError as exc:
            raise DeviceReportedFailureError(
                f"Unknown clock mode 0x{payload[0]:02X}", value=payload[0]
            ) from exc

    def set_clock_mode(self, mode: ClockMode | int) -> bool:
        _check_range("mode", int(mode), ClockMode.STANDARD_100KHZ, ClockMode.FAST_400KHZ)
        return _is_success(self._exchange(Opcode.BUS_CLOCK, int(mode)))

    # --- SPD read / write ---

    def _read(self, address: int, offset: int, length: int) -> bytes | None:
        _check_range("length", length, 1, MAX_READ_LENGTH)
        _check_range("offset", offset, 0, MAX_SPD_OFFSET)
        lo, hi = split_u16(offset)
        return _read_result(self._exchange(Opcode.SPD_READ_PAGE, address, lo, hi, length))

    def read_spd(self, address: int, offset: int, length: int) -> bytes | None:
        """Read 1-64 bytes at *offset*; None if the device reports failure."""
        _check_spd_address(address)
        return self._read(address, offset, length)

    def read_pmic(self, address: int, register: int, length: int) -> bytes | None:
        """Read 1-64 PMIC registers starting at *register*."""
        _check_pmic_address(address)
        _check_range("register", register, 0, PMIC_REGISTER_COUNT - 1)
        return self._read(address, register, length)

    def write_spd_byte(self, address: int, offset: int, value: int) -> bool:
        _check_spd_address(address)
        _check_range("offset", offset, 0, MAX_SPD_OFFSET)
        _check_range("value", value, 0, 0xFF)
        lo, hi = split_u16(offset)
        return _is_success(
            self._exchange(Opcode.SPD_WRITE_BYTE, address, lo, hi, value, timeout=_BYTE_WRITE_TIMEOUT_S)
        )

    def write_spd_page(self, address: int, offset: int, data: bytes) -> bool:
        """Write up to 16 bytes that stay within one 16-byte page."""
        _check_spd_address(address)
        if not data:
            raise InvalidArgumentError("Data cannot be empty", address=address, offset=offset)
        if len(data) > MAX_WRITE_LENGTH:
            raise InvalidArgumentError(
                f"Data length must be {MAX_WRITE_LENGTH} bytes or less",
                address=address,
                offset=offset,
                length=len(data),
            )
        _check_range("offset", offset, 0, MAX_SPD_OFFSET)
        if offset % WRITE_PAGE_SIZE + len(data) > WRITE_PAGE_SIZE:
            raise InvalidArgumentError(
                "Write would cross 16-byte page boundary",
                address=address,
                offset=offset,
                length=len(data),
            )
        lo, hi = split_u16(offset)
        return _is_success(
            self._exchange(
                Opcode.SPD_WRITE_PAGE,
                address,
                lo,
                hi,
                len(data),
                bytes(data),
                timeout=_PAGE_WRITE_TIMEOUT_S,
            )
        )

    def test_write(self, address: int, offset: int) -> bool:
        """Ask the firmware to check that *offset* is writable."""
        _check_spd_address(address)
        _check_range("offset", offset, 0, MAX_SPD_OFFSET)
        lo, hi = split_u16(offset)
        return _is_success(
            self._exchange(Opcode.SPD_WRITE_TEST, address, lo, hi, timeout=_WRITE_TEST_TIMEOUT_S)
        )

    def write_pmic_register(self, address: int, register: int, value: int) -> bool:
        _check_pmic_address(address)
        _check_range("register", register, 0, PMIC_REGISTER_COUNT - 1)
        _check_range("value", value, 0, 0xFF)
        lo, hi = split_u16(register)
        return _is_success(
            self._exchange(Opcode.SPD_WRITE_BYTE, address, lo, hi, value, timeout=_BYTE_WRITE_TIMEOUT_S)
        )

    # --- Detection ---

    def detect_ddr4(self, address: int) -> bool:
        _check_spd_address(address)
        return _is_success(self._exchange(Opcode.DDR4_DETECT, address))

    def detect_ddr5(self, address: int) -> bool:
        _check_spd_address(address)
        return _is_success(self._exchange(Opcode.DDR5_DETECT, address))

    def get_spd_size_code(self, address: int) -> int:
        """Size code (0 unknown, 1 = 256, 2 = 512, 3 = 1024 bytes)."""
        _check_spd_address(address)
        payload = self._exchange(Opcode.SPD_SIZE, address)
        return payload[0] if payload else 0

    def get_spd_size(self, address: int) -> int:
        return size_code_to_bytes(self.get_spd_size_code(address))

    def detect_module(self, address: int) -> ModuleInfo:
        """Classify the module at *address*: DDR5, then DDR4, then any SPD."""
        _check_spd_address(address)
        if self.detect_ddr5(address):
            info = ModuleInfo(address=address, module_type=ModuleType.DDR5, size=1024)
        elif self.detect_ddr4(address):
            info = ModuleInfo(address=address, module_type=ModuleType.DDR4, size=512)
        elif self.probe_address(address):
            info = ModuleInfo(
                address=address,
                module_type=ModuleType.DDR3_OR_OTHER,
                size=self.get_spd_size(address),
            )
        else:
            info = ModuleInfo(address=address)
        logger.info(
            "module_detected",
            address=info.address_hex,
            module_type=info.module_type.value,
            size=info.size,
        )
        return info

    # --- SPD5 hub registers ---

    def read_hub_register(self, address: int, register: int) -> int | None:
        """Read an SPD5 hub register (MR0-MR127); None if nothing came back."""
        _check_spd_address(address)
        _check_range("register", register, 0, HUB_REGISTER_COUNT - 1)
        payload = self._exchange(Opcode.SPD5_HUB_REG, address, register, CMD_GET)
        return payload[0] if payload else None

    def write_hub_register(self, address: int, register: int, value: int) -> bool:
        """Write MR11 (page), MR12 or MR13 (RSWP blocks). Other registers are refused."""
        _check_spd_address(address)
        _check_range("register", register, 0, HUB_REGISTER_COUNT - 1)
        if register not in WRITABLE_HUB_REGISTERS:
            raise InvalidArgumentError(
                "Only registers MR11 (0x0B), MR12 (0x0C), and MR13 (0x0D) are writable",
                address=address,
                register=register,
            )
        _check_range("value", value, 0, 0xFF)
        return _is_success(
            self._exchange(Opcode.SPD5_HUB_REG, address, register, CMD_ENABLE, value)
        )

    # --- Write protection ---

    def set_rswp(self, address: int, block: int) -> bool:
        _check_spd_address(address)
        _check_range("block", block, 0, RSWP_BLOCK_COUNT - 1)
        return _is_success(self._exchange(Opcode.RSWP, address, block, CMD_ENABLE))

    def clear_rswp(self, address: int) -> bool:
        """Clear reversible write protection on every block."""
        _check_spd_address(address)
        return _is_success(self._exchange(Opcode.RSWP, address, CMD_DISABLE, CMD_DISABLE))

    def get_rswp(self, address: int, block: int) -> bool:
        _check_spd_address(address)
        _check_range("block", block, 0, RSWP_BLOCK_COUNT - 1)
        return _is_success(self._exchange(Opcode.RSWP, address, block, CMD_GET))

    def get_rswp_support(self) -> RswpSupport:
        payload = self._exchange(Opcode.RSWP_REPORT)
        return RswpSupport.from_mask(payload[0] if payload else 0)

    def set_pswp(self, address: int) -> bool:
        """Set permanent write protection. This cannot be undone."""
        _check_spd_address(address)
        logger.warning("pswp_set_requested", address=f"0x{address:02X}")
        return _is_success(self._exchange(Opcode.PSWP, address, CMD_ENABLE))

    def get_pswp(self, address: int) -> bool:
        _check_spd_address(address)
        return _is_success(self._exchange(Opcode.PSWP, address, CMD_GET))

    # --- Pins ---

    def set_pin(self, pin: Pin | int, enabled: bool) -> bool:
        pin = self._check_pin(pin)
        return _is_success(
            self._exchange(Opcode.PIN_CONTROL, pin, CMD_ENABLE if enabled else CMD_DISABLE)
        )

    def get_pin(self, pin: Pin | int) -> bool:
        pin = self._check_pin(pin)
        payload = self._exchange(Opcode.PIN_CONTROL, pin, CMD_GET)
        if not payload:
            raise DeviceReportedFailureError("Failed to get pin state", pin=int(pin))
        return payload[0] == 1

    def reset_pins(self) -> bool:
        return _is_success(self._exchange(Opcode.PIN_RESET))

    def enable_high_voltage(self) -> bool:
        return self.set_pin(Pin.HV_SWITCH, True)

    def disable_high_voltage(self) -> bool:
        return self.set_pin(Pin.HV_SWITCH, False)

    def get_high_voltage_state(self) -> bool:
        return self.get_pin(Pin.HV_SWITCH)

    def set_sa1_state(self, state: bool) -> bool:
        return self.set_pin(Pin.SA1_SWITCH, state)

    def get_sa1_state(self) -> bool:
        return self.get_pin(Pin.SA1_SWITCH)

    @staticmethod
    def _check_pin(pin: Pin | int) -> Pin:
        try:
            return Pin(pin)
        except ValueError as exc:
            raise InvalidArgumentError(
                "Pin must be HV_SWITCH (0x00) or SA1_SWITCH (0x01)", pin=pin
            ) from exc

    # --- Internal settings storage ---

    def read_internal_eeprom(self, offset: int, length: int) -> bytes | None:
        """Read the programmer's own settings storage; None on failure."""
        _check_range("offset", offset, 0, INTERNAL_EEPROM_SIZE - 1)
        _check_range("length", length, 1, MAX_EEPROM_READ)
        if offset + length > INTERNAL_EEPROM_SIZE:
            raise InvalidArgumentError(
                "Read would exceed settings storage bounds", offset=offset, length=length
            )
        off_lo, off_hi = split_u16(offset)
        len_lo, len_hi = split_u16(length)
        return _read_result(
            self._exchange(Opcode.EEPROM, CMD_GET, off_lo, off_hi, len_lo, len_hi)
        )
