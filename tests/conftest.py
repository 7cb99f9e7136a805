"""Pytest configuration and shared fixtures.

Hardware is replaced by :class:`FakeTransport`, an in-memory byte channel,
and :class:`FakeDevice`, which answers commands the way the programmer
firmware does and records what it was asked to do.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import pytest

from spdtool.device.client import SpdToolClient
from spdtool.device.models import ModuleType
from spdtool.exceptions import NotConnectedError
from spdtool.protocol.engine import EngineConfig
from spdtool.protocol.framing import build_alert_frame, build_response_frame, checksum
from spdtool.protocol.types import RSWP_DDR4, RSWP_DDR5, HubRegister, Marker, Opcode
from spdtool.transport.base import Transport

OK = build_response_frame(b"\x01")
FAIL = build_response_frame(b"\x00")

FAST_ENGINE = EngineConfig(
    default_timeout_s=0.05,
    length_timeout_s=0.02,
    payload_timeout_s=0.02,
    checksum_timeout_s=0.02,
    alert_timeout_s=0.02,
)

_SIZE_CODES = {256: 1, 512: 2, 1024: 3}
_DEFAULT_SIZES = {
    ModuleType.DDR3_OR_OTHER: 256,
    ModuleType.DDR4: 512,
    ModuleType.DDR5: 1024,
}


class FakeTransport(Transport):
    """In-memory transport; each write is answered by ``responder``."""

    def __init__(self, responder: Callable[[bytes], bytes] | None = None, name: str = "fake0"):
        self.responder = responder
        self.inbound = bytearray()
        self.writes: list[bytes] = []
        self.flushes = 0
        self.open_calls = 0
        self.close_calls = 0
        self._name = name
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def name(self) -> str:
        return self._name

    def open(self) -> None:
        self.open_calls += 1
        self._open = True

    def close(self) -> None:
        self.close_calls += 1
        self._open = False

    def write(self, data: bytes) -> None:
        if not self._open:
            raise NotConnectedError("fake transport closed")
        self.writes.append(bytes(data))
        if self.responder is not None:
            self.inbound += self.responder(bytes(data))

    def read_byte(self, timeout: float) -> int | None:
        if self.inbound:
            return self.inbound.pop(0)
        return None

    def flush(self) -> None:
        self.flushes += 1
        self.inbound.clear()

    def feed(self, data: bytes) -> None:
        self.inbound += data


class FakeDevice:
    """Firmware stand-in holding module images, pins and protection state.

    Failure injection:
        read_failures        offset -> queue of "fail" | "timeout" | "corrupt"
        page_write_failures  offset -> number of page writes to refuse
        byte_write_failures  offsets whose single-byte writes are refused
        refuse_rswp_clear    answer RSWP clear with failure
        unsupported          opcodes answered with the UNKNOWN marker
        pending_alerts       alert codes sent ahead of the next response
    """

    def __init__(self) -> None:
        self.version = 20240616
        self.name = b"SPDTool"
        self.clock = 0
        self.modules: dict[int, ModuleType] = {}
        self.images: dict[int, bytearray] = {}
        self.pmics: dict[int, bytearray] = {}
        self.rswp: dict[int, set[int]] = {}
        self.pswp: set[int] = set()
        self.pins = {0: 0, 1: 0}
        self.settings = bytearray(range(256))
        self.rswp_mask = RSWP_DDR5 | RSWP_DDR4
        self.page: dict[int, int] = {}

        self.commands: list[bytes] = []
        self.page_selects: list[tuple[int, int]] = []
        self.reads: list[tuple[int, int, int]] = []
        self.page_writes: list[tuple[int, int]] = []
        self.byte_writes: list[int] = []

        self.read_failures: dict[int, list[str]] = {}
        self.page_write_failures: dict[int, int] = {}
        self.byte_write_failures: set[int] = set()
        self.refuse_rswp_clear = False
        self.unsupported: set[int] = set()
        self.pending_alerts: list[int] = []

    def add_module(
        self,
        address: int,
        module_type: ModuleType,
        image: bytes | None = None,
    ) -> bytearray:
        size = len(image) if image is not None else _DEFAULT_SIZES[module_type]
        self.modules[address] = module_type
        self.images[address] = bytearray(image if image is not None else bytes(i & 0xFF for i in range(size)))
        self.rswp[address] = set()
        return self.images[address]

    def add_pmic(self, address: int, image: bytes | None = None) -> bytearray:
        self.pmics[address] = bytearray(image if image is not None else bytes(range(256)))
        return self.pmics[address]

    def opcodes(self) -> list[int]:
        return [c[0] for c in self.commands]

    def __call__(self, data: bytes) -> bytes:
        self.commands.append(data)
        opcode, params = data[0], data[1:]
        prefix = b"".join(build_alert_frame(code) for code in self.pending_alerts)
        self.pending_alerts.clear()
        if opcode in self.unsupported:
            return prefix + bytes([Marker.UNKNOWN])
        return prefix + self._handle(Opcode(opcode), params)

    def _image_for(self, address: int) -> bytearray | None:
        if address in self.images:
            return self.images[address]
        return self.pmics.get(address)

    def _handle(self, opcode: Opcode, p: bytes) -> bytes:
        if opcode == Opcode.PING:
            return bytes([Marker.READY])
        if opcode == Opcode.VERSION:
            return build_response_frame(self.version.to_bytes(4, "little"))
        if opcode == Opcode.NAME:
            if p[0] == 0xFF:
                return build_response_frame(self.name)
            self.name = bytes(p[1:1 + p[0]])
            return OK
        if opcode in (Opcode.FACTORY_RESET, Opcode.SPD_WRITE_TEST):
            return OK
        if opcode == Opcode.SCAN_BUS:
            mask = 0
            for address in self.modules:
                mask |= 1 << (address - 0x50)
            return build_response_frame(bytes([mask]))
        if opcode == Opcode.PROBE_ADDRESS:
            return OK if p[0] in self.modules or p[0] in self.pmics else FAIL
        if opcode == Opcode.BUS_CLOCK:
            if p[0] == 0xFF:
                return build_response_frame(bytes([self.clock]))
            self.clock = p[0]
            return OK
        if opcode == Opcode.SPD_READ_PAGE:
            return self._read(p[0], p[1] | (p[2] << 8), p[3])
        if opcode == Opcode.SPD_WRITE_BYTE:
            address, offset, value = p[0], p[1] | (p[2] << 8), p[3]
            image = self._image_for(address)
            if image is None or offset in self.byte_write_failures:
                return FAIL
            image[offset] = value
            self.byte_writes.append(offset)
            return OK
        if opcode == Opcode.SPD_WRITE_PAGE:
            address, offset, length = p[0], p[1] | (p[2] << 8), p[3]
            image = self._image_for(address)
            if image is None:
                return FAIL
            if self.page_write_failures.get(offset, 0) > 0:
                self.page_write_failures[offset] -= 1
                return FAIL
            image[offset:offset + length] = p[4:4 + length]
            self.page_writes.append((offset, length))
            return OK
        if opcode == Opcode.DDR4_DETECT:
            return OK if self.modules.get(p[0]) == ModuleType.DDR4 else FAIL
        if opcode == Opcode.DDR5_DETECT:
            return OK if self.modules.get(p[0]) == ModuleType.DDR5 else FAIL
        if opcode == Opcode.SPD_SIZE:
            image = self.images.get(p[0])
            code = _SIZE_CODES.get(len(image), 0) if image is not None else 0
            return build_response_frame(bytes([code]))
        if opcode == Opcode.SPD5_HUB_REG:
            address, register, selector = p[0], p[1], p[2]
            if selector == 0xFF:
                value = self.page.get(address, 0) if register == HubRegister.MR11 else 0
                return build_response_frame(bytes([value]))
            if register == HubRegister.MR11:
                self.page[address] = p[3]
                self.page_selects.append((address, p[3]))
            return OK
        if opcode == Opcode.RSWP:
            address, block, selector = p[0], p[1], p[2]
            blocks = self.rswp.setdefault(address, set())
            if selector == 0xFF:
                return OK if block in blocks else FAIL
            if selector == 0x01:
                blocks.add(block)
                return OK
            if self.refuse_rswp_clear:
                return FAIL
            blocks.clear()
            return OK
        if opcode == Opcode.PSWP:
            if p[1] == 0xFF:
                return OK if p[0] in self.pswp else FAIL
            self.pswp.add(p[0])
            return OK
        if opcode == Opcode.RSWP_REPORT:
            return build_response_frame(bytes([self.rswp_mask]))
        if opcode == Opcode.PIN_CONTROL:
            if p[1] == 0xFF:
                return build_response_frame(bytes([self.pins[p[0]]]))
            self.pins[p[0]] = p[1]
            return OK
        if opcode == Opcode.PIN_RESET:
            self.pins = {0: 0, 1: 0}
            return OK
        if opcode == Opcode.EEPROM:
            offset, length = p[1] | (p[2] << 8), p[3] | (p[4] << 8)
            return build_response_frame(bytes(self.settings[offset:offset + length]))
        raise AssertionError(f"unhandled opcode {opcode!r}")

    def _read(self, address: int, offset: int, length: int) -> bytes:
        queued = self.read_failures.get(offset)
        if queued:
            failure = queued.pop(0)
            if failure == "timeout":
                return b""
            if failure == "corrupt":
                payload = bytes(length)
                return bytes([Marker.RESPONSE, length]) + payload + bytes([(checksum(payload) + 1) & 0xFF])
            return FAIL

        image = self._image_for(address)
        if image is None:
            return FAIL
        self.reads.append((offset, length, self.page.get(address, 0)))
        return build_response_frame(bytes(image[offset:offset + length]))


@pytest.fixture(autouse=True)
def sleeps(monkeypatch) -> list[float]:
    """Record every time.sleep call instead of sleeping."""
    calls: list[float] = []
    monkeypatch.setattr(time, "sleep", calls.append)
    return calls


@pytest.fixture
def fake_device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def transport(fake_device) -> FakeTransport:
    return FakeTransport(fake_device)


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    return FakeTransport


@pytest.fixture
def client(transport):
    tool = SpdToolClient(transport, engine_config=FAST_ENGINE)
    tool.connect()
    yield tool
    tool.close()
