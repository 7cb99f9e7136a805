"""Unit tests for SpdToolClient commands against a fake programmer."""

from __future__ import annotations

import pytest

from spdtool.device.client import SpdToolClient
from spdtool.device.models import ConnectionState, ModuleType
from spdtool.exceptions import (
    DeviceReportedFailureError,
    InvalidArgumentError,
    NotConnectedError,
    ResponseTimeoutError,
    TransportError,
    UnsupportedHardwareError,
)
from spdtool.protocol.types import ClockMode, HubRegister, Opcode, Pin

from conftest import FAST_ENGINE


class TestConnection:
    """Test connect/close lifecycle."""

    def test_connect_reads_identity(self, client, transport):
        assert client.state == ConnectionState.OPEN
        assert client.identity.version == 20240616
        assert client.identity.version_text == "2024-06-16"
        assert client.identity.name == "SPDTool"
        assert client.identity.port == transport.name

    def test_connect_fails_after_three_pings(self, transport, fake_device, sleeps):
        fake_device.unsupported.add(Opcode.PING)
        tool = SpdToolClient(transport, engine_config=FAST_ENGINE)

        with pytest.raises(TransportError, match="3 attempts"):
            tool.connect()

        assert tool.state == ConnectionState.CLOSED
        assert fake_device.opcodes().count(Opcode.PING) == 3
        assert sleeps == [0.1, 0.1, 0.1]

    def test_close_is_idempotent(self, client, transport):
        client.close()
        client.close()
        assert client.state == ConnectionState.CLOSED
        assert not transport.is_open

    def test_commands_require_open_transport(self, transport):
        tool = SpdToolClient(transport, engine_config=FAST_ENGINE)
        with pytest.raises(NotConnectedError):
            tool.scan_bus()

    def test_commands_refused_after_failed_connect(self, transport, fake_device):
        fake_device.unsupported.add(Opcode.PING)
        tool = SpdToolClient(transport, engine_config=FAST_ENGINE)
        with pytest.raises(TransportError):
            tool.connect()
        writes = len(transport.writes)

        assert transport.is_open
        with pytest.raises(NotConnectedError) as exc_info:
            tool.scan_bus()
        assert exc_info.value.context["state"] == "closed"
        assert len(transport.writes) == writes

    def test_commands_refused_on_open_transport_before_connect(self, transport):
        transport.open()
        tool = SpdToolClient(transport, engine_config=FAST_ENGINE)
        with pytest.raises(NotConnectedError):
            tool.get_version()
        assert transport.writes == []

    def test_failed_identity_read_leaves_state_closed(self, transport, fake_device):
        fake_device.unsupported.add(Opcode.NAME)
        tool = SpdToolClient(transport, engine_config=FAST_ENGINE)
        with pytest.raises(UnsupportedHardwareError):
            tool.connect()
        assert tool.state == ConnectionState.CLOSED
        with pytest.raises(NotConnectedError):
            tool.ping()

    def test_reconnect_after_failed_connect(self, transport, fake_device):
        fake_device.unsupported.add(Opcode.PING)
        tool = SpdToolClient(transport, engine_config=FAST_ENGINE)
        with pytest.raises(TransportError):
            tool.connect()

        fake_device.unsupported.clear()
        assert tool.connect().name == "SPDTool"
        assert tool.state == ConnectionState.OPEN

    def test_context_manager(self, transport):
        with SpdToolClient(transport, engine_config=FAST_ENGINE) as tool:
            assert tool.is_connected
        assert not transport.is_open


class TestValidation:
    """Invalid arguments are refused before anything is written."""

    @pytest.mark.parametrize("address", [0x00, 0x48, 0x4F, 0x58, 0x7F])
    def test_spd_only_operations_reject_address(self, client, transport, address):
        writes_before = len(transport.writes)
        for call in (
            lambda: client.read_spd(address, 0, 16),
            lambda: client.write_spd_byte(address, 0, 0),
            lambda: client.detect_ddr5(address),
            lambda: client.detect_module(address),
            lambda: client.set_rswp(address, 0),
            lambda: client.read_hub_register(address, 0),
        ):
            with pytest.raises(InvalidArgumentError):
                call()
        assert len(transport.writes) == writes_before

    @pytest.mark.parametrize("address", range(0x50, 0x58))
    def test_spd_addresses_accepted(self, client, fake_device, address):
        fake_device.add_module(address, ModuleType.DDR4)
        assert client.probe_address(address)
        assert client.detect_module(address).module_type == ModuleType.DDR4

    @pytest.mark.parametrize("length", [0, 65])
    def test_read_length_limits(self, client, length):
        with pytest.raises(InvalidArgumentError):
            client.read_spd(0x50, 0, length)

    def test_read_offset_limit(self, client):
        with pytest.raises(InvalidArgumentError):
            client.read_spd(0x50, 1024, 1)

    def test_page_write_limits(self, client, transport):
        writes_before = len(transport.writes)
        with pytest.raises(InvalidArgumentError):
            client.write_spd_page(0x50, 0, b"")
        with pytest.raises(InvalidArgumentError):
            client.write_spd_page(0x50, 0, bytes(17))
        with pytest.raises(InvalidArgumentError, match="16-byte page boundary"):
            client.write_spd_page(0x50, 8, bytes(9))
        assert len(transport.writes) == writes_before

    @pytest.mark.parametrize("register", [0x00, 0x0A, 0x0E, 0x30, 0x7F])
    def test_only_paging_and_rswp_registers_writable(self, client, transport, register):
        writes_before = len(transport.writes)
        with pytest.raises(InvalidArgumentError, match="writable"):
            client.write_hub_register(0x50, register, 0)
        assert len(transport.writes) == writes_before

    def test_register_above_127_rejected(self, client):
        with pytest.raises(InvalidArgumentError):
            client.read_hub_register(0x50, 128)

    def test_rswp_block_range(self, client):
        with pytest.raises(InvalidArgumentError):
            client.set_rswp(0x50, 16)

    def test_name_limits(self, client):
        with pytest.raises(InvalidArgumentError):
            client.set_name("")
        with pytest.raises(InvalidArgumentError):
            client.set_name("x" * 17)
        with pytest.raises(InvalidArgumentError):
            client.set_name("naïve")

    def test_internal_eeprom_bounds(self, client):
        with pytest.raises(InvalidArgumentError):
            client.read_internal_eeprom(0, 33)
        with pytest.raises(InvalidArgumentError):
            client.read_internal_eeprom(250, 10)
        with pytest.raises(InvalidArgumentError):
            client.read_internal_eeprom(256, 1)

    def test_pmic_address_range(self, client):
        with pytest.raises(InvalidArgumentError):
            client.read_pmic(0x50, 0, 1)
        with pytest.raises(InvalidArgumentError):
            client.write_pmic_register(0x47, 0, 1)

    def test_invalid_pin(self, client):
        with pytest.raises(InvalidArgumentError):
            client.set_pin(2, True)

    def test_invalid_clock_mode(self, client):
        with pytest.raises(InvalidArgumentError):
            client.set_clock_mode(2)


class TestPayloadDecoding:
    """Test per-command response layouts."""

    def test_ping(self, client):
        assert client.ping() is True

    def test_version_requires_four_bytes(self, client, fake_device):
        fake_device.version = 0x01020304
        assert client.get_version() == 0x01020304

    def test_short_version_is_failure(self, client, transport):
        transport.responder = lambda data: b"\x26\x02\x01\x02\x03"
        with pytest.raises(DeviceReportedFailureError):
            client.get_version()

    def test_name_cut_at_first_nul(self, client, fake_device):
        fake_device.name = b"AB\x00CD"
        assert client.get_name() == "AB"

    def test_name_without_nul_kept_whole(self, client, fake_device):
        fake_device.name = b"  padded  "
        assert client.get_name() == "  padded  "

    def test_set_name_sends_length_prefix(self, client, transport, fake_device):
        assert client.set_name("Bench")
        assert transport.writes[-1] == b"\x05\x05Bench"
        assert fake_device.name == b"Bench"

    def test_scan_bus_bitmask(self, client, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR5)
        fake_device.add_module(0x53, ModuleType.DDR5)
        assert client.scan_bus() == [0x50, 0x53]

    def test_read_failure_sentinel(self, client, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR4)
        fake_device.read_failures[0] = ["fail"]
        assert client.read_spd(0x50, 0, 16) is None

    def test_read_returns_bytes(self, client, fake_device):
        image = fake_device.add_module(0x50, ModuleType.DDR4)
        assert client.read_spd(0x50, 300, 8) == bytes(image[300:308])

    def test_read_encodes_offset_little_endian(self, client, transport, fake_device):
        fake_device.add_module(0x51, ModuleType.DDR5)
        client.read_spd(0x51, 0x3C0, 32)
        assert transport.writes[-1] == b"\x07\x51\xc0\x03\x20"

    def test_boolean_needs_exactly_one(self, client, transport):
        transport.responder = lambda data: b"\x26\x02\x01\x01\x02"
        assert client.probe_address(0x50) is False

    def test_read_timeout_propagates(self, client, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR4)
        fake_device.read_failures[0] = ["timeout"]
        with pytest.raises(ResponseTimeoutError):
            client.read_spd(0x50, 0, 16)

    def test_unsupported_hardware_propagates(self, client, fake_device):
        fake_device.unsupported.add(Opcode.DDR5_DETECT)
        with pytest.raises(UnsupportedHardwareError):
            client.detect_ddr5(0x50)

    def test_clock_mode(self, client, fake_device):
        assert client.get_clock_mode() == ClockMode.STANDARD_100KHZ
        assert client.set_clock_mode(ClockMode.FAST_400KHZ)
        assert fake_device.clock == 1
        assert client.get_clock_mode() == ClockMode.FAST_400KHZ

    def test_rswp_support(self, client):
        support = client.get_rswp_support()
        assert support.ddr5 and support.ddr4 and not support.ddr3
        assert str(support) == "DDR5, DDR4"

    def test_internal_eeprom(self, client, transport):
        assert client.read_internal_eeprom(16, 4) == bytes([16, 17, 18, 19])
        assert transport.writes[-1] == b"\x19\xff\x10\x00\x04\x00"

    def test_pins(self, client, fake_device):
        assert client.enable_high_voltage()
        assert client.get_high_voltage_state()
        assert client.set_sa1_state(True)
        assert fake_device.pins[Pin.SA1_SWITCH] == 1
        assert client.reset_pins()
        assert not client.get_high_voltage_state()
        assert not client.get_sa1_state()

    def test_hub_register_round_trip(self, client, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR5)
        assert client.write_hub_register(0x50, HubRegister.MR11, 3)
        assert client.read_hub_register(0x50, HubRegister.MR11) == 3
        assert fake_device.page_selects == [(0x50, 3)]

    def test_pswp(self, client, fake_device, transport):
        fake_device.add_module(0x52, ModuleType.DDR4)
        assert not client.get_pswp(0x52)
        assert client.set_pswp(0x52)
        assert transport.writes[-1] == b"\x17\x52\x01"
        assert client.get_pswp(0x52)


class TestDetection:
    """Test module classification order."""

    def test_ddr5_checked_first(self, client, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR5)
        info = client.detect_module(0x50)
        assert info.module_type == ModuleType.DDR5
        assert info.size == 1024
        assert fake_device.opcodes()[-1] == Opcode.DDR5_DETECT

    def test_ddr4(self, client, fake_device):
        fake_device.add_module(0x51, ModuleType.DDR4)
        info = client.detect_module(0x51)
        assert (info.module_type, info.size) == (ModuleType.DDR4, 512)

    def test_ddr3_size_from_size_code(self, client, fake_device):
        fake_device.add_module(0x52, ModuleType.DDR3_OR_OTHER)
        info = client.detect_module(0x52)
        assert (info.module_type, info.size) == (ModuleType.DDR3_OR_OTHER, 256)

    def test_nothing_present(self, client):
        info = client.detect_module(0x57)
        assert info.module_type == ModuleType.NOT_DETECTED
        assert info.size == 0
        assert not info.detected


class TestWriteProtection:
    """Test RSWP commands."""

    def test_clear_on_unprotected_module_succeeds(self, client, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR5)
        assert client.clear_rswp(0x50)
        assert client.clear_rswp(0x50)

    def test_set_then_get(self, client, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR5)
        assert client.set_rswp(0x50, 7)
        assert client.get_rswp(0x50, 7)
        assert not client.get_rswp(0x50, 6)

    def test_clear_wire_format(self, client, transport, fake_device):
        fake_device.add_module(0x50, ModuleType.DDR5)
        client.clear_rswp(0x50)
        assert transport.writes[-1] == b"\x16\x50\x00\x00"
