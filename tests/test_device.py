"""End-to-end tests of the device facade against the simulated adapter."""

import dataclasses

import pytest

from usbtin.core.device import DeviceState, OpenMode, UsbtinDevice
from usbtin.core.errors import (
    ConnectError,
    DeviceIOError,
    DeviceRejectedError,
    InvalidStateError,
    LinkBrokenError,
    TooManyFilterChainsError,
)
from usbtin.core.filters import FilterChain, FilterMask, FilterValue
from usbtin.core.frame import CanFrame
from usbtin.core.transport.base import TransportError


A = CanFrame(0x100, b"\x01")
B = CanFrame(0x200, b"\x02\x03")


class TestConnect:
    def test_reads_identity(self, connected):
        assert connected.state is DeviceState.CONNECTED
        assert connected.port == "sim0"
        assert connected.firmware_version == "0107"
        assert connected.hardware_version == "0100"
        assert connected.serial_number == "A021"

    def test_handshake_sequence(self, connected, sim):
        assert sim.commands == ["", "C", "C", "v", "V", "N", "W2d00"]
        assert sim.register_writes == [(0x2D, 0x00)]

    def test_silent_device(self, device, sim, transport):
        sim.muted = True
        with pytest.raises(ConnectError, match="timeout"):
            device.connect("sim0")
        assert device.state is DeviceState.DISCONNECTED
        assert device.firmware_version is None
        assert not transport.is_open

    def test_rejected_handshake_command(self, device, sim, transport):
        sim.rejected_commands.add("W2d00")
        with pytest.raises(ConnectError) as exc_info:
            device.connect("sim0")
        assert isinstance(exc_info.value.__cause__, DeviceRejectedError)
        assert device.state is DeviceState.DISCONNECTED
        assert not transport.is_open

    def test_port_busy(self, device, transport):
        transport.open("other")
        with pytest.raises(ConnectError):
            device.connect("sim0")
        assert device.state is DeviceState.DISCONNECTED

    def test_port_from_settings(self, transport, settings):
        dev = UsbtinDevice(transport, settings=dataclasses.replace(settings, port="sim7"))
        dev.connect()
        try:
            assert dev.port == "sim7"
            assert transport.port == "sim7"
        finally:
            dev.disconnect()

    def test_no_port(self, device):
        with pytest.raises(ConnectError):
            device.connect()
        assert device.state is DeviceState.DISCONNECTED

    def test_connect_twice_rejected(self, connected):
        with pytest.raises(InvalidStateError):
            connected.connect("sim0")

    def test_reconnect_after_disconnect(self, connected):
        connected.disconnect()
        connected.connect("sim0")
        assert connected.state is DeviceState.CONNECTED

    def test_context_manager_disconnects(self, transport, settings):
        with UsbtinDevice(transport, settings=settings) as dev:
            dev.connect("sim0")
        assert dev.state is DeviceState.DISCONNECTED
        assert not transport.is_open


class TestConfiguration:
    def test_default_filter_opens_masks(self, connected, sim):
        connected.set_filter([])
        assert all(sim.registers[0x20 + i] == 0 for i in range(8))

    def test_filter_chain_registers(self, connected, sim):
        mask = FilterMask.standard(0x7FF)
        connected.set_filter([FilterChain(mask, [FilterValue.standard(0x123)])])
        assert bytes(sim.registers[0x20 + i] for i in range(4)) == mask.registers
        assert bytes(sim.registers[0x00 + i] for i in range(4)) == FilterValue.standard(0x123).registers

    def test_filter_errors_propagate(self, connected):
        chain = FilterChain(FilterMask.standard(0x7FF))
        with pytest.raises(TooManyFilterChainsError):
            connected.set_filter([chain, chain, chain])

    def test_filter_requires_connection(self, device):
        with pytest.raises(InvalidStateError):
            device.set_filter([])

    def test_filter_rejected_while_channel_open(self, connected):
        connected.open_channel(500_000)
        with pytest.raises(InvalidStateError):
            connected.set_filter([])

    def test_write_register(self, connected, sim):
        connected.write_register(0x2B, 0x03)
        assert sim.registers[0x2B] == 0x03


class TestChannel:
    def test_open_with_preset(self, connected, sim):
        timing = connected.open_channel(125_000)
        assert timing.command() == "S4"
        assert sim.bitrate_command == "S4"
        assert sim.mode == "O"
        assert connected.state is DeviceState.CHANNEL_OPEN
        assert connected.bit_timing == timing

    def test_open_with_custom_timing(self, connected, sim):
        connected.open_channel(83_333, OpenMode.LISTEN_ONLY)
        assert sim.bitrate_command == "scb9303"
        assert sim.mode == "L"

    @pytest.mark.parametrize("mode,expected", [("active", "O"), ("listen-only", "L"), ("loopback", "l")])
    def test_mode_names(self, connected, sim, mode, expected):
        connected.open_channel(500_000, mode)
        assert sim.mode == expected

    def test_rejected_bitrate_keeps_connected(self, connected, sim):
        sim.rejected_commands.add("S6")
        with pytest.raises(DeviceRejectedError):
            connected.open_channel(500_000)
        assert connected.state is DeviceState.CONNECTED

    def test_open_requires_connection(self, device):
        with pytest.raises(InvalidStateError):
            device.open_channel(500_000)

    def test_close_returns_to_connected(self, connected, sim):
        connected.open_channel(500_000)
        connected.close_channel()
        assert connected.state is DeviceState.CONNECTED
        assert sim.mode is None
        assert connected.bit_timing is None
        assert connected.firmware_version is None

    def test_reopen_after_close(self, connected, sim):
        connected.open_channel(500_000)
        connected.close_channel()
        connected.open_channel(250_000)
        assert sim.bitrate_command == "S5"
        assert connected.state is DeviceState.CHANNEL_OPEN

    def test_close_requires_open_channel(self, connected):
        with pytest.raises(InvalidStateError):
            connected.close_channel()

    def test_disconnect_from_open_channel(self, connected, transport):
        connected.open_channel(500_000)
        connected.disconnect()
        assert connected.state is DeviceState.DISCONNECTED
        assert connected.port is None
        assert not transport.is_open


class TestTraffic:
    def test_send_is_acknowledged_in_order(self, connected, sim, wait_until):
        connected.open_channel(500_000)
        connected.send(A)
        connected.send(B)
        assert wait_until(lambda: not connected.pending_frames())
        assert sim.received_frames == [A, B]

    def test_nak_retransmits_until_ack(self, connected, sim, wait_until):
        connected.open_channel(500_000)
        sim.nak_next(2)
        connected.send(A)
        assert wait_until(lambda: not connected.pending_frames())
        assert sim.received_frames == [A]
        assert sim.commands.count(str(A)) == 3

    def test_inbound_frames_reach_listeners(self, connected, sim, wait_until):
        seen = []
        connected.add_listener(seen.append)
        connected.open_channel(500_000, OpenMode.LISTEN_ONLY)
        sim.inject_frame(B)
        sim.inject_line("T12345678197")
        assert wait_until(lambda: len(seen) == 2)
        assert seen == [B, CanFrame(0x12345678, b"\x97", extended=True)]

    def test_loopback_echoes_sent_frames(self, connected, wait_until):
        seen = []
        connected.add_listener(seen.append)
        connected.open_channel(500_000, OpenMode.LOOPBACK)
        connected.send(A)
        assert wait_until(lambda: seen == [A])

    def test_removed_listener_stops_receiving(self, connected, sim, wait_until):
        seen, other = [], []
        connected.add_listener(seen.append)
        connected.add_listener(other.append)
        connected.open_channel(500_000)
        connected.remove_listener(seen.append)
        sim.inject_frame(A)
        assert wait_until(lambda: other == [A])
        assert seen == []

    def test_send_requires_open_channel(self, connected):
        with pytest.raises(InvalidStateError):
            connected.send(A)

    def test_write_failure(self, connected, transport):
        connected.open_channel(500_000)
        transport.fail_writes = True
        with pytest.raises(DeviceIOError):
            connected.send(A)
        assert connected.pending_frames() == []

    def test_bounded_retries_surface_on_next_send(self, transport, settings, sim, wait_until):
        dev = UsbtinDevice(transport, settings=dataclasses.replace(settings, max_nak_retries=1))
        try:
            dev.connect("sim0")
            dev.open_channel(500_000)
            sim.nak_next(2)
            dev.send(A)
            assert wait_until(lambda: not dev.pending_frames())
            assert sim.received_frames == []

            with pytest.raises(LinkBrokenError):
                dev.send(B)

            dev.send(B)
            assert wait_until(lambda: sim.received_frames == [B])
        finally:
            dev.disconnect()


class TestFailureReporting:
    def test_write_failure_after_ack_surfaces_on_next_send(self, connected, sim, transport, wait_until):
        connected.open_channel(500_000)
        sim.muted = True
        connected.send(A)
        connected.send(B)

        transport.fail_writes = True
        sim.muted = False
        sim.inject_line("z")
        assert wait_until(lambda: connected.pending_frames() == [B])

        transport.fail_writes = False
        with pytest.raises(DeviceIOError):
            connected.send(CanFrame(0x300))

        # The stalled frame goes out with the next successful send.
        connected.send(CanFrame(0x300))
        assert wait_until(lambda: not connected.pending_frames())
        assert sim.received_frames == [A, B, CanFrame(0x300)]

    def test_dead_reader_fails_send(self, connected, sim, transport, monkeypatch, wait_until):
        connected.open_channel(500_000)

        def broken_read(max_size, timeout_ms):
            raise TransportError("device unplugged")

        monkeypatch.setattr(transport, "read_some", broken_read)
        assert wait_until(lambda: connected._reader is not None and connected._reader.error is not None)

        with pytest.raises(DeviceIOError, match="device unplugged"):
            connected.send(A)
        assert sim.received_frames == []
