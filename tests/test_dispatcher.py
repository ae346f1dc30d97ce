"""Tests for inbound line splitting, routing and the reader thread."""

import logging

import pytest

from usbtin.core.dispatcher import InboundDispatcher, ListenerRegistry, ReaderThread
from usbtin.core.errors import DeviceIOError
from usbtin.core.frame import CanFrame


class FakeTxQueue:
    def __init__(self):
        self.acks = 0
        self.naks = 0
        self.fail = False

    def on_ack(self):
        self.acks += 1
        if self.fail:
            raise DeviceIOError("write failed")

    def on_nak(self):
        self.naks += 1
        if self.fail:
            raise DeviceIOError("write failed")


@pytest.fixture
def txqueue():
    return FakeTxQueue()


@pytest.fixture
def listeners():
    return ListenerRegistry()


@pytest.fixture
def dispatcher(txqueue, listeners):
    return InboundDispatcher(txqueue, listeners)


class TestRouting:
    def test_frames_reach_listeners_in_order(self, dispatcher, listeners):
        seen = []
        listeners.add(seen.append)
        dispatcher.feed(b"t1230\rT12345678197\rr0037\r")
        assert seen == [
            CanFrame(0x123),
            CanFrame(0x12345678, b"\x97", extended=True),
            CanFrame(0x003, remote=True, length=7),
        ]

    def test_every_listener_sees_every_frame(self, dispatcher, listeners):
        first, second = [], []
        listeners.add(first.append)
        listeners.add(second.append)
        dispatcher.feed(b"t1230\r")
        assert first == second == [CanFrame(0x123)]

    def test_line_split_across_chunks(self, dispatcher, listeners):
        seen = []
        listeners.add(seen.append)
        dispatcher.feed(b"t00")
        dispatcher.feed(b"12112")
        assert seen == []
        dispatcher.feed(b"2\r")
        assert seen == [CanFrame(0x001, b"\x11\x22")]

    def test_ack_lines(self, dispatcher, txqueue):
        dispatcher.feed(b"z\rZ\r")
        assert txqueue.acks == 2

    def test_bell_is_nak(self, dispatcher, txqueue):
        dispatcher.feed(b"\x07")
        assert txqueue.naks == 1
        assert txqueue.acks == 0

    def test_bell_inside_partial_line(self, dispatcher, txqueue, listeners):
        seen = []
        listeners.add(seen.append)
        dispatcher.feed(b"t12\x0730\r")
        assert txqueue.naks == 1
        assert seen == [CanFrame(0x123)]

    def test_empty_lines_ignored(self, dispatcher, txqueue, listeners):
        seen = []
        listeners.add(seen.append)
        dispatcher.feed(b"\r\r\r")
        assert seen == []
        assert txqueue.acks == 0

    def test_unknown_lines_ignored(self, dispatcher, txqueue, listeners):
        seen = []
        listeners.add(seen.append)
        dispatcher.feed(b"v0107\rF00\rt1230\r")
        assert seen == [CanFrame(0x123)]
        assert txqueue.acks == 0

    def test_malformed_frame_delivered_leniently(self, dispatcher, listeners):
        seen = []
        listeners.add(seen.append)
        dispatcher.feed(b"tzzz1ab\r")
        assert seen == [CanFrame(0x000, b"\xab")]


class TestFaultIsolation:
    def test_failing_listener_does_not_stop_others(self, dispatcher, listeners, caplog):
        seen = []

        def broken(frame):
            raise RuntimeError("boom")

        listeners.add(broken)
        listeners.add(seen.append)
        with caplog.at_level(logging.ERROR, logger="usbtin.core.dispatcher"):
            dispatcher.feed(b"t1230\rt4560\r")

        assert seen == [CanFrame(0x123), CanFrame(0x456)]
        assert "Frame listener failed" in caplog.text

    def test_transmit_failure_after_ack_is_logged(self, dispatcher, txqueue, listeners, caplog):
        seen = []
        listeners.add(seen.append)
        txqueue.fail = True
        with caplog.at_level(logging.ERROR, logger="usbtin.core.dispatcher"):
            dispatcher.feed(b"z\r\x07t1230\r")

        assert txqueue.acks == 1
        assert txqueue.naks == 1
        assert seen == [CanFrame(0x123)]
        assert "Transmit after ACK failed" in caplog.text
        assert "Retransmit after NAK failed" in caplog.text


class TestListenerRegistry:
    def test_remove(self):
        registry = ListenerRegistry()
        registry.add(print)
        registry.remove(print)
        assert len(registry) == 0

    def test_remove_unknown_is_noop(self):
        registry = ListenerRegistry()
        registry.remove(print)
        assert len(registry) == 0

    def test_snapshot_is_a_copy(self):
        registry = ListenerRegistry()
        registry.add(print)
        snapshot = registry.snapshot()
        registry.add(repr)
        assert snapshot == [print]


class TestReaderThread:
    def test_delivers_inbound_frames(self, transport, txqueue, listeners, wait_until):
        seen = []
        listeners.add(seen.append)
        transport.open("sim0")
        reader = ReaderThread(transport, InboundDispatcher(txqueue, listeners), read_timeout_ms=10)
        reader.start()
        try:
            transport.inject(b"t1230\rz\r")
            assert wait_until(lambda: seen == [CanFrame(0x123)] and txqueue.acks == 1)
        finally:
            reader.stop()
        assert not reader.running
        assert reader.error is None

    def test_stops_on_transport_error(self, transport, txqueue, listeners, wait_until):
        transport.open("sim0")
        reader = ReaderThread(transport, InboundDispatcher(txqueue, listeners), read_timeout_ms=10)
        reader.start()
        transport.close()
        assert wait_until(lambda: not reader.running)
        assert reader.error is not None
        reader.stop()

    def test_start_twice_rejected(self, transport, txqueue, listeners):
        transport.open("sim0")
        reader = ReaderThread(transport, InboundDispatcher(txqueue, listeners), read_timeout_ms=10)
        reader.start()
        try:
            with pytest.raises(RuntimeError):
                reader.start()
        finally:
            reader.stop()
