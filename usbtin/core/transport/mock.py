from __future__ import annotations

import threading
import time

from usbtin.core.transport.base import SerialTransport, TransportError, TransportTimeoutError
from usbtin.emulator.device_sim import SimulatedUsbtin


class MockTransport(SerialTransport):
    """In-memory transport wired to a simulated USBtin.

    Used for local development and deterministic testing. Every write is
    handed to the simulated device immediately; its answers become readable
    bytes. inject() pushes arbitrary inbound bytes (e.g. malformed lines).
    """

    def __init__(self, device: SimulatedUsbtin | None = None) -> None:
        self.device = device if device is not None else SimulatedUsbtin()
        self.written = bytearray()
        self.port: str | None = None
        self.fail_writes = False
        self._rx = bytearray()
        self._open = False
        self._cond = threading.Condition()
        self.device.attach(self.inject)

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, port: str) -> None:
        if self._open:
            raise TransportError(f"{port} - port busy")
        self.port = port
        self._open = True

    def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("serial port not open")
        if self.fail_writes:
            raise TransportError(f"{self.port} - write failed")
        self.written.extend(data)
        self.device.feed(bytes(data))

    def inject(self, data: bytes) -> None:
        with self._cond:
            self._rx.extend(data)
            self._cond.notify_all()

    def read(self, size: int, timeout_ms: int) -> bytes:
        deadline = time.monotonic() + (timeout_ms / 1000.0)
        with self._cond:
            while len(self._rx) < size:
                self._require_open()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportTimeoutError(f"timeout reading from {self.port}")
                self._cond.wait(remaining)
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def read_some(self, max_size: int, timeout_ms: int) -> bytes:
        deadline = time.monotonic() + (timeout_ms / 1000.0)
        with self._cond:
            while not self._rx:
                self._require_open()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return b""
                self._cond.wait(remaining)
            data = bytes(self._rx[:max_size])
            del self._rx[:max_size]
            return data

    def purge(self) -> None:
        with self._cond:
            self._rx.clear()

    def close(self) -> None:
        with self._cond:
            self._open = False
            self._cond.notify_all()

    def _require_open(self) -> None:
        if not self._open:
            raise TransportError("serial port not open")
