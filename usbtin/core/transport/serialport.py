from __future__ import annotations

import logging
import threading

import serial

from usbtin.logging import log_wire
from usbtin.core.transport.base import SERIAL_BAUDRATE, SerialTransport, TransportError, TransportTimeoutError


log = logging.getLogger(__name__)


class PySerialTransport(SerialTransport):
    def __init__(self, *, baudrate: int = SERIAL_BAUDRATE) -> None:
        self._baudrate = int(baudrate)
        self._serial: serial.Serial | None = None
        self._port: str | None = None
        # pyserial keeps one timeout per port; reads from different threads must not race on it.
        self._read_lock = threading.Lock()

    @property
    def port(self) -> str | None:
        return self._port

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self, port: str) -> None:
        try:
            self._serial = serial.Serial(
                port=port,
                baudrate=self._baudrate,
                bytesize=serial.EIGHTBITS,
                stopbits=serial.STOPBITS_ONE,
                parity=serial.PARITY_NONE,
                timeout=0,
            )
        except (serial.SerialException, ValueError) as exc:
            raise TransportError(f"{port} - {exc}") from exc
        self._port = port
        log.debug("Serial port opened", extra={"port": port, "baudrate": self._baudrate})

    def write(self, data: bytes) -> None:
        ser = self._require_open()
        log_wire(log, "tx", data, port=self._port)
        try:
            ser.write(data)
        except serial.SerialException as exc:
            raise TransportError(f"{self._port} - {exc}") from exc

    def read(self, size: int, timeout_ms: int) -> bytes:
        ser = self._require_open()
        with self._read_lock:
            try:
                ser.timeout = timeout_ms / 1000.0
                data = ser.read(size)
            except serial.SerialException as exc:
                raise TransportError(f"{self._port} - {exc}") from exc
        if len(data) < size:
            raise TransportTimeoutError(f"timeout reading from {self._port}")
        log_wire(log, "rx", data, port=self._port)
        return data

    def read_some(self, max_size: int, timeout_ms: int) -> bytes:
        ser = self._require_open()
        with self._read_lock:
            try:
                ser.timeout = timeout_ms / 1000.0
                data = ser.read(1)
                if data:
                    waiting = min(ser.in_waiting, max(0, max_size - 1))
                    if waiting:
                        data += ser.read(waiting)
            except serial.SerialException as exc:
                raise TransportError(f"{self._port} - {exc}") from exc
        log_wire(log, "rx", data, port=self._port)
        return data

    def purge(self) -> None:
        ser = self._require_open()
        try:
            ser.reset_input_buffer()
            ser.reset_output_buffer()
        except serial.SerialException as exc:
            raise TransportError(f"{self._port} - {exc}") from exc

    def close(self) -> None:
        ser = self._serial
        self._serial = None
        if ser is None:
            return None
        try:
            ser.close()
        except serial.SerialException as exc:
            raise TransportError(f"{self._port} - {exc}") from exc
        log.debug("Serial port closed", extra={"port": self._port})

    def _require_open(self) -> serial.Serial:
        if self._serial is None:
            raise TransportError("serial port not open")
        return self._serial
