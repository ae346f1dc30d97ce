from __future__ import annotations

import enum
import logging
import time
from typing import Any, Sequence

from usbtin.config import DeviceSettings
from usbtin.core.command import BELL, CR, CommandChannel
from usbtin.core.dispatcher import FrameListener, InboundDispatcher, ListenerRegistry, ReaderThread
from usbtin.core.errors import ConnectError, DeviceIOError, DeviceTimeoutError, InvalidStateError, UsbtinError
from usbtin.core.filters import FilterChain, FilterProgrammer
from usbtin.core.frame import CanFrame, encode_frame
from usbtin.core.timing import BitTiming, compute_bit_timing
from usbtin.core.transport.base import SerialTransport, TransportError, TransportTimeoutError
from usbtin.core.txqueue import TxQueue


log = logging.getLogger(__name__)

# MCP2515 EFLG register; writing 0 clears the RX overflow flags.
ERROR_FLAG_REGISTER = 0x2D


class DeviceState(enum.Enum):
    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    CHANNEL_OPEN = "channel_open"


class OpenMode(enum.Enum):
    ACTIVE = "O"
    LISTEN_ONLY = "L"
    LOOPBACK = "l"

    @classmethod
    def parse(cls, value: "OpenMode | str") -> "OpenMode":
        if isinstance(value, OpenMode):
            return value
        raw = str(value).strip().lower().replace("_", "-")
        aliases = {"active": cls.ACTIVE, "listen-only": cls.LISTEN_ONLY, "listenonly": cls.LISTEN_ONLY, "loopback": cls.LOOPBACK}
        if raw in aliases:
            return aliases[raw]
        raise ValueError(f"invalid open mode: {value!r}")


class UsbtinDevice:
    """A USBtin adapter reached over a serial port.

    Lifecycle: connect() -> [set_filter()] -> open_channel() -> send() ...
    -> close_channel() -> disconnect(). Listeners run on the reader thread
    and must return quickly; a slow listener delays all inbound traffic.
    """

    def __init__(self, transport: SerialTransport | None = None, *, settings: DeviceSettings | None = None) -> None:
        if transport is None:
            from usbtin.core.transport.serialport import PySerialTransport

            transport = PySerialTransport()
        self._transport = transport
        self._settings = settings or DeviceSettings()
        self._commands = CommandChannel(transport, timeout_ms=self._settings.timeout_ms)
        self._listeners = ListenerRegistry()
        self._txqueue = TxQueue(self._write_frame, max_nak_retries=self._settings.max_nak_retries)
        self._reader: ReaderThread | None = None
        self._state = DeviceState.DISCONNECTED
        self._port: str | None = None
        self._firmware_version: str | None = None
        self._hardware_version: str | None = None
        self._serial_number: str | None = None
        self._bit_timing: BitTiming | None = None

    def __enter__(self) -> "UsbtinDevice":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.disconnect()

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def port(self) -> str | None:
        return self._port

    @property
    def settings(self) -> DeviceSettings:
        return self._settings

    @property
    def firmware_version(self) -> str | None:
        return self._firmware_version

    @property
    def hardware_version(self) -> str | None:
        return self._hardware_version

    @property
    def serial_number(self) -> str | None:
        return self._serial_number

    @property
    def bit_timing(self) -> BitTiming | None:
        return self._bit_timing

    def connect(self, port: str | None = None) -> None:
        """Open the port, force the adapter into configuration mode and read its identity."""
        self._require_state(DeviceState.DISCONNECTED, "connect")
        port = port or self._settings.port
        if not port:
            raise ConnectError("no serial port given")

        self._state = DeviceState.HANDSHAKING
        log.info("Connecting", extra={"port": port})
        try:
            self._transport.open(port)
            self._handshake()
        except (UsbtinError, TransportError) as exc:
            self._abort_connect()
            raise ConnectError(self._connect_failure_message(port, exc)) from exc
        except BaseException:
            self._abort_connect()
            raise

        self._port = port
        self._state = DeviceState.CONNECTED
        log.info(
            "Connected",
            extra={
                "port": port,
                "firmware": self._firmware_version,
                "hardware": self._hardware_version,
                "serial": self._serial_number,
            },
        )

    def disconnect(self) -> None:
        """Close the port from any state. Never raises on transport errors."""
        self._stop_reader()
        try:
            self._transport.close()
        except TransportError as exc:
            log.warning("Closing serial port failed", extra={"port": self._port, "error": str(exc)})
        dropped = self._txqueue.clear()
        if dropped:
            log.warning("Pending frames discarded", extra={"count": len(dropped)})
        if self._state is not DeviceState.DISCONNECTED:
            log.info("Disconnected", extra={"port": self._port})
        self._state = DeviceState.DISCONNECTED
        self._port = None
        self._clear_identity()

    def set_filter(self, chains: Sequence[FilterChain] | None = None) -> None:
        """Program the acceptance filters; only between connect() and open_channel()."""
        self._require_state(DeviceState.CONNECTED, "set_filter")
        FilterProgrammer(self._commands.write_register).apply(list(chains or ()))

    def write_register(self, address: int, value: int) -> None:
        self._require_state(DeviceState.CONNECTED, "write_register")
        self._commands.write_register(address, value)

    def open_channel(self, baudrate: int, mode: OpenMode | str = OpenMode.ACTIVE) -> BitTiming:
        self._require_state(DeviceState.CONNECTED, "open_channel")
        open_mode = OpenMode.parse(mode)
        timing = compute_bit_timing(self._settings.oscillator_hz, baudrate)
        if not timing.is_preset:
            log.info(
                "No preset for baud rate, using custom bit timing",
                extra={"baudrate": baudrate, "achieved_baudrate": timing.achieved_baudrate, "command": timing.command()},
            )
        self._commands.transmit(timing.command())
        self._commands.transmit(open_mode.value)
        self._bit_timing = timing

        self._txqueue.clear()
        self._reader = ReaderThread(
            self._transport,
            InboundDispatcher(self._txqueue, self._listeners),
            read_timeout_ms=self._settings.read_timeout_ms,
        )
        self._reader.start()
        self._state = DeviceState.CHANNEL_OPEN
        log.info("CAN channel open", extra={"baudrate": baudrate, "mode": open_mode.name.lower()})
        return timing

    def close_channel(self) -> None:
        self._require_state(DeviceState.CHANNEL_OPEN, "close_channel")
        self._stop_reader()
        dropped = self._txqueue.clear()
        if dropped:
            log.warning("Pending frames discarded", extra={"count": len(dropped)})
        try:
            self._transport.write(b"C\r")
            self._settle()
            self._transport.purge()
        except TransportError as exc:
            raise DeviceIOError(str(exc)) from exc
        finally:
            self._state = DeviceState.CONNECTED
            self._bit_timing = None
            self._clear_identity()
        log.info("CAN channel closed")

    def send(self, frame: CanFrame) -> None:
        self._require_state(DeviceState.CHANNEL_OPEN, "send")
        reader = self._reader
        if reader is not None and reader.error is not None:
            # Without the reader no ACK ever arrives; the channel has to be reopened.
            raise DeviceIOError(f"serial read failed: {reader.error}")
        queued_error = self._txqueue.take_error()
        if queued_error is not None:
            raise queued_error
        self._txqueue.enqueue(frame)

    def add_listener(self, listener: FrameListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: FrameListener) -> None:
        self._listeners.remove(listener)

    def pending_frames(self) -> list[CanFrame]:
        return self._txqueue.pending()

    def _handshake(self) -> None:
        transport = self._transport
        # Whatever mode the adapter was left in, end up in configuration mode.
        transport.write(b"\rC\r")
        self._settle()
        transport.purge()
        transport.write(b"C\r")
        while True:
            b = transport.read(1, self._settings.timeout_ms)[0]
            if b in (CR, BELL):
                break

        self._firmware_version = self._commands.transmit("v")[1:]
        self._hardware_version = self._commands.transmit("V")[1:]
        self._serial_number = self._commands.transmit("N")[1:]
        self._commands.write_register(ERROR_FLAG_REGISTER, 0x00)

    def _abort_connect(self) -> None:
        try:
            self._transport.close()
        except TransportError as exc:
            log.debug("Closing serial port after failed connect failed", extra={"error": str(exc)})
        self._state = DeviceState.DISCONNECTED
        self._clear_identity()

    @staticmethod
    def _connect_failure_message(port: str, exc: BaseException) -> str:
        if isinstance(exc, (TransportTimeoutError, DeviceTimeoutError)):
            return f"{port} - timeout, USBtin doesn't answer. Right port?"
        return f"{port} - {exc}"

    def _write_frame(self, frame: CanFrame) -> None:
        try:
            self._transport.write(encode_frame(frame).encode("ascii") + b"\r")
        except TransportError as exc:
            raise DeviceIOError(str(exc)) from exc

    def _stop_reader(self) -> None:
        reader = self._reader
        self._reader = None
        if reader is not None:
            reader.stop()

    def _settle(self) -> None:
        if self._settings.settle_ms > 0:
            time.sleep(self._settings.settle_ms / 1000.0)

    def _clear_identity(self) -> None:
        self._firmware_version = None
        self._hardware_version = None
        self._serial_number = None

    def _require_state(self, expected: DeviceState, operation: str) -> None:
        if self._state is not expected:
            raise InvalidStateError(f"{operation} requires state {expected.value}, device is {self._state.value}")
