from __future__ import annotations

import logging
import threading
from typing import Callable

from usbtin.core.frame import CanFrame, decode_frame, encode_frame


log = logging.getLogger(__name__)

CR = b"\r"
BELL = b"\x07"

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _is_hex(text: str, width: int) -> bool:
    return len(text) == width and all(c in _HEX_DIGITS for c in text)


class SimulatedUsbtin:
    """In-process model of the USBtin firmware's ASCII protocol.

    Bytes written by the host go into feed(); everything the firmware would
    send back is pushed to the attached sink (see MockTransport).
    """

    def __init__(
        self,
        *,
        firmware_version: str = "0107",
        hardware_version: str = "0100",
        serial_number: str = "A021",
    ) -> None:
        self.firmware_version = firmware_version
        self.hardware_version = hardware_version
        self.serial_number = serial_number

        self.registers: dict[int, int] = {}
        self.register_writes: list[tuple[int, int]] = []
        self.commands: list[str] = []
        self.received_frames: list[CanFrame] = []
        self.bitrate_command: str | None = None
        self.mode: str | None = None
        self.rejected_commands: set[str] = set()
        self.muted = False

        self._line = bytearray()
        self._naks_pending = 0
        self._sink: Callable[[bytes], None] | None = None
        self._lock = threading.RLock()

    @property
    def channel_open(self) -> bool:
        return self.mode is not None

    def attach(self, sink: Callable[[bytes], None] | None) -> None:
        self._sink = sink

    def nak_next(self, count: int = 1) -> None:
        """Answer the next count frames with BELL instead of an ACK."""
        with self._lock:
            self._naks_pending += int(count)

    def inject_frame(self, frame: CanFrame) -> None:
        self.inject_line(encode_frame(frame))

    def inject_line(self, line: str) -> None:
        self._emit(line.encode("ascii") + CR)

    def feed(self, data: bytes) -> None:
        with self._lock:
            for b in data:
                if b == CR[0]:
                    line = self._line.decode("ascii", errors="replace")
                    self._line.clear()
                    self._handle_line(line)
                else:
                    self._line.append(b)

    def _handle_line(self, line: str) -> None:
        self.commands.append(line)
        if line in self.rejected_commands:
            self._emit(BELL)
            return
        if not line:
            self._emit(BELL)
            return

        cmd = line[0]
        if cmd in "tTrR":
            self._handle_frame(line)
        elif cmd == "v":
            self._emit(b"v" + self.firmware_version.encode("ascii") + CR)
        elif cmd == "V":
            self._emit(b"V" + self.hardware_version.encode("ascii") + CR)
        elif cmd == "N":
            self._emit(b"N" + self.serial_number.encode("ascii") + CR)
        elif cmd == "C":
            self.mode = None
            self._emit(CR)
        elif cmd == "S" and len(line) == 2 and line[1] in "012345678" and not self.channel_open:
            self.bitrate_command = line
            self._emit(CR)
        elif cmd == "s" and _is_hex(line[1:], 6) and not self.channel_open:
            self.bitrate_command = line
            self._emit(CR)
        elif cmd in "OLl" and len(line) == 1 and not self.channel_open and self.bitrate_command is not None:
            self.mode = cmd
            self._emit(CR)
        elif cmd == "W" and _is_hex(line[1:], 4):
            address = int(line[1:3], 16)
            value = int(line[3:5], 16)
            self.registers[address] = value
            self.register_writes.append((address, value))
            self._emit(CR)
        else:
            self._emit(BELL)

    def _handle_frame(self, line: str) -> None:
        if self.mode not in {"O", "l"}:
            self._emit(BELL)
            return
        if self._naks_pending > 0:
            self._naks_pending -= 1
            self._emit(BELL)
            return
        frame = decode_frame(line)
        self.received_frames.append(frame)
        self._emit((b"Z" if frame.extended else b"z") + CR)
        if self.mode == "l":
            self._emit(line.encode("ascii") + CR)

    def _emit(self, data: bytes) -> None:
        if self.muted:
            return
        sink = self._sink
        if sink is None:
            log.debug("Simulated device output dropped", extra={"data": data})
            return
        sink(data)
