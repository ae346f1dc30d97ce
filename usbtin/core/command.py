from __future__ import annotations

import logging

from usbtin.config import DEFAULT_TIMEOUT_MS
from usbtin.core.errors import DeviceIOError, DeviceRejectedError, DeviceTimeoutError
from usbtin.core.transport.base import SerialTransport, TransportError, TransportTimeoutError


log = logging.getLogger(__name__)

CR = 0x0D
BELL = 0x07


class CommandChannel:
    """Synchronous command/response transactions.

    Only valid while nothing else reads the transport (before the channel is
    opened); the reader thread owns the transport afterwards.
    """

    def __init__(self, transport: SerialTransport, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        self._transport = transport
        self._timeout_ms = int(timeout_ms)

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    def transmit(self, cmd: str) -> str:
        if not cmd:
            raise ValueError("empty command")
        if "\r" in cmd:
            raise ValueError("command must not contain a line terminator")
        try:
            self._transport.write(cmd.encode("ascii") + b"\r")
        except TransportError as exc:
            raise DeviceIOError(str(exc)) from exc
        response = self.read_response(cmd)
        log.debug("Command transaction", extra={"cmd": cmd, "response": response})
        return response

    def read_response(self, cmd: str | None = None) -> str:
        response = bytearray()
        while True:
            try:
                b = self._transport.read(1, self._timeout_ms)[0]
            except TransportTimeoutError as exc:
                raise DeviceTimeoutError(f"timeout waiting for response to {cmd!r}") from exc
            except TransportError as exc:
                raise DeviceIOError(str(exc)) from exc
            if b == CR:
                return response.decode("ascii", errors="replace")
            if b == BELL:
                raise DeviceRejectedError(f"device rejected {cmd!r}")
            response.append(b)

    def write_register(self, address: int, value: int) -> None:
        if not 0 <= int(address) <= 0xFF:
            raise ValueError("register address out of range")
        if not 0 <= int(value) <= 0xFF:
            raise ValueError("register value out of range")
        self.transmit(f"W{int(address):02x}{int(value):02x}")
