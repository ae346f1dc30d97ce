from __future__ import annotations

from abc import ABC, abstractmethod

SERIAL_BAUDRATE = 115200


class TransportError(Exception):
    pass


class TransportTimeoutError(TransportError):
    pass


class SerialTransport(ABC):
    """Byte-oriented serial channel used by the device engine.

    Concrete transports can be:
    - pyserial (real hardware)
    - mock (in-memory, backed by a simulated device)
    - recorder wrapper
    """

    @abstractmethod
    def open(self, port: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def write(self, data: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    def read(self, size: int, timeout_ms: int) -> bytes:
        """Read exactly size bytes or raise TransportTimeoutError."""
        raise NotImplementedError

    @abstractmethod
    def read_some(self, max_size: int, timeout_ms: int) -> bytes:
        """Return whatever arrives within timeout_ms (possibly empty)."""
        raise NotImplementedError

    def purge(self) -> None:
        return None

    def close(self) -> None:
        return None

    @property
    def is_open(self) -> bool:
        return False
