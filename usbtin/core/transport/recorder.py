from __future__ import annotations

import json

from usbtin.core.transport.base import SerialTransport


class RecordingTransport(SerialTransport):
    def __init__(self, inner: SerialTransport, path: str) -> None:
        self._inner = inner
        self._path = path
        self._tick = 0
        self._file = open(path, "w", encoding="utf-8")

    @property
    def is_open(self) -> bool:
        return self._inner.is_open

    def open(self, port: str) -> None:
        self._inner.open(port)
        self._write_event("open", port.encode("utf-8"))

    def write(self, data: bytes) -> None:
        self._inner.write(data)
        self._write_event("tx", data)

    def read(self, size: int, timeout_ms: int) -> bytes:
        data = self._inner.read(size, timeout_ms)
        self._write_event("rx", data)
        return data

    def read_some(self, max_size: int, timeout_ms: int) -> bytes:
        data = self._inner.read_some(max_size, timeout_ms)
        if data:
            self._write_event("rx", data)
        return data

    def purge(self) -> None:
        self._inner.purge()
        self._write_event("purge", b"")

    def close(self) -> None:
        try:
            self._inner.close()
        finally:
            if not self._file.closed:
                self._write_event("close", b"")
                self._file.close()

    def _write_event(self, direction: str, data: bytes) -> None:
        # JSONL, one event per transport call, in call order.
        event = {
            "t": self._tick,
            "dir": direction,
            "data": bytes(data).hex(),
        }
        self._tick += 1
        self._file.write(json.dumps(event, separators=(",", ":")) + "\n")
        self._file.flush()
