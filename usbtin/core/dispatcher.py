from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

from usbtin.config import DEFAULT_READ_TIMEOUT_MS
from usbtin.core.errors import UsbtinError
from usbtin.core.frame import FRAME_PREFIXES, CanFrame, decode_frame
from usbtin.core.transport.base import SerialTransport, TransportError
from usbtin.core.txqueue import TxQueue
from usbtin.logging import TRACE_LEVEL


log = logging.getLogger(__name__)

CR = 0x0D
BELL = 0x07

FrameListener = Callable[[CanFrame], None]


class ListenerRegistry:
    """Thread-safe, ordered list of frame listeners."""

    def __init__(self) -> None:
        self._listeners: list[FrameListener] = []
        self._lock = threading.Lock()

    def add(self, listener: FrameListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove(self, listener: FrameListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return None

    def snapshot(self) -> list[FrameListener]:
        with self._lock:
            return list(self._listeners)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


class InboundDispatcher:
    """Splits the inbound byte stream into lines and routes them.

    Frame lines go to every listener in registration order, z/Z lines ACK
    the queue head, a bare BELL byte NAKs it. Listener faults and transmit
    failures are logged and never stop processing of later bytes.
    """

    def __init__(self, txqueue: TxQueue, listeners: ListenerRegistry) -> None:
        self._txqueue = txqueue
        self._listeners = listeners
        self._buffer = bytearray()

    def feed(self, data: Iterable[int]) -> None:
        for b in data:
            if b == CR:
                if self._buffer:
                    line = self._buffer.decode("ascii", errors="replace")
                    self._buffer.clear()
                    self._dispatch_line(line)
            elif b == BELL:
                self._on_nak()
            else:
                self._buffer.append(b)

    def _dispatch_line(self, line: str) -> None:
        kind = line[0]
        if kind in FRAME_PREFIXES:
            self._deliver(decode_frame(line))
        elif kind in "zZ":
            try:
                self._txqueue.on_ack()
            except UsbtinError:
                log.exception("Transmit after ACK failed")
        else:
            log.debug("Unhandled inbound line ignored", extra={"line": line})

    def _on_nak(self) -> None:
        try:
            self._txqueue.on_nak()
        except UsbtinError:
            log.exception("Retransmit after NAK failed")

    def _deliver(self, frame: CanFrame) -> None:
        if log.isEnabledFor(TRACE_LEVEL):
            log.log(TRACE_LEVEL, "Frame received", extra={"frame": str(frame)})
        for listener in self._listeners.snapshot():
            try:
                listener(frame)
            except Exception:
                log.exception("Frame listener failed", extra={"listener": repr(listener), "frame": str(frame)})


class ReaderThread:
    """Owns the transport's read side while a channel is open."""

    def __init__(
        self,
        transport: SerialTransport,
        dispatcher: InboundDispatcher,
        *,
        read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS,
        chunk_size: int = 256,
    ) -> None:
        self._transport = transport
        self._dispatcher = dispatcher
        self._read_timeout_ms = int(read_timeout_ms)
        self._chunk_size = int(chunk_size)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.error: TransportError | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("reader already started")
        self._thread = threading.Thread(target=self._run, name="usbtin-reader", daemon=True)
        self._thread.start()

    def stop(self, timeout_s: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return None
        if timeout_s is None:
            timeout_s = max(1.0, 4 * self._read_timeout_ms / 1000.0)
        thread.join(timeout_s)
        if thread.is_alive():
            log.warning("Reader thread did not stop in time", extra={"timeout_s": timeout_s})

    def _run(self) -> None:
        log.debug("Reader thread started")
        while not self._stop.is_set():
            try:
                data = self._transport.read_some(self._chunk_size, self._read_timeout_ms)
            except TransportError as exc:
                if not self._stop.is_set():
                    self.error = exc
                    log.error("Serial read failed, reader stopped", extra={"error": str(exc)})
                break
            if data:
                self._dispatcher.feed(data)
        log.debug("Reader thread stopped")
