from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable

from usbtin.core.errors import DeviceIOError, LinkBrokenError, UsbtinError
from usbtin.core.frame import CanFrame
from usbtin.logging import TRACE_LEVEL


log = logging.getLogger(__name__)


class TxQueue:
    """Outbound FIFO with a single frame in flight.

    The head is written when it reaches the front of the queue; it stays
    there until the device ACKs it and is rewritten on every NAK.

    Failures on the ACK/NAK path happen on the reader thread. They are
    recorded and handed to the next sender via take_error().
    """

    def __init__(self, write: Callable[[CanFrame], None], *, max_nak_retries: int | None = None) -> None:
        self._write = write
        self._max_nak_retries = max_nak_retries
        self._frames: deque[CanFrame] = deque()
        self._in_flight = False
        self._naks = 0
        self._error: UsbtinError | None = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)

    @property
    def in_flight(self) -> CanFrame | None:
        with self._lock:
            if self._in_flight and self._frames:
                return self._frames[0]
            return None

    def pending(self) -> list[CanFrame]:
        with self._lock:
            return list(self._frames)

    def enqueue(self, frame: CanFrame) -> None:
        with self._lock:
            self._frames.append(frame)
            if self._in_flight:
                return
            try:
                self._transmit_head()
            except DeviceIOError:
                # The caller keeps ownership of its frame; an older stalled head stays queued.
                self._frames.pop()
                raise

    def on_ack(self) -> None:
        with self._lock:
            if not self._frames:
                log.debug("ACK without pending frame ignored")
                return
            frame = self._frames.popleft()
            self._in_flight = False
            self._naks = 0
            if log.isEnabledFor(TRACE_LEVEL):
                log.log(TRACE_LEVEL, "Frame acknowledged", extra={"frame": str(frame)})
            if self._frames:
                self._transmit_recorded()

    def on_nak(self) -> None:
        with self._lock:
            if not self._frames:
                log.debug("NAK without pending frame ignored")
                return
            self._naks += 1
            if self._max_nak_retries is not None and self._naks > self._max_nak_retries:
                frame = self._frames.popleft()
                self._in_flight = False
                self._naks = 0
                self._error = LinkBrokenError(f"frame {frame} dropped after {self._max_nak_retries} retransmissions")
                log.error("Frame dropped after repeated NAKs", extra={"frame": str(frame), "retries": self._max_nak_retries})
                if self._frames:
                    self._transmit_recorded()
                return
            log.debug("Frame NAKed, retransmitting", extra={"frame": str(self._frames[0]), "naks": self._naks})
            self._transmit_recorded()

    def take_error(self) -> UsbtinError | None:
        """Return and forget the last failure recorded on the ACK/NAK path."""
        with self._lock:
            err = self._error
            self._error = None
            return err

    def clear(self) -> list[CanFrame]:
        with self._lock:
            dropped = list(self._frames)
            self._frames.clear()
            self._in_flight = False
            self._naks = 0
            self._error = None
            return dropped

    def _transmit_recorded(self) -> None:
        # Caller holds the lock. The head stays queued, not in flight, until the next enqueue.
        try:
            self._transmit_head()
        except DeviceIOError as exc:
            self._error = exc
            raise

    def _transmit_head(self) -> None:
        # Caller holds the lock.
        self._in_flight = False
        self._write(self._frames[0])
        self._in_flight = True
