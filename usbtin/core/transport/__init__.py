from __future__ import annotations

from usbtin.core.transport.base import SerialTransport, TransportError, TransportTimeoutError
from usbtin.core.transport.mock import MockTransport
from usbtin.core.transport.recorder import RecordingTransport
from usbtin.core.transport.serialport import PySerialTransport

__all__ = [
    "MockTransport",
    "PySerialTransport",
    "RecordingTransport",
    "SerialTransport",
    "TransportError",
    "TransportTimeoutError",
]
