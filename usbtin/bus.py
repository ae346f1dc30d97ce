"""python-can backend for USBtin adapters.

>>> import can
>>> bus = can.Bus(interface="usbtin", channel="/dev/ttyACM0", bitrate=500000)
>>> bus.send(can.Message(arbitration_id=0x123, data=[1, 2, 3], is_extended_id=False))
>>> print(bus.recv(timeout=1.0))

The class is registered under the "can.interface" entry point group as
"usbtin"; it can also be referenced directly as usbtin.bus.UsbtinBus.
"""

from __future__ import annotations

import logging
import queue
import time
from typing import Any, Optional, Sequence

from can import BusABC, CanProtocol, Message
from can.exceptions import CanInitializationError, CanOperationError

from usbtin.config import load_settings
from usbtin.core.device import DeviceState, OpenMode, UsbtinDevice
from usbtin.core.errors import UsbtinError
from usbtin.core.filters import FilterChain
from usbtin.core.frame import CanFrame
from usbtin.core.transport.base import SerialTransport


log = logging.getLogger(__name__)


def frame_to_message(frame: CanFrame, *, channel: Optional[str] = None, timestamp: Optional[float] = None) -> Message:
    return Message(
        timestamp=time.time() if timestamp is None else timestamp,
        arbitration_id=frame.can_id,
        is_extended_id=frame.extended,
        is_remote_frame=frame.remote,
        dlc=frame.dlc,
        data=None if frame.remote else frame.data,
        channel=channel,
    )


def message_to_frame(msg: Message) -> CanFrame:
    if msg.is_fd:
        raise CanOperationError("CAN FD frames are not supported by USBtin")
    if msg.is_remote_frame:
        return CanFrame(can_id=msg.arbitration_id, extended=msg.is_extended_id, remote=True, length=msg.dlc)
    return CanFrame(can_id=msg.arbitration_id, data=bytes(msg.data), extended=msg.is_extended_id)


class UsbtinBus(BusABC):
    """USBtin interface for python-can.

    Received frames are queued by a device listener and handed out by
    recv(); software filters from can_filters are applied by BusABC.
    """

    def __init__(
        self,
        channel: Optional[str] = None,
        bitrate: int = 500_000,
        mode: str = "active",
        filter_chains: Optional[Sequence[FilterChain]] = None,
        transport: Optional[SerialTransport] = None,
        **kwargs: Any,
    ) -> None:
        """
        :param channel: Serial port (e.g. "/dev/ttyACM0" or "COM3"); falls back to USBTIN_PORT.
        :param bitrate: CAN bit rate in bit/s; non-preset rates use custom bit timing.
        :param mode: "active", "listen-only" or "loopback".
        :param filter_chains: Optional hardware acceptance filters (at most two chains).
        :param transport: Transport to use instead of a pyserial port.
        """
        settings = load_settings(port=channel)
        if not settings.port:
            self._is_shutdown = True
            raise CanInitializationError("Must specify a serial port.")

        self._rx: queue.SimpleQueue[Message] = queue.SimpleQueue()
        self._device = UsbtinDevice(transport, settings=settings)
        self._can_protocol = CanProtocol.CAN_20
        self.channel_info = f"USBtin on {settings.port}"

        try:
            self._device.connect(settings.port)
            if filter_chains is not None:
                self._device.set_filter(filter_chains)
            self._device.add_listener(self._on_frame)
            self._device.open_channel(int(bitrate), OpenMode.parse(mode))
        except (UsbtinError, ValueError) as exc:
            self._device.disconnect()
            # BusABC.__init__ never ran; keep __del__ from shutting down a half-built bus.
            self._is_shutdown = True
            raise CanInitializationError(str(exc)) from exc

        log.debug(
            "USBtin bus ready",
            extra={"port": settings.port, "firmware": self.firmware_version, "bitrate": int(bitrate), "mode": mode},
        )
        super().__init__(channel=settings.port, **kwargs)

    @property
    def device(self) -> UsbtinDevice:
        return self._device

    @property
    def firmware_version(self) -> Optional[str]:
        return self._device.firmware_version

    @property
    def hardware_version(self) -> Optional[str]:
        return self._device.hardware_version

    @property
    def serial_number(self) -> Optional[str]:
        return self._device.serial_number

    def _on_frame(self, frame: CanFrame) -> None:
        self._rx.put(frame_to_message(frame, channel=self.channel_info))

    def send(self, msg: Message, timeout: Optional[float] = None) -> None:
        try:
            self._device.send(message_to_frame(msg))
        except UsbtinError as exc:
            raise CanOperationError(str(exc)) from exc

    def _recv_internal(self, timeout: Optional[float]) -> tuple[Optional[Message], bool]:
        try:
            msg = self._rx.get(timeout=timeout)
        except queue.Empty:
            return None, False
        return msg, False

    def shutdown(self) -> None:
        super().shutdown()
        device = getattr(self, "_device", None)
        if device is None:
            return None
        device.remove_listener(self._on_frame)
        if device.state is DeviceState.CHANNEL_OPEN:
            try:
                device.close_channel()
            except UsbtinError as exc:
                log.warning("Closing CAN channel failed", extra={"error": str(exc)})
        device.disconnect()
