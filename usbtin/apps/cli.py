from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
import time
import uuid
from typing import Any

from usbtin.config import load_settings
from usbtin.core.device import OpenMode, UsbtinDevice
from usbtin.core.errors import InvalidFrameError, UsbtinError
from usbtin.core.frame import CanFrame, decode_frame, encode_frame
from usbtin.core.timing import compute_bit_timing
from usbtin.core.transport.base import SerialTransport
from usbtin.logging import TRACE_LEVEL, parse_log_level, session_context, setup_logging


log = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="usbtin", description="USBtin serial CAN adapter tool.")
    _add_logging_args(parser)
    parser.add_argument("--config-dir", default=None, help="Directory holding usbtin.json (default: ~/.config/usbtin)")

    sub = parser.add_subparsers(dest="cmd", required=True)

    info_p = sub.add_parser("info", help="Connect and print firmware/hardware/serial identifiers")
    _add_logging_args(info_p)
    _add_port_args(info_p)

    timing_p = sub.add_parser("timing", help="Compute bit timing registers for a baud rate (offline)")
    _add_logging_args(timing_p)
    timing_p.add_argument("--baud", type=int, required=True, help="CAN baud rate in bit/s")
    timing_p.add_argument("--oscillator", type=int, default=None, help="Oscillator frequency in Hz (default: 24000000)")

    monitor_p = sub.add_parser("monitor", help="Open the CAN channel and print received frames (JSONL)")
    _add_logging_args(monitor_p)
    _add_port_args(monitor_p)
    _add_channel_args(monitor_p, default_mode="listen-only")
    monitor_p.add_argument("--duration", type=float, default=None, help="Stop after N seconds (default: until Ctrl-C)")

    send_p = sub.add_parser("send", help="Open the CAN channel and send frames given in wire notation")
    _add_logging_args(send_p)
    _add_port_args(send_p)
    _add_channel_args(send_p, default_mode="active")
    send_p.add_argument("frames", nargs="+", help="Frames like t1230, t00121122, T12345678197, r0037")
    send_p.add_argument("--wait", type=float, default=1.0, help="Seconds to wait for all frames to be acknowledged")

    args = parser.parse_args(argv)

    level_name: str | None = getattr(args, "log_level", None)
    if getattr(args, "trace", False):
        level = TRACE_LEVEL
    elif getattr(args, "verbose", False):
        level = logging.DEBUG
    else:
        level = parse_log_level(level_name)

    setup_logging(
        level=level,
        log_format=str(getattr(args, "log_format", "pretty") or "pretty"),
        log_file=getattr(args, "log_file", None),
        no_color=bool(getattr(args, "no_color", False)),
    )

    session_id = uuid.uuid4().hex[:12]
    with session_context(session_id):
        log.debug("CLI start", extra={"cmd": args.cmd})
        try:
            code = _dispatch(args)
        except (UsbtinError, ValueError) as exc:
            log.error("Command failed", extra={"cmd": args.cmd, "error": str(exc)})
            _print_json({"ok": False, "error": str(exc)})
            code = 1
    raise SystemExit(code)


def _dispatch(args: argparse.Namespace) -> int:
    if args.cmd == "timing":
        settings = load_settings(config_dir=args.config_dir, oscillator_hz=args.oscillator)
        timing = compute_bit_timing(settings.oscillator_hz, args.baud)
        _print_json({"ok": True, **timing.to_dict()})
        return 0

    if args.cmd == "info":
        with _open_device(args) as device:
            _print_json(
                {
                    "ok": True,
                    "port": device.port,
                    "firmware_version": device.firmware_version,
                    "hardware_version": device.hardware_version,
                    "serial_number": device.serial_number,
                }
            )
        return 0

    if args.cmd == "monitor":
        return _monitor(args)

    if args.cmd == "send":
        return _send(args)

    raise SystemExit(f"error: unknown command {args.cmd!r}")


def _monitor(args: argparse.Namespace) -> int:
    out_lock = threading.Lock()

    def emit(frame: CanFrame) -> None:
        line = json.dumps(_frame_event(frame), separators=(",", ":"))
        with out_lock:
            sys.stdout.write(line + "\n")
            sys.stdout.flush()

    with _open_device(args) as device:
        device.add_listener(emit)
        device.open_channel(args.baud, OpenMode.parse(args.mode))
        deadline = None if args.duration is None else time.monotonic() + float(args.duration)
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.05)
        except KeyboardInterrupt:
            log.info("Monitor interrupted")
        device.close_channel()
    return 0


def _send(args: argparse.Namespace) -> int:
    try:
        frames = [decode_frame(text.strip(), strict=True) for text in args.frames]
    except InvalidFrameError as exc:
        _print_json({"ok": False, "error": str(exc)})
        return 2

    with _open_device(args) as device:
        device.open_channel(args.baud, OpenMode.parse(args.mode))
        for frame in frames:
            device.send(frame)
        deadline = time.monotonic() + float(args.wait)
        while device.pending_frames() and time.monotonic() < deadline:
            time.sleep(0.01)
        unacked = [encode_frame(f) for f in device.pending_frames()]
        device.close_channel()

    _print_json({"ok": not unacked, "sent": len(frames) - len(unacked), "unacknowledged": unacked})
    return 0 if not unacked else 1


def _frame_event(frame: CanFrame) -> dict[str, Any]:
    return {
        "event": "frame",
        "ts": round(time.time(), 6),
        "id": f"{frame.can_id:08X}" if frame.extended else f"{frame.can_id:03X}",
        "extended": frame.extended,
        "remote": frame.remote,
        "dlc": frame.dlc,
        "data": frame.data.hex(),
    }


def _open_device(args: argparse.Namespace) -> UsbtinDevice:
    settings = load_settings(
        config_dir=args.config_dir,
        port=getattr(args, "port", None),
        timeout_ms=getattr(args, "timeout_ms", None),
    )
    transport: SerialTransport | None = None
    if getattr(args, "record", None):
        from usbtin.core.transport.recorder import RecordingTransport
        from usbtin.core.transport.serialport import PySerialTransport

        transport = RecordingTransport(PySerialTransport(), str(args.record))
    device = UsbtinDevice(transport, settings=settings)
    device.connect()
    return device


def _add_port_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--port", default=None, help="Serial port (e.g. /dev/ttyACM0, COM3); default: USBTIN_PORT")
    parser.add_argument("--timeout-ms", type=int, default=None, help="Command response timeout (default: 1000)")
    parser.add_argument("--record", default=None, help="Record all serial traffic to this JSONL file")


def _add_channel_args(parser: argparse.ArgumentParser, *, default_mode: str) -> None:
    parser.add_argument("--baud", type=int, default=500_000, help="CAN baud rate in bit/s (default: 500000)")
    parser.add_argument("--mode", choices=["active", "listen-only", "loopback"], default=default_mode)


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    # SUPPRESS defaults keep root-level flags from being overwritten by subparser defaults.
    parser.add_argument(
        "--log-level",
        choices=["error", "warning", "info", "debug", "trace"],
        default=argparse.SUPPRESS,
        help="Logging level (default: info)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Alias for --log-level=debug",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Alias for --log-level=trace (logs raw serial bytes)",
    )
    parser.add_argument("--log-file", default=argparse.SUPPRESS, help="Optional log file path")
    parser.add_argument("--log-format", choices=["pretty", "json"], default=argparse.SUPPRESS)
    parser.add_argument("--no-color", action="store_true", default=argparse.SUPPRESS, help="Disable ANSI colors")


def _print_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, sort_keys=True, indent=2) + "\n")


if __name__ == "__main__":
    main()
