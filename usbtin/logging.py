from __future__ import annotations

import contextlib
import contextvars
import datetime as _dt
import enum
import json
import logging
import os
import sys
import traceback
from typing import Any, Iterator

# Below DEBUG: one record per serial read/write or frame event.
TRACE_LEVEL = 5
logging.addLevelName(TRACE_LEVEL, "TRACE")

_session_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("usbtin_session_id", default=None)

# Everything a bare LogRecord carries; any other attribute came in through extra={}.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_WIRE_NAMES = {0x0D: "\\r", 0x07: "\\a"}

_LEVEL_COLORS = (
    (logging.ERROR, "31"),
    (logging.WARNING, "33"),
    (logging.INFO, "32"),
    (logging.DEBUG, "36"),
)


@contextlib.contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with session_id (one per CLI run)."""
    token = _session_id_var.set(str(session_id))
    try:
        yield
    finally:
        _session_id_var.reset(token)


def get_session_id() -> str | None:
    return _session_id_var.get()


def wire_text(data: bytes) -> str:
    """Render serial bytes the way the ASCII protocol reads: ``t1230\\r``."""
    out = []
    for b in bytes(data):
        if b in _WIRE_NAMES:
            out.append(_WIRE_NAMES[b])
        elif 0x20 <= b < 0x7F:
            out.append(chr(b))
        else:
            out.append(f"\\x{b:02x}")
    return "".join(out)


def log_wire(logger: logging.Logger, direction: str, data: bytes, *, port: str | None) -> None:
    """TRACE one chunk of serial traffic; direction is "tx" or "rx"."""
    if not data or not logger.isEnabledFor(TRACE_LEVEL):
        return
    logger.log(
        TRACE_LEVEL,
        "Serial %s",
        direction.upper(),
        extra={"port": port, "dir": direction, "size": len(data), "wire": wire_text(data)},
    )


def _field(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex(" ")
    if isinstance(value, enum.Enum):
        return value.name.lower()
    return value


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        k: _field(v)
        for k, v in vars(record).items()
        if k not in _STANDARD_ATTRS and not k.startswith("_") and k != "session_id"
    }


class _SessionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 (filter)
        if not hasattr(record, "session_id"):
            record.session_id = get_session_id()  # type: ignore[attr-defined]
        return True


class PrettyFormatter(logging.Formatter):
    def __init__(self, *, use_color: bool) -> None:
        super().__init__()
        self._use_color = bool(use_color)

    def format(self, record: logging.LogRecord) -> str:
        parts = [_timestamp(record), f"{record.levelname:<5}", record.name, record.getMessage()]
        session_id = getattr(record, "session_id", None)
        if session_id:
            parts.append(f"session={session_id}")
        parts.extend(f"{k}={v}" for k, v in sorted(_extras(record).items()))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + _format_exc(record.exc_info)
        if not self._use_color:
            return line
        color = next((c for level, c in _LEVEL_COLORS if record.levelno >= level), "90")
        return f"\x1b[{color}m{line}\x1b[0m"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": _timestamp(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
            **_extras(record),
        }
        session_id = getattr(record, "session_id", None)
        if session_id:
            payload["session"] = session_id
        if record.exc_info:
            payload["exc"] = _format_exc(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def _timestamp(record: logging.LogRecord) -> str:
    return _dt.datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="milliseconds")


def _format_exc(exc_info: Any) -> str:
    return "".join(traceback.format_exception(*exc_info)).rstrip()


_LEVEL_NAMES = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE_LEVEL,
}


def parse_log_level(value: str | None) -> int:
    raw = (value or "info").strip().lower() or "info"
    try:
        return _LEVEL_NAMES[raw]
    except KeyError:
        raise ValueError(f"invalid log level: {value!r}") from None


def setup_logging(
    *,
    level: int = logging.INFO,
    log_format: str = "pretty",
    log_file: str | None = None,
    no_color: bool = False,
) -> None:
    """Send logs to stderr (and optionally a file); stdout carries command output.

    At TRACE every serial chunk is logged with its ``wire`` rendering.
    pyserial and python-can stay at WARNING unless DEBUG or TRACE is on.
    """

    fmt = (log_format or "pretty").strip().lower()
    if fmt not in {"pretty", "json"}:
        raise ValueError("invalid log format")

    def formatter(stream_is_tty: bool) -> logging.Formatter:
        if fmt == "json":
            return JsonFormatter()
        return PrettyFormatter(use_color=stream_is_tty and not no_color)

    handlers: list[logging.Handler] = [logging.StreamHandler(stream=sys.stderr)]
    handlers[0].setFormatter(formatter(bool(getattr(sys.stderr, "isatty", lambda: False)())))
    if log_file:
        path = os.path.expanduser(str(log_file))
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
        handlers[-1].setFormatter(formatter(False))
    for handler in handlers:
        handler.addFilter(_SessionFilter())

    logging.basicConfig(level=int(level), handlers=handlers, force=True)

    quiet = logging.DEBUG if int(level) <= logging.DEBUG else logging.WARNING
    for name in ("serial", "can"):
        logging.getLogger(name).setLevel(quiet)
