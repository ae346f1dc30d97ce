from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

DEFAULT_OSCILLATOR_HZ = 24_000_000
DEFAULT_TIMEOUT_MS = 1000
DEFAULT_SETTLE_MS = 100
DEFAULT_READ_TIMEOUT_MS = 100

CONFIG_FILE_NAME = "usbtin.json"


@dataclass(frozen=True)
class DeviceSettings:
    port: str | None = None
    oscillator_hz: int = DEFAULT_OSCILLATOR_HZ
    # Bound for a single synchronous command transaction.
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    # Pause after the forced-idle sequence and after closing the channel.
    settle_ms: int = DEFAULT_SETTLE_MS
    # Poll interval of the reader thread; also bounds how long close_channel() waits.
    read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS
    # None keeps NAK retransmission unbounded.
    max_nak_retries: int | None = None


_ENV_KEYS: dict[str, str] = {
    "port": "USBTIN_PORT",
    "oscillator_hz": "USBTIN_OSCILLATOR_HZ",
    "timeout_ms": "USBTIN_TIMEOUT_MS",
    "settle_ms": "USBTIN_SETTLE_MS",
    "read_timeout_ms": "USBTIN_READ_TIMEOUT_MS",
    "max_nak_retries": "USBTIN_MAX_NAK_RETRIES",
}

_INT_FIELDS = {"oscillator_hz", "timeout_ms", "settle_ms", "read_timeout_ms", "max_nak_retries"}


def _xdg_config_home() -> Path:
    env = (os.getenv("XDG_CONFIG_HOME", "") or "").strip()
    if env:
        return Path(env).expanduser()
    return Path("~/.config").expanduser()


def default_config_dir() -> Path:
    env = (os.getenv("USBTIN_CONFIG_DIR", "") or "").strip()
    if env:
        return Path(env).expanduser()
    return _xdg_config_home() / "usbtin"


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "port":
        text = str(value).strip()
        return text or None
    if name in _INT_FIELDS:
        if isinstance(value, bool):
            raise ValueError(f"invalid {name}: {value!r}")
        if isinstance(value, str):
            raw = value.strip().lower()
            if name == "max_nak_retries" and raw in {"", "none", "unbounded"}:
                return None
            try:
                value = int(raw, 0)
            except ValueError as exc:
                raise ValueError(f"invalid {name}: {value!r}") from exc
        number = int(value)
        if number < 0:
            raise ValueError(f"invalid {name}: {value!r}")
        return number
    raise KeyError(name)


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        obj = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(obj, dict):
        return {}
    return {k: v for k, v in obj.items() if k in _ENV_KEYS}


def load_settings(*, config_dir: str | Path | None = None, **overrides: Any) -> DeviceSettings:
    """Resolve device settings.

    Precedence (highest to lowest):
    1) explicit keyword overrides (typically CLI), ignored when None
    2) env vars USBTIN_PORT, USBTIN_TIMEOUT_MS, USBTIN_OSCILLATOR_HZ, ...
    3) config file usbtin.json in config_dir
    4) defaults
    """

    unknown = set(overrides) - set(_ENV_KEYS)
    if unknown:
        raise TypeError(f"unknown settings: {', '.join(sorted(unknown))}")

    cfg_dir = Path(config_dir).expanduser() if config_dir is not None else default_config_dir()
    values: dict[str, Any] = {}

    for name, raw in _read_config_file(cfg_dir / CONFIG_FILE_NAME).items():
        values[name] = _coerce(name, raw)

    for name, env_key in _ENV_KEYS.items():
        env = os.getenv(env_key)
        if env is not None and env.strip():
            values[name] = _coerce(name, env)

    for name, raw in overrides.items():
        if raw is not None:
            values[name] = _coerce(name, raw)

    return replace(DeviceSettings(), **values)

