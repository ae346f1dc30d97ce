"""Shared fixtures: a simulated USBtin behind an in-memory transport.

Also puts the repository root on sys.path so the tests run from a plain
checkout without installing the package first.
"""

from __future__ import annotations

import os
import sys
import time
from typing import Callable

import pytest

_HERE = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(_HERE, ".."))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from usbtin.config import DeviceSettings  # noqa: E402
from usbtin.core.device import UsbtinDevice  # noqa: E402
from usbtin.core.transport.mock import MockTransport  # noqa: E402
from usbtin.emulator.device_sim import SimulatedUsbtin  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # Never pick up a developer's real config or environment.
    for key in (
        "USBTIN_PORT",
        "USBTIN_OSCILLATOR_HZ",
        "USBTIN_TIMEOUT_MS",
        "USBTIN_SETTLE_MS",
        "USBTIN_READ_TIMEOUT_MS",
        "USBTIN_MAX_NAK_RETRIES",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("USBTIN_CONFIG_DIR", str(tmp_path / "config"))


@pytest.fixture
def sim() -> SimulatedUsbtin:
    return SimulatedUsbtin(firmware_version="0107", hardware_version="0100", serial_number="A021")


@pytest.fixture
def transport(sim) -> MockTransport:
    return MockTransport(sim)


@pytest.fixture
def settings() -> DeviceSettings:
    return DeviceSettings(timeout_ms=200, settle_ms=0, read_timeout_ms=20)


@pytest.fixture
def device(transport, settings):
    dev = UsbtinDevice(transport, settings=settings)
    yield dev
    dev.disconnect()


@pytest.fixture
def connected(device):
    device.connect("sim0")
    return device


def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate; inbound traffic is handled on the reader thread."""
    return _wait_until
