from __future__ import annotations

from dataclasses import dataclass

from usbtin.config import DEFAULT_OSCILLATOR_HZ

# Baud rates the firmware knows natively, selected with "S<digit>".
PRESET_BAUDRATES: dict[int, str] = {
    10_000: "0",
    20_000: "1",
    50_000: "2",
    100_000: "3",
    125_000: "4",
    250_000: "5",
    500_000: "6",
    800_000: "7",
    1_000_000: "8",
}

MIN_BIT_LENGTH = 11
MAX_BIT_LENGTH = 23

# MCP2515 CNF2/CNF3 values for a bit of 11..23 time quanta.
CNF_REGISTER_VALUES: tuple[int, ...] = (
    0x9203,
    0x9303,
    0x9B03,
    0x9B04,
    0x9C04,
    0xA404,
    0xA405,
    0xAC05,
    0xAC06,
    0xAD06,
    0xB506,
    0xB507,
    0xBD07,
)

_BRP_MIN = 2
_BRP_MAX = 128
_CNF1_SJW = 0xC0


@dataclass(frozen=True)
class BitTiming:
    baudrate: int
    achieved_baudrate: int
    preset: str | None = None
    bit_length: int | None = None
    brp: int | None = None
    cnf: int | None = None

    @property
    def is_preset(self) -> bool:
        return self.preset is not None

    @property
    def timing_byte(self) -> int | None:
        if self.brp is None:
            return None
        return self.brp | _CNF1_SJW

    def command(self) -> str:
        if self.preset is not None:
            return "S" + self.preset
        if self.brp is None or self.cnf is None:
            raise ValueError("bit timing has neither a preset nor register values")
        return f"s{self.brp | _CNF1_SJW:02x}{self.cnf:04x}"

    def to_dict(self) -> dict[str, object]:
        return {
            "baudrate": int(self.baudrate),
            "achieved_baudrate": int(self.achieved_baudrate),
            "preset": self.preset,
            "bit_length": self.bit_length,
            "brp": self.brp,
            "cnf": None if self.cnf is None else f"{self.cnf:04x}",
            "command": self.command(),
        }


def _round_to_even(xbrp10: int) -> int:
    # xbrp10 is the prescaler times ten; round half up to the next even prescaler.
    m = xbrp10 % 20
    if m >= 10:
        xbrp10 += 20
    xbrp10 -= m
    return xbrp10 // 10


def compute_bit_timing(oscillator_hz: int = DEFAULT_OSCILLATOR_HZ, baudrate: int = 500_000) -> BitTiming:
    """Resolve a baud rate to a preset or to custom MCP2515 timing registers.

    The search walks bit lengths of 11..23 time quanta and keeps the first
    one whose even prescaler gets closest to oscillator_hz / baudrate.
    """

    oscillator_hz = int(oscillator_hz)
    baudrate = int(baudrate)
    if oscillator_hz <= 0:
        raise ValueError("oscillator frequency must be positive")
    if baudrate <= 0:
        raise ValueError("baud rate must be positive")

    preset = PRESET_BAUDRATES.get(baudrate)
    if preset is not None:
        return BitTiming(baudrate=baudrate, achieved_baudrate=baudrate, preset=preset)

    xdesired = oscillator_hz // baudrate
    candidates: list[tuple[int, int, int]] = []  # (diff, x, brp)
    for x in range(MIN_BIT_LENGTH, MAX_BIT_LENGTH + 1):
        xbrp = _round_to_even((xdesired * 10) // x)
        xbrp = min(max(xbrp, _BRP_MIN), _BRP_MAX)
        candidates.append((abs(xdesired - x * xbrp), x, xbrp // 2 - 1))

    # min() keeps the first of equal deviations, so ties go to the shortest bit.
    _, x, brp = min(candidates, key=lambda c: c[0])
    return BitTiming(
        baudrate=baudrate,
        achieved_baudrate=oscillator_hz // (x * (brp + 1) * 2),
        bit_length=x,
        brp=brp,
        cnf=CNF_REGISTER_VALUES[x - MIN_BIT_LENGTH],
    )
