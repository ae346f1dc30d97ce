from __future__ import annotations

from dataclasses import dataclass

from usbtin.core.errors import InvalidFrameError

MAX_STANDARD_ID = 0x7FF
MAX_EXTENDED_ID = 0x1FFFFFFF
MAX_DATA_LENGTH = 8

FRAME_PREFIXES = frozenset("tTrR")

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


@dataclass(frozen=True)
class CanFrame:
    """Classic CAN frame.

    Identifiers above 0x7FF force the extended flag, identifiers above
    0x1FFFFFFF are clamped. Remote frames carry a requested length but
    never payload bytes.
    """

    can_id: int
    data: bytes = b""
    extended: bool = False
    remote: bool = False
    length: int | None = None

    def __post_init__(self) -> None:
        can_id = int(self.can_id)
        if can_id < 0:
            raise InvalidFrameError(f"negative CAN identifier: {can_id}")
        if can_id > MAX_EXTENDED_ID:
            can_id = MAX_EXTENDED_ID
        extended = bool(self.extended) or can_id > MAX_STANDARD_ID

        data = bytes(self.data)
        if len(data) > MAX_DATA_LENGTH:
            raise InvalidFrameError(f"payload too long: {len(data)} bytes")

        if self.remote:
            length = len(data) if self.length is None else int(self.length)
            data = b""
        else:
            if self.length is not None and int(self.length) != len(data):
                raise InvalidFrameError("length does not match payload of a data frame")
            length = len(data)
        if not 0 <= length <= MAX_DATA_LENGTH:
            raise InvalidFrameError(f"invalid frame length: {length}")

        object.__setattr__(self, "can_id", can_id)
        object.__setattr__(self, "extended", extended)
        object.__setattr__(self, "remote", bool(self.remote))
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "length", length)

    @property
    def dlc(self) -> int:
        return len(self.data) if self.length is None else self.length

    def __str__(self) -> str:
        return encode_frame(self)


def encode_frame(frame: CanFrame) -> str:
    """Return the wire line for frame (without terminator)."""
    if frame.extended:
        line = ("R" if frame.remote else "T") + f"{frame.can_id:08x}"
    else:
        line = ("r" if frame.remote else "t") + f"{frame.can_id:03x}"
    line += f"{frame.dlc:01x}"
    if not frame.remote:
        line += frame.data.hex()
    return line


def _hex_field(line: str, start: int, width: int, *, strict: bool, name: str) -> int:
    text = line[start : start + width]
    if len(text) == width and all(c in _HEX_DIGITS for c in text):
        return int(text, 16)
    if strict:
        raise InvalidFrameError(f"malformed {name} field in {line!r}")
    return 0


def decode_frame(line: str, *, strict: bool = False) -> CanFrame:
    """Parse a frame line such as ``t1230`` or ``T12345678197``.

    Lenient by default: a missing or malformed numeric field reads as 0,
    the length nibble is capped at 8 and missing data bytes are 0. With
    strict=True any of these raises InvalidFrameError instead.
    """

    kind = line[0] if line else "t"
    if kind not in FRAME_PREFIXES:
        if strict:
            raise InvalidFrameError(f"not a frame line: {line!r}")
        kind = "t"

    remote = kind in "rR"
    extended = kind in "TR"
    id_width = 8 if extended else 3

    can_id = _hex_field(line, 1, id_width, strict=strict, name="identifier")
    index = 1 + id_width

    length = _hex_field(line, index, 1, strict=strict, name="length")
    if length > MAX_DATA_LENGTH:
        if strict:
            raise InvalidFrameError(f"length {length} out of range in {line!r}")
        length = MAX_DATA_LENGTH
    index += 1

    if remote:
        if strict and len(line) != index:
            raise InvalidFrameError(f"trailing characters in {line!r}")
        return CanFrame(can_id=can_id, extended=extended, remote=True, length=length)

    data = bytearray()
    for _ in range(length):
        data.append(_hex_field(line, index, 2, strict=strict, name="data"))
        index += 2
    if strict and len(line) != index:
        raise InvalidFrameError(f"trailing characters in {line!r}")
    return CanFrame(can_id=can_id, data=bytes(data), extended=extended)
