from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from usbtin.core.errors import FilterChainTooLongError, TooManyFilterChainsError


log = logging.getLogger(__name__)

# MCP2515 register map: RXM0SIDH/RXM1SIDH and RXF0SIDH..RXF5SIDH.
MASK_BASE_ADDRESS = 0x20
FILTER_BASE_ADDRESSES: tuple[int, ...] = (0x00, 0x04, 0x08, 0x10, 0x14, 0x18)

MAX_FILTER_CHAINS = 2
# Filters per mask slot: RXB0 has two, RXB1 has four.
SLOT_FILTER_COUNTS: tuple[int, ...] = (2, 4)

_EXTENDED_MATCH = 0x08
_ZERO_REGISTERS = b"\x00\x00\x00\x00"


def _standard_registers(sid: int, d0: int, d1: int) -> bytes:
    return bytes([(sid >> 3) & 0xFF, (sid & 0x7) << 5, d0 & 0xFF, d1 & 0xFF])


def _extended_registers(extid: int) -> bytes:
    return bytes(
        [
            (extid >> 21) & 0xFF,
            ((extid >> 16) & 0x03) | ((extid >> 13) & 0xE0),
            (extid >> 8) & 0xFF,
            extid & 0xFF,
        ]
    )


@dataclass(frozen=True)
class FilterMask:
    """Acceptance mask in MCP2515 register layout.

    Mask bits: 0 accepts regardless of the filter, 1 requires a match.

    FilterMask.extended(0x1FFFFFFF)   # check the whole extended id
    FilterMask.standard(0x7F0, 0xFF)  # check id except last 4 bits and data byte 0
    """

    registers: bytes

    def __post_init__(self) -> None:
        if len(self.registers) != 4:
            raise ValueError("filter registers are four bytes")

    @classmethod
    def standard(cls, sid: int, d0: int = 0, d1: int = 0) -> "FilterMask":
        return cls(_standard_registers(sid, d0, d1))

    @classmethod
    def extended(cls, extid: int) -> "FilterMask":
        return cls(_extended_registers(extid))


@dataclass(frozen=True)
class FilterValue(FilterMask):
    @classmethod
    def extended(cls, extid: int) -> "FilterValue":
        registers = bytearray(_extended_registers(extid))
        registers[1] |= _EXTENDED_MATCH
        return cls(bytes(registers))


@dataclass(frozen=True)
class FilterChain:
    mask: FilterMask
    filters: tuple[FilterValue, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", tuple(self.filters))


def mask_address(slot: int) -> int:
    return MASK_BASE_ADDRESS + slot * 4


def order_filter_chains(chains: Sequence[FilterChain]) -> list[FilterChain]:
    """Validate chains and return them in slot order."""
    ordered = list(chains)
    if len(ordered) > MAX_FILTER_CHAINS:
        raise TooManyFilterChainsError(f"too many filter chains: {len(ordered)} (maximum is {MAX_FILTER_CHAINS})")
    if len(ordered) == 1:
        if len(ordered[0].filters) > SLOT_FILTER_COUNTS[1]:
            raise FilterChainTooLongError(
                f"filter chain too long: {len(ordered[0].filters)} (maximum is {SLOT_FILTER_COUNTS[1]})"
            )
    elif len(ordered) == 2:
        if len(ordered[0].filters) > len(ordered[1].filters):
            ordered.reverse()
        if len(ordered[0].filters) > SLOT_FILTER_COUNTS[0] or len(ordered[1].filters) > SLOT_FILTER_COUNTS[1]:
            raise FilterChainTooLongError(
                f"filter chain too long: {len(ordered[0].filters)}/{len(ordered[1].filters)} "
                f"(maximum is {SLOT_FILTER_COUNTS[0]}/{SLOT_FILTER_COUNTS[1]})"
            )
    return ordered


def plan_filter_writes(chains: Sequence[FilterChain]) -> list[tuple[int, int]]:
    """Return the ordered (address, value) register writes for chains.

    No chains opens both masks (accept all). A single chain is used for
    both slots. Unused filter slots are written as zeros.
    """

    ordered = order_filter_chains(chains)
    writes: list[tuple[int, int]] = []

    if not ordered:
        for slot in range(len(SLOT_FILTER_COUNTS)):
            writes.extend(_block(mask_address(slot), _ZERO_REGISTERS))
        return writes

    filter_index = 0
    for slot, count in enumerate(SLOT_FILTER_COUNTS):
        chain = ordered[min(slot, len(ordered) - 1)]
        writes.extend(_block(mask_address(slot), chain.mask.registers))
        for i in range(count):
            registers = chain.filters[i].registers if i < len(chain.filters) else _ZERO_REGISTERS
            writes.extend(_block(FILTER_BASE_ADDRESSES[filter_index], registers))
            filter_index += 1
    return writes


def _block(base: int, registers: bytes) -> list[tuple[int, int]]:
    return [(base + i, registers[i]) for i in range(4)]


class FilterProgrammer:
    def __init__(self, write_register: Callable[[int, int], None]) -> None:
        self._write_register = write_register

    def apply(self, chains: Sequence[FilterChain] | None) -> list[tuple[int, int]]:
        writes = plan_filter_writes(list(chains or ()))
        log.debug("Programming acceptance filters", extra={"chains": len(chains or ()), "registers": len(writes)})
        for address, value in writes:
            self._write_register(address, value)
        return writes
