# rfid_portal/commands.py
"""
Reader command frames.

Vendor framing: A5 5A | 00 LEN | CMD SUB [DATA] | CHK | 0D 0A
where CHK is the low byte of CMD + SUB + DATA.
"""

from __future__ import annotations
from typing import Iterable

HEAD = b"\xA5\x5A"
TAIL = b"\x0D\x0A"

CMD_CONFIG = 0x82
SUB_POWER = 0x27
SUB_ANTENNAS = 0x28

APPLY_CONFIG = bytes.fromhex("A5 5A 00 08 82 29 01 BF 0D 0A")   # fixed vendor checksum
RESET = bytes.fromhex("A5 5A 00 07 70 77 0D 0A")

MAX_POWER_DBM = 30


def _frame(cmd: int, sub: int, data: int) -> bytes:
    chk = (cmd + sub + data) & 0xFF
    return HEAD + bytes([0x00, 0x08, cmd, sub, data & 0xFF, chk]) + TAIL


def clamp_power(dbm: int) -> int:
    return max(0, min(MAX_POWER_DBM, int(dbm)))


def set_power(dbm: int) -> bytes:
    """Transmit power frame; `dbm` is clamped to 0-30."""
    return _frame(CMD_CONFIG, SUB_POWER, clamp_power(dbm))


def antenna_mask(antennas: Iterable[int]) -> int:
    mask = 0
    for a in antennas:
        if 1 <= int(a) <= 4:
            mask |= 1 << (int(a) - 1)
    return mask


def set_antennas(antennas: Iterable[int]) -> bytes:
    return _frame(CMD_CONFIG, SUB_ANTENNAS, antenna_mask(antennas))


def hexdump(frame: bytes) -> str:
    return " ".join(f"{b:02X}" for b in frame)
