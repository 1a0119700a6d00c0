"""Command log entry ids.

Ids are ULIDs: 26 Crockford base32 characters encoding a 48-bit millisecond
timestamp followed by 80 random bits, so they sort by creation time.
"""

from __future__ import annotations

import secrets
import time
from typing import Final

CROCKFORD: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ID_LENGTH: Final[int] = 26


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def new_entry_id(ts_ms: int | None = None) -> str:
    stamp = (now_ms() if ts_ms is None else ts_ms) % (1 << 48)
    n = (stamp << 80) | secrets.randbits(80)
    digits = [CROCKFORD[(n >> shift) & 31] for shift in range(5 * (ID_LENGTH - 1), -1, -5)]
    return "".join(digits)


def is_entry_id(value: str) -> bool:
    # 130 bits of space for 128 bits of id, so the leading digit is at most 7
    return len(value) == ID_LENGTH and value[0] in "01234567" and set(value) <= set(CROCKFORD)
