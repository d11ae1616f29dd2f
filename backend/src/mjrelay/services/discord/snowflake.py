"""Discord snowflake helpers.

A snowflake is a 64-bit id whose top 42 bits hold milliseconds since the
Discord epoch (2015-01-01T00:00:00Z).
"""

import random
import time
from datetime import UTC, datetime
from typing import Optional, Union

DISCORD_EPOCH_MS = 1420070400000
TIMESTAMP_SHIFT = 22


def snowflake_to_ms(snowflake: Union[str, int]) -> int:
    """Return the creation time of a snowflake in Unix milliseconds.

    Raises:
        ValueError: If snowflake is not an integer string
    """
    return (int(snowflake) >> TIMESTAMP_SHIFT) + DISCORD_EPOCH_MS


def snowflake_to_datetime(snowflake: Union[str, int]) -> datetime:
    """Return the creation time of a snowflake as an aware UTC datetime."""
    return datetime.fromtimestamp(snowflake_to_ms(snowflake) / 1000, tz=UTC)


def ms_to_snowflake(timestamp_ms: int, low_bits: int = 0) -> str:
    """Build a snowflake for a Unix millisecond timestamp (low 22 bits from low_bits)."""
    return str(((timestamp_ms - DISCORD_EPOCH_MS) << TIMESTAMP_SHIFT) | (low_bits & 0x3FFFFF))


def generate_nonce(now_ms: Optional[int] = None) -> str:
    """Generate an interaction nonce shaped like a snowflake for the current time."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return ms_to_snowflake(now_ms, random.getrandbits(22))
