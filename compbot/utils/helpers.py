"""
Centralized helper functions used across multiple cogs.
"""
from __future__ import annotations
import math
import secrets
import time

def now_ts() -> int:
    """Get current Unix timestamp."""
    return int(time.time())

def minutes_left(seconds: int) -> int:
    """Whole minutes remaining, rounded up."""
    return max(1, math.ceil(seconds / 60))

def short_token() -> str:
    """8 hex chars used to disambiguate renamed tags."""
    return secrets.token_hex(4)

def fmt_stat(value) -> str:
    return "N/A" if value is None else str(value)

def mention(user_id: int | None) -> str:
    return f"<@{user_id}>" if user_id else "None found"
