"""
fingerprint.py — device identity helpers.

Two kinds of device id:
  - fingerprint_from_attributes(): deterministic, derived from the browser
    attributes a survey form reports. Used to group survey submissions.
  - generate_random_id(): random, persisted client-side by the progress
    feature so it survives reloads but not storage clears.

Neither is a security boundary. The deterministic hash is a 32-bit rolling
hash and collides freely; it exists for deduplication only.
"""
from __future__ import annotations

import secrets
import time
from collections.abc import Mapping
from typing import Optional

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
_ATTRIBUTE_SEPARATOR = "|"


def to_base36(value: int) -> str:
    """Render a non-negative integer in lowercase base 36."""
    if value < 0:
        raise ValueError("base36 rendering requires a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def _rolling_hash(text: str) -> int:
    """h = h * 31 + ord(ch), wrapped to a signed 32-bit integer at each step."""
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
        if h >= 0x80000000:
            h -= 0x100000000
    return h


def fingerprint_from_attributes(
    user_agent: Optional[str] = None,
    screen_resolution: Optional[str] = None,
    timezone: Optional[str] = None,
    language: Optional[str] = None,
) -> str:
    """Same attribute tuple always yields the same id."""
    components = _ATTRIBUTE_SEPARATOR.join(
        [user_agent or "", screen_resolution or "", timezone or "", language or ""]
    )
    return to_base36(abs(_rolling_hash(components)))


def _now_ms(now: Optional[float] = None) -> int:
    return int((time.time() if now is None else now) * 1000)


def generate_random_id(now: Optional[float] = None) -> str:
    """Random base36 component followed by the base36 millisecond timestamp."""
    return to_base36(secrets.randbits(52)) + to_base36(_now_ms(now))


def new_session_id(now: Optional[float] = None) -> str:
    """Progress session id: session_<ms>_<random base36>."""
    return f"session_{_now_ms(now)}_{to_base36(secrets.randbits(52))}"


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """
    Best-effort client address for audit columns.
    x-forwarded-for (first hop) → x-real-ip → socket peer → "unknown".
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or "unknown"
