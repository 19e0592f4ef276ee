from __future__ import annotations

from typing import List, Optional, Tuple
import re

SECOND = 1000
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE
DAY = 24 * HOUR

_UNITS = {"s": SECOND, "m": MINUTE, "h": HOUR, "d": DAY, "w": 7 * DAY}

BAN_DURATION_PRESETS = {"1h": HOUR, "24h": 24 * HOUR, "7d": 7 * DAY, "permanent": 0}
MUTE_DURATION_PRESETS = {
    "5m": 5 * MINUTE,
    "1h": HOUR,
    "24h": 24 * HOUR,
    "7d": 7 * DAY,
    "permanent": 0,
}


def parse_duration(value: str) -> Optional[int]:
    """Parse durations like ``30m``, ``2h``, ``7d`` into milliseconds.

    ``permanent``/``perm``/``0`` mean no expiry and give 0. Anything that does
    not look like a duration gives None.
    """
    value = value.strip().lower()
    if value in ("permanent", "perm", "0"):
        return 0
    match = re.match(r"^(\d+)([smhdw])$", value)
    if not match:
        return None
    amount, unit = match.groups()
    return int(amount) * _UNITS[unit]


def split_duration(raw: str) -> Tuple[int, str]:
    """Split ``"1h being rude"`` into ``(3600000, "being rude")``.

    The duration is optional, a leading word that isn't one is part of the reason.
    """
    parts = (raw or "").strip().split(maxsplit=1)
    if parts:
        duration = parse_duration(parts[0])
        if duration is not None:
            return duration, parts[1] if len(parts) > 1 else ""
    return 0, (raw or "").strip()


def validate_duration(duration_ms: int, max_duration_ms: int) -> List[str]:
    errors = []
    if duration_ms < 0:
        errors.append("Duration cannot be negative. Use 0 for a permanent action")
    elif max_duration_ms and duration_ms > max_duration_ms:
        errors.append(f"Duration cannot exceed {max_duration_ms // DAY} days")
    return errors


def format_duration(duration_ms: int) -> str:
    if duration_ms <= 0:
        return "permanent"
    for suffix, size in (("w", 7 * DAY), ("d", DAY), ("h", HOUR), ("m", MINUTE)):
        if duration_ms % size == 0:
            return f"{duration_ms // size}{suffix}"
    return f"{duration_ms // SECOND}s"
