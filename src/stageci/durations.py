# durations.py
from __future__ import annotations

import re
from datetime import timedelta
from typing import Optional, Union

_UNITS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "wk": 604800, "week": 604800, "weeks": 604800,
    "mo": 2592000, "month": 2592000, "months": 2592000,
    "y": 31536000, "yr": 31536000, "year": 31536000, "years": 31536000,
}

_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)?")


def parse_duration(value: Union[str, int, float, None]) -> Optional[timedelta]:
    """
    Parse a human duration into a timedelta.

    Accepts:
      - plain numbers (seconds): 3600, "3600"
      - unit strings: "7 days", "1h 30m", "2 weeks and 1 day"
      - "never" -> None (no expiry)

    Raises ValueError on garbage or negative durations.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        if text == "never":
            return None
        if text.startswith("-"):
            raise ValueError(f"Duration must not be negative: {value!r}")
        text = text.replace(" and ", " ").replace(",", " ")
        seconds = 0.0
        pos = 0
        matched = False
        for m in _PART.finditer(text):
            if text[pos:m.start()].strip():
                raise ValueError(f"Invalid duration: {value!r}")
            amount, unit = float(m.group(1)), m.group(2) or "s"
            if unit not in _UNITS:
                raise ValueError(f"Unknown duration unit {unit!r} in {value!r}")
            seconds += amount * _UNITS[unit]
            pos = m.end()
            matched = True
        if not matched or text[pos:].strip():
            raise ValueError(f"Invalid duration: {value!r}")

    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return timedelta(seconds=seconds)
