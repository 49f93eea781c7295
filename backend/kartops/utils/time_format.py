"""
Lap time strings ("M:SS.mmm") to milliseconds and back.

Fractions shorter than three digits are right-padded, so "1:23.4" is 83400 ms.
"""
import re
from typing import Mapping, Optional, Sequence

TIME_PATTERN = re.compile(r"^(\d{1,2}):([0-5]\d)\.(\d{1,3})$")


def parse_time(value: str) -> Optional[int]:
    """Return milliseconds, or None when the string is not a valid time."""
    match = TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        return None
    minutes, seconds, fraction = match.groups()
    return int(minutes) * 60_000 + int(seconds) * 1000 + int(fraction.ljust(3, "0"))


def format_time(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    minutes, rest = divmod(ms, 60_000)
    seconds, millis = divmod(rest, 1000)
    return f"{minutes}:{seconds:02d}.{millis:03d}"


def total_time(times: Optional[Mapping[str, str]], courses: Sequence[str]) -> Optional[int]:
    """Sum over every course; None if any course is missing or unparseable."""
    if not times:
        return None
    total = 0
    for course in courses:
        ms = parse_time(times.get(course, ""))
        if ms is None:
            return None
        total += ms
    return total
