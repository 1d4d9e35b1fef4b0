"""Shared validation utilities"""

import re
from typing import Optional

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def validate_hhmm(value: Optional[str]) -> str:
    """
    Validate a 24-hour ``HH:MM`` time string.

    Raises:
        ValueError: If the value is missing or not zero-padded HH:MM
    """
    if not value:
        raise ValueError("Time is required in HH:MM format")

    value = value.strip()
    if not HHMM_PATTERN.match(value):
        raise ValueError(f"Invalid time '{value}', expected HH:MM")

    return value


def validate_time_window(start_time: str, end_time: str) -> tuple[str, str]:
    """
    Validate a slot window; zero-padded HH:MM strings order lexically.

    Raises:
        ValueError: If either bound is malformed or start is not before end
    """
    start_time = validate_hhmm(start_time)
    end_time = validate_hhmm(end_time)
    if start_time >= end_time:
        raise ValueError(f"Start time {start_time} must be before end time {end_time}")
    return start_time, end_time


def validate_non_overlapping(windows: list[tuple[str, str]]) -> None:
    """
    Reject a day schedule whose windows overlap.

    Raises:
        ValueError: On the first overlapping pair
    """
    ordered = sorted(windows)
    for (prev_start, prev_end), (start, end) in zip(ordered, ordered[1:]):
        if start < prev_end:
            raise ValueError(f"Time slot {start}-{end} overlaps {prev_start}-{prev_end}")
