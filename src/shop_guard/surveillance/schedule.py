"""Shop opening hours and the open/closed oracle."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time

import logging

logger = logging.getLogger(__name__)

DEFAULT_OPENING_TIME = "09:00"
DEFAULT_CLOSING_TIME = "18:00"


def parse_time_of_day(value: str) -> time:
    """Parse ``HH:MM`` into a :class:`datetime.time`."""

    if not isinstance(value, str):
        raise ValueError("Time of day must be a string formatted as HH:MM")
    parts = value.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM")
    try:
        hours = int(parts[0])
        minutes = int(parts[1])
    except ValueError as exc:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM") from exc
    if not (0 <= hours <= 23) or not (0 <= minutes <= 59):
        raise ValueError(f"Time of day {value!r} is out of range")
    return time(hour=hours, minute=minutes)


@dataclass(frozen=True, slots=True)
class ShopHours:
    """Daily opening interval; closing may fall after midnight."""

    opening: str = DEFAULT_OPENING_TIME
    closing: str = DEFAULT_CLOSING_TIME

    def __post_init__(self) -> None:
        opening = parse_time_of_day(self.opening)
        closing = parse_time_of_day(self.closing)
        object.__setattr__(self, "opening", opening.strftime("%H:%M"))
        object.__setattr__(self, "closing", closing.strftime("%H:%M"))

    def to_dict(self) -> dict[str, str]:
        return {"opening": self.opening, "closing": self.closing}


class ShopScheduleOracle:
    """Answers whether the shop is open at a given wall-clock time."""

    def is_open(self, opening: str, closing: str, now: datetime | None = None) -> bool:
        current = now or datetime.now()
        try:
            open_at = parse_time_of_day(opening)
            close_at = parse_time_of_day(closing)
        except ValueError as exc:
            logger.warning("Invalid shop hours (%r, %r): %s; assuming open", opening, closing, exc)
            return True
        current_minutes = current.hour * 60 + current.minute
        open_minutes = open_at.hour * 60 + open_at.minute
        close_minutes = close_at.hour * 60 + close_at.minute
        if close_minutes > open_minutes:
            return open_minutes <= current_minutes < close_minutes
        return current_minutes >= open_minutes or current_minutes < close_minutes

    def is_open_for(self, hours: ShopHours, now: datetime | None = None) -> bool:
        return self.is_open(hours.opening, hours.closing, now)


__all__ = [
    "DEFAULT_CLOSING_TIME",
    "DEFAULT_OPENING_TIME",
    "ShopHours",
    "ShopScheduleOracle",
    "parse_time_of_day",
]
