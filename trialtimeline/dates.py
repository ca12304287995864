"""
Calendar arithmetic for protocol visit schedules.

Design principles:
- Calendar dates only (datetime.date), never time-of-day
- Timestamps with an offset are normalised to UTC before the date is taken,
  so the same subject yields the same dates in every viewer timezone
- Unparseable input is absent (None), never coerced to "now" or epoch
- The Day 0 / Day 1 anchor convention is applied in exactly one place
  (effective_offset) and every caller goes through it
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Template timing units -> days. Months are treated as 30 days.
TIMING_UNIT_DAYS = {
    "days": 1,
    "weeks": 7,
    "months": 30,
}


class AnchorConvention(Enum):
    """How a protocol numbers the anchor visit."""

    DAY_0 = 0
    # Anchor date is Day 0: visit_day 28 lands 28 days after the anchor

    DAY_1 = 1
    # Anchor date is Day 1: visit_day 29 lands 28 days after the anchor

    @staticmethod
    def from_anchor_day(anchor_day: Any) -> "AnchorConvention":
        """Map a study's anchor_day column (0, 1 or null) to a convention."""
        if isinstance(anchor_day, AnchorConvention):
            return anchor_day
        try:
            value = int(anchor_day)
        except (TypeError, ValueError):
            return AnchorConvention.DAY_0
        return AnchorConvention.DAY_1 if value == 1 else AnchorConvention.DAY_0


@dataclass(frozen=True)
class VisitWindow:
    """
    Projected date and inclusive window for one protocol visit.

    Attributes:
        scheduled_date: anchor + effective offset
        window_start: scheduled_date - window_before_days
        window_end: scheduled_date + window_after_days
        days_from_anchor: Effective offset actually applied
    """
    scheduled_date: date
    window_start: date
    window_end: date
    days_from_anchor: int

    def __post_init__(self):
        if self.window_start > self.window_end:
            raise ValueError(
                f"window_start {self.window_start} is after window_end {self.window_end}"
            )

    def contains(self, day: Optional[date]) -> bool:
        """True if day falls inside the inclusive window."""
        if day is None:
            return False
        return self.window_start <= day <= self.window_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheduled_date": self.scheduled_date.isoformat(),
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "days_from_anchor": self.days_from_anchor,
        }


def parse_date(value: Any) -> Optional[date]:
    """
    Parse a read-model date into a calendar date.

    Accepts date objects, datetimes and ISO 8601 strings ("2024-01-05",
    "2024-01-05T00:00:00Z", "2024-01-05T23:30:00-05:00"). Aware datetimes are
    converted to UTC first; naive ones are taken as UTC already.

    Returns:
        date, or None when the value is missing or cannot be parsed.

    Examples:
        >>> parse_date("2024-03-30")
        datetime.date(2024, 3, 30)
        >>> parse_date("2024-03-30T23:30:00-05:00")
        datetime.date(2024, 3, 31)
        >>> parse_date("not a date") is None
        True
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return _utc_date(value)

    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    try:
        if "T" not in text and " " not in text:
            return date.fromisoformat(text)
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        return _utc_date(datetime.fromisoformat(text))
    except ValueError:
        logger.debug("Dropping unparseable date %r", value)
        return None


def _utc_date(moment: datetime) -> date:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.date()


def effective_offset(day_offset: Optional[int], convention: AnchorConvention) -> int:
    """
    Day offset actually added to the anchor date.

    Day-1 protocols number the anchor visit "Day 1", so the offset is shifted
    down by one and floored at zero. Day-0 protocols use the raw offset.
    """
    raw = int(day_offset or 0)
    if convention is AnchorConvention.DAY_1:
        return max(raw - 1, 0)
    return raw


def schedule_for(
    anchor_date: Any,
    day_offset: Optional[int],
    window_before_days: Optional[int] = 0,
    window_after_days: Optional[int] = 0,
    anchor_convention: AnchorConvention = AnchorConvention.DAY_0
) -> Optional[VisitWindow]:
    """
    Project one protocol visit onto the calendar.

    Args:
        anchor_date: Subject or section anchor (date or ISO string)
        day_offset: Template visit_day
        window_before_days: Days allowed before the scheduled date (None = 0)
        window_after_days: Days allowed after the scheduled date (None = 0)
        anchor_convention: Day 0 vs Day 1 numbering

    Returns:
        VisitWindow, or None when the anchor is missing or unparseable.
    """
    anchor = parse_date(anchor_date)
    if anchor is None:
        return None

    offset = effective_offset(day_offset, anchor_convention)
    before = max(int(window_before_days or 0), 0)
    after = max(int(window_after_days or 0), 0)

    scheduled = anchor + timedelta(days=offset)
    return VisitWindow(
        scheduled_date=scheduled,
        window_start=scheduled - timedelta(days=before),
        window_end=scheduled + timedelta(days=after),
        days_from_anchor=offset
    )


def to_day_offset(timing_value: int, timing_unit: str = "days") -> int:
    """
    Convert template timing (value + unit) to a day offset.

    Unknown units are treated as days.
    """
    multiplier = TIMING_UNIT_DAYS.get((timing_unit or "days").lower(), 1)
    return int(timing_value) * multiplier


def days_between(start: Any, end: Any) -> Optional[int]:
    """Whole days from start to end (negative if end precedes start)."""
    start_date = parse_date(start)
    end_date = parse_date(end)
    if start_date is None or end_date is None:
        return None
    return (end_date - start_date).days


def is_within_window(
    actual_date: Any,
    scheduled_date: Any,
    window_before_days: int = 0,
    window_after_days: int = 0
) -> bool:
    """True if actual_date falls in [scheduled - before, scheduled + after]."""
    actual = parse_date(actual_date)
    scheduled = parse_date(scheduled_date)
    if actual is None or scheduled is None:
        return False
    start = scheduled - timedelta(days=window_before_days or 0)
    end = scheduled + timedelta(days=window_after_days or 0)
    return start <= actual <= end


def days_from_scheduled(actual_date: Any, scheduled_date: Any) -> Optional[int]:
    """Signed distance from the scheduled date: negative = early, positive = late."""
    return days_between(scheduled_date, actual_date)


def format_window(window_before_days: Optional[int], window_after_days: Optional[int]) -> str:
    """Human-readable window, e.g. "-3/+7 days"."""
    before = window_before_days or 0
    after = window_after_days or 0
    if before == 0 and after == 0:
        return "N/A"
    return f"-{before}/+{after} days"
