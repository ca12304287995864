"""Visit status vocabularies shared by the reconciler, labels and metrics."""

from enum import Enum
from typing import Any


class VisitStatus(Enum):
    """Status carried on a timeline entry."""

    # Recorded on an actual visit row
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"

    # Derived for templates with no recorded visit
    UPCOMING = "upcoming"
    NOT_SCHEDULED = "not_scheduled"

    @staticmethod
    def from_recorded(value: Any) -> "VisitStatus":
        """
        Parse a recorded visit status.

        Only the four recorded statuses are accepted; anything else is read as
        "scheduled" (an outstanding visit), which keeps overdue detection on.
        """
        if isinstance(value, VisitStatus) and value in RECORDED_STATUSES:
            return value
        text = str(value or "").strip().lower()
        for status in RECORDED_STATUSES:
            if status.value == text:
                return status
        return VisitStatus.SCHEDULED


RECORDED_STATUSES = (
    VisitStatus.SCHEDULED,
    VisitStatus.COMPLETED,
    VisitStatus.MISSED,
    VisitStatus.CANCELLED,
)


class DisplayStatus(Enum):
    """Label reported to consumers after overrides are applied."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"
    UPCOMING = "upcoming"
    NOT_SCHEDULED = "not_scheduled"
    OVERDUE = "overdue"
    NOT_NEEDED = "not_needed"
