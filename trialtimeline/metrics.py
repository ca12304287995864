"""
Per-subject timeline metrics for cards and dashboards.

Counts follow the reported status_label, so "not needed" entries never count
as overdue or outstanding.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable

import numpy as np

from trialtimeline.statuses import DisplayStatus
from trialtimeline.timeline import TimelineEntry


@dataclass
class TimelineMetrics:
    """
    Aggregates over one subject's timeline.

    visit_compliance_rate: share (0-100) of completed protocol visits that
    fell inside their window; 0.0 when nothing is completed yet.
    """
    total_visits: int
    completed_visits: int
    missed_visits: int
    cancelled_visits: int
    overdue_visits: int
    upcoming_visits: int
    not_needed_visits: int
    unscheduled_visits: int
    within_window_visits: int
    visit_compliance_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize_timeline(entries: Iterable[TimelineEntry]) -> TimelineMetrics:
    """
    Count timeline entries by reported status.

    total_visits counts protocol (templated) entries only; unscheduled visits
    are reported separately. Overdue covers outstanding scheduled visits past
    their date and protocol visits never scheduled whose date has passed.
    """
    items = list(entries)
    protocol = [e for e in items if not e.is_unscheduled]
    labels = [e.status_label for e in items]

    completed = [
        e for e in protocol if e.status_label is DisplayStatus.COMPLETED
    ]
    within = np.array([e.is_within_window for e in completed], dtype=bool)
    rate = float(np.mean(within) * 100.0) if within.size else 0.0

    overdue = sum(
        1 for e in items
        if e.status_label in (DisplayStatus.OVERDUE, DisplayStatus.NOT_SCHEDULED) and e.is_overdue
    )

    return TimelineMetrics(
        total_visits=len(protocol),
        completed_visits=len(completed),
        missed_visits=labels.count(DisplayStatus.MISSED),
        cancelled_visits=labels.count(DisplayStatus.CANCELLED),
        overdue_visits=overdue,
        upcoming_visits=labels.count(DisplayStatus.UPCOMING),
        not_needed_visits=labels.count(DisplayStatus.NOT_NEEDED),
        unscheduled_visits=len(items) - len(protocol),
        within_window_visits=int(np.count_nonzero(within)),
        visit_compliance_rate=round(rate, 1)
    )
