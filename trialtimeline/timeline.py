"""
Timeline reconciliation: protocol templates x recorded visits.

Design Principles:
- Pure: same (templates, visits, anchor, convention, today) -> identical output
- `today` is an explicit argument, never read from the clock
- Exactly one entry per template (per section instance), plus one per
  unscheduled visit
- Stable ordering: entries sharing a date keep their construction order

Reconciliation steps:
1. Index recorded visits by template id (most recently dated wins)
2. Project every template onto the calendar and derive its status
3. Append unscheduled visits with a window collapsed to their own date
4. Stable sort by scheduled date
5. "Visit not needed" overrides the reported label, never removes the entry
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from trialtimeline.dates import AnchorConvention, VisitWindow, parse_date, schedule_for
from trialtimeline.entities import ActualVisit, VisitTemplate
from trialtimeline.labels import first_present, status_label
from trialtimeline.statuses import DisplayStatus, VisitStatus

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "schedule-"


@dataclass(frozen=True)
class TimelineEntry:
    """
    One row of a subject's derived visit timeline (never persisted).

    Identity:
        entry_id: Matched visit id, or a placeholder id for templates with no
                  recorded visit ("schedule-<template>[-<section instance>]")
        template_id: None for unscheduled visits

    Dates:
        scheduled_date: Projected date (recorded date for unscheduled visits)
        actual_date: Recorded visit date, if any
        window_start / window_end: Inclusive protocol window

    Status:
        status: Recorded status, or upcoming / not_scheduled for placeholders
        status_label: What consumers display (not_needed and overdue applied)
        is_overdue / is_within_window: Derived flags
    """
    entry_id: str
    visit_name: str
    scheduled_date: date
    window_start: date
    window_end: date
    status: VisitStatus
    status_label: DisplayStatus
    is_overdue: bool = False
    is_within_window: bool = True
    actual_date: Optional[date] = None
    visit_number: Optional[str] = None
    visit_day: Optional[int] = None
    template_id: Optional[str] = None
    procedures: Tuple[str, ...] = field(default_factory=tuple)
    procedures_completed: Tuple[str, ...] = field(default_factory=tuple)
    ip_id: Optional[str] = None
    ip_dispensed: Optional[int] = None
    return_ip_id: Optional[str] = None
    ip_returned: Optional[int] = None
    visit_not_needed: bool = False
    is_unscheduled: bool = False
    unscheduled_reason: Optional[str] = None
    subject_section_id: Optional[str] = None
    section_code: Optional[str] = None
    section_order: Optional[int] = None
    notes: Optional[str] = None
    compliance_percentage: Optional[float] = None
    is_compliant: Optional[bool] = None

    @property
    def is_placeholder(self) -> bool:
        """True when no recorded visit backs this entry yet."""
        return self.entry_id.startswith(PLACEHOLDER_PREFIX)

    @property
    def sort_date(self) -> date:
        return first_present(self.scheduled_date, self.actual_date, default=date.max)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for JSON export."""
        def iso(day: Optional[date]) -> Optional[str]:
            return day.isoformat() if day is not None else None

        return {
            "id": self.entry_id,
            "visit_name": self.visit_name,
            "visit_number": self.visit_number,
            "visit_day": self.visit_day,
            "visit_schedule_id": self.template_id,
            "scheduled_date": iso(self.scheduled_date),
            "actual_date": iso(self.actual_date),
            "window_start": iso(self.window_start),
            "window_end": iso(self.window_end),
            "status": self.status.value,
            "status_label": self.status_label.value,
            "is_overdue": self.is_overdue,
            "is_within_window": self.is_within_window,
            "procedures": list(self.procedures),
            "procedures_completed": list(self.procedures_completed),
            "ip_id": self.ip_id,
            "ip_dispensed": self.ip_dispensed,
            "return_ip_id": self.return_ip_id,
            "ip_returned": self.ip_returned,
            "visit_not_needed": self.visit_not_needed,
            "is_unscheduled": self.is_unscheduled,
            "unscheduled_reason": self.unscheduled_reason,
            "subject_section_id": self.subject_section_id,
            "section_code": self.section_code,
            "section_order": self.section_order,
            "notes": self.notes,
            "compliance_percentage": self.compliance_percentage,
            "is_compliant": self.is_compliant
        }


def placeholder_id(template_id: str, section_instance_id: Optional[str] = None) -> str:
    """Synthetic id for a template with no recorded visit."""
    if section_instance_id:
        return f"{PLACEHOLDER_PREFIX}{template_id}-{section_instance_id}"
    return f"{PLACEHOLDER_PREFIX}{template_id}"


def index_visits_by_template(visits: Iterable[ActualVisit]) -> Dict[str, ActualVisit]:
    """
    Map template id -> the single recorded visit that represents it.

    When several visits reference one template the most recently dated one
    wins; equal dates go to the later visit in input order, and undated visits
    lose to dated ones.
    """
    indexed: Dict[str, ActualVisit] = {}
    for visit in visits:
        if visit.template_id is None:
            continue

        current = indexed.get(visit.template_id)
        if current is not None:
            logger.warning(
                "Template %s has more than one recorded visit (%s, %s); keeping the most recent",
                visit.template_id, current.visit_id, visit.visit_id
            )
            if (visit.visit_date or date.min) < (current.visit_date or date.min):
                continue

        indexed[visit.template_id] = visit
    return indexed


def reconcile(
    templates: Iterable[VisitTemplate],
    actual_visits: Iterable[ActualVisit],
    anchor_date: Any,
    anchor_convention: AnchorConvention = AnchorConvention.DAY_0,
    today: Any = None,
    section_instance_id: Optional[str] = None
) -> List[TimelineEntry]:
    """
    Merge protocol templates with recorded visits into a sorted timeline.

    Args:
        templates: Protocol visit templates, in protocol order
        actual_visits: Recorded visits (templated and unscheduled)
        anchor_date: Date all template offsets are measured from
        anchor_convention: Day 0 vs Day 1 numbering
        today: Reference date for upcoming/overdue decisions (required)
        section_instance_id: Section assignment these inputs belong to; keeps
                             placeholder ids unique across sections

    Returns:
        Timeline entries sorted by date. Empty when the anchor is missing or
        unparseable.

    Raises:
        ValueError: If today is missing or unparseable.
    """
    reference = parse_date(today)
    if reference is None:
        raise ValueError(f"today must be a date, got {today!r}")

    anchor = parse_date(anchor_date)
    if anchor is None:
        logger.info("No usable anchor date (%r); timeline is empty", anchor_date)
        return []

    visits = list(actual_visits)
    by_template = index_visits_by_template(visits)

    entries: List[TimelineEntry] = []
    for template in templates:
        window = schedule_for(
            anchor,
            template.visit_day,
            template.window_before_days,
            template.window_after_days,
            anchor_convention
        )
        actual = by_template.get(template.template_id)
        entries.append(
            _template_entry(template, window, actual, reference, section_instance_id)
        )

    for visit in visits:
        if not visit.is_unscheduled:
            continue
        if visit.visit_date is None:
            logger.debug("Unscheduled visit %s has no usable date; skipped", visit.visit_id)
            continue
        entries.append(_unscheduled_entry(visit, reference))

    return sort_timeline(entries)


def _template_entry(
    template: VisitTemplate,
    window: VisitWindow,
    actual: Optional[ActualVisit],
    today: date,
    section_instance_id: Optional[str]
) -> TimelineEntry:
    if actual is not None:
        status = actual.status
        actual_date = actual.visit_date
        is_within_window = window.contains(actual_date)
        is_overdue = (
            status is VisitStatus.SCHEDULED
            and actual_date is not None
            and actual_date < today
        )
    else:
        actual_date = None
        is_within_window = True
        if window.scheduled_date >= today:
            status = VisitStatus.UPCOMING
            is_overdue = False
        else:
            status = VisitStatus.NOT_SCHEDULED
            is_overdue = True

    not_needed = bool(actual is not None and actual.visit_not_needed)

    return TimelineEntry(
        entry_id=actual.visit_id if actual is not None
        else placeholder_id(template.template_id, section_instance_id),
        visit_name=template.visit_name,
        visit_number=template.visit_number,
        visit_day=template.visit_day,
        template_id=template.template_id,
        scheduled_date=window.scheduled_date,
        window_start=window.window_start,
        window_end=window.window_end,
        actual_date=actual_date,
        status=status,
        status_label=status_label(status, is_overdue, not_needed),
        is_overdue=is_overdue,
        is_within_window=is_within_window,
        procedures=template.procedures,
        procedures_completed=actual.procedures_completed if actual is not None else (),
        ip_id=actual.ip_id if actual is not None else None,
        ip_dispensed=actual.ip_dispensed if actual is not None else None,
        return_ip_id=actual.return_ip_id if actual is not None else None,
        ip_returned=actual.ip_returned if actual is not None else None,
        visit_not_needed=not_needed,
        subject_section_id=first_present(
            actual.subject_section_id if actual is not None else None,
            section_instance_id
        ),
        notes=actual.notes if actual is not None else None
    )


def _unscheduled_entry(visit: ActualVisit, today: date) -> TimelineEntry:
    visit_date = visit.visit_date
    is_overdue = visit.status is VisitStatus.SCHEDULED and visit_date < today
    recorded = visit.status in (VisitStatus.SCHEDULED, VisitStatus.COMPLETED)

    return TimelineEntry(
        entry_id=visit.visit_id,
        visit_name=first_present(visit.visit_name, default="Unscheduled visit"),
        scheduled_date=visit_date,
        window_start=visit_date,
        window_end=visit_date,
        actual_date=visit_date if recorded else None,
        status=visit.status,
        status_label=status_label(visit.status, is_overdue, visit.visit_not_needed),
        is_overdue=is_overdue,
        is_within_window=True,
        procedures_completed=visit.procedures_completed,
        ip_id=visit.ip_id,
        ip_dispensed=visit.ip_dispensed,
        return_ip_id=visit.return_ip_id,
        ip_returned=visit.ip_returned,
        visit_not_needed=visit.visit_not_needed,
        is_unscheduled=True,
        unscheduled_reason=visit.unscheduled_reason,
        subject_section_id=visit.subject_section_id,
        notes=visit.notes
    )


def sort_timeline(entries: Iterable[TimelineEntry]) -> List[TimelineEntry]:
    """Stable ascending sort by scheduled date (actual date as fallback)."""
    return sorted(entries, key=lambda entry: entry.sort_date)


def tag_section(
    entries: Iterable[TimelineEntry],
    section_code: Optional[str],
    section_order: Optional[int]
) -> List[TimelineEntry]:
    """Attach section display metadata to every entry."""
    return [
        replace(entry, section_code=section_code, section_order=section_order)
        for entry in entries
    ]
