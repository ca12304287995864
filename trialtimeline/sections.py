"""
Section segmentation: one independently anchored timeline per section.

A subject moving screening -> treatment gets a new anchor for the treatment
templates. Each section assignment becomes a Segment; segments are reconciled
separately and merged afterwards, so moving one section's anchor never shifts
another section's dates.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from trialtimeline.dates import AnchorConvention
from trialtimeline.entities import ActualVisit, SectionAssignment, SubjectAnchor, VisitTemplate
from trialtimeline.timeline import TimelineEntry, reconcile, sort_timeline, tag_section

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Segment:
    """
    Inputs for one reconciliation pass.

    assignment is None for the implicit single segment of a subject with no
    section assignments.
    """
    templates: List[VisitTemplate]
    visits: List[ActualVisit]
    anchor_date: Optional[date]
    assignment: Optional[SectionAssignment] = None
    used_template_fallback: bool = False

    @property
    def section_instance_id(self) -> Optional[str]:
        return self.assignment.assignment_id if self.assignment else None


def segment(
    subject_sections: Sequence[SectionAssignment],
    all_templates: Sequence[VisitTemplate],
    all_actual_visits: Sequence[ActualVisit],
    subject_anchor: Optional[SubjectAnchor] = None
) -> Dict[Optional[str], Segment]:
    """
    Partition templates and visits by section assignment.

    Args:
        subject_sections: The subject's section assignments (may be empty)
        all_templates: Every template of the study, in protocol order
        all_actual_visits: Every recorded visit of the subject
        subject_anchor: Used only when there are no section assignments

    Returns:
        Ordered mapping section instance id -> Segment. With no assignments
        the single key is None.
    """
    if not subject_sections:
        anchor = subject_anchor.anchor_date if subject_anchor else None
        return {
            None: Segment(
                templates=list(all_templates),
                visits=list(all_actual_visits),
                anchor_date=anchor
            )
        }

    segments: Dict[Optional[str], Segment] = {}
    for assignment in subject_sections:
        templates = [
            t for t in all_templates if t.section_id == assignment.study_section_id
        ]
        fallback = False
        if not templates:
            # Section tagging is often incomplete; an empty section would hide the schedule
            logger.debug(
                "No templates tagged for section %s; using the full template set",
                assignment.study_section_id
            )
            templates = list(all_templates)
            fallback = True

        visits = [
            v for v in all_actual_visits if v.subject_section_id == assignment.assignment_id
        ]

        segments[assignment.assignment_id] = Segment(
            templates=templates,
            visits=visits,
            anchor_date=assignment.anchor_date,
            assignment=assignment,
            used_template_fallback=fallback
        )
    return segments


def build_timeline(
    subject_sections: Sequence[SectionAssignment],
    all_templates: Sequence[VisitTemplate],
    all_actual_visits: Sequence[ActualVisit],
    subject_anchor: Optional[SubjectAnchor],
    anchor_convention: AnchorConvention,
    today: date
) -> List[TimelineEntry]:
    """
    Segment, reconcile each segment on its own anchor, and merge by date.

    Sections are not kept grouped: ordering is purely by date, and every
    entry carries its section code/order for consumers that want grouping.
    """
    entries: List[TimelineEntry] = []
    segments = segment(subject_sections, all_templates, all_actual_visits, subject_anchor)

    for instance_id, part in segments.items():
        if part.anchor_date is None:
            logger.info("Segment %s has no anchor date; skipped", instance_id or "<subject>")
            continue

        reconciled = reconcile(
            part.templates,
            part.visits,
            part.anchor_date,
            anchor_convention,
            today,
            section_instance_id=instance_id
        )
        if part.assignment is not None:
            reconciled = tag_section(
                reconciled, part.assignment.section_code, part.assignment.section_order
            )
        entries.extend(reconciled)

    return sort_timeline(entries)


def active_assignment(assignments: Iterable[SectionAssignment]) -> Optional[SectionAssignment]:
    """
    The subject's current (unended) section assignment.

    If the data holds more than one unended assignment, the one with the
    latest anchor date wins; None when every assignment has ended.
    """
    active = [a for a in assignments if a.is_active]
    if not active:
        return None
    if len(active) > 1:
        logger.warning(
            "%d active section assignments found; using the most recently anchored",
            len(active)
        )
    # max() keeps the first of equal keys; reversed makes later input win ties
    return max(reversed(active), key=lambda a: a.anchor_date or date.min)
