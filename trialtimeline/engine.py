"""
Subject timeline engine: one call from read models to a rendered-ready timeline.

Orchestrates:
- Section segmentation and per-section reconciliation
- Compliance scoring from the subject's own dispense/return fields
- Compliance overlay (stored rows first, freshly computed records on top)
- Timeline metrics and compliance summary

Design:
- Pure: no I/O, no clock; `today` is passed in
- Never raises for data quality problems; degraded results carry flags
- Configuration (anchor day, thresholds) comes from EngineConfig
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from trialtimeline.compliance import (
    ComplianceRecord,
    ComplianceSummary,
    apply_compliance_threshold,
    compute_compliance,
    events_from_visits,
    overlay_compliance,
    summarize_compliance
)
from trialtimeline.config import EngineConfig, get_config
from trialtimeline.dates import AnchorConvention, parse_date
from trialtimeline.entities import (
    ActualVisit,
    DrugComplianceRow,
    SectionAssignment,
    SubjectAnchor,
    VisitTemplate
)
from trialtimeline.labels import first_present
from trialtimeline.metrics import TimelineMetrics, summarize_timeline
from trialtimeline.sections import build_timeline
from trialtimeline.timeline import TimelineEntry

logger = logging.getLogger(__name__)


@dataclass
class SubjectTimeline:
    """
    Result of one engine run for one subject.

    has_anchor is False when no segment had a usable anchor date, in which
    case entries is empty by construction, not because the protocol is empty.
    degraded_confidence is True when the dosing frequency was not recognised.
    """
    subject_id: Optional[str]
    today: date
    entries: List[TimelineEntry]
    compliance_records: List[ComplianceRecord]
    metrics: TimelineMetrics
    compliance_summary: ComplianceSummary
    has_anchor: bool
    degraded_confidence: bool = False

    def get_entry(self, entry_id: str) -> Optional[TimelineEntry]:
        """Look up one entry by id."""
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for JSON export."""
        return {
            "subject_id": self.subject_id,
            "today": self.today.isoformat(),
            "has_anchor": self.has_anchor,
            "degraded_confidence": self.degraded_confidence,
            "entries": [e.to_dict() for e in self.entries],
            "compliance_records": [r.to_dict() for r in self.compliance_records],
            "metrics": self.metrics.to_dict(),
            "compliance_summary": {
                "total_records": self.compliance_summary.total_records,
                "available_records": self.compliance_summary.available_records,
                "mean_percentage": self.compliance_summary.mean_percentage,
                "alert_count": self.compliance_summary.alert_count
            }
        }

    def summary(self) -> str:
        """Human-readable summary of this timeline."""
        return (
            f"Subject {self.subject_id or '<unknown>'} as of {self.today.isoformat()}:\n"
            f"  Protocol visits: {self.metrics.total_visits} "
            f"({self.metrics.completed_visits} completed, {self.metrics.overdue_visits} overdue)\n"
            f"  Unscheduled visits: {self.metrics.unscheduled_visits}\n"
            f"  Visit timing compliance: {self.metrics.visit_compliance_rate:.1f}%\n"
            f"{self.compliance_summary.summary()}"
        )


class TimelineEngine:
    """
    Builds subject timelines from already-fetched read models.

    Holds configuration only; every call is independent and safe to repeat
    on each UI refresh.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Args:
            config: Engine defaults. If None, read from the environment.
        """
        self.config = config or get_config()

    def build(
        self,
        templates: Sequence[VisitTemplate],
        visits: Sequence[ActualVisit],
        today: Any,
        subject_anchor: Optional[SubjectAnchor] = None,
        sections: Sequence[SectionAssignment] = (),
        anchor_day: Optional[int] = None,
        compliance_rows: Iterable[DrugComplianceRow] = (),
        dosing_frequency: Optional[str] = None,
        dose_per_day: Optional[float] = None,
        subject_id: Optional[str] = None
    ) -> SubjectTimeline:
        """
        Build one subject's timeline.

        Args:
            templates: Study visit templates in protocol order
            visits: The subject's recorded visits
            today: Reference date (date or ISO string)
            subject_anchor: Randomization/enrollment dates (no-section subjects)
            sections: The subject's section assignments
            anchor_day: Study anchor_day; None uses the configured default
            compliance_rows: Stored drug_compliance rows for the subject
            dosing_frequency: Study dosing code; None uses the configured default
            dose_per_day: Per-drug override of the dosing code
            subject_id: Stamped onto compliance records

        Raises:
            ValueError: If today is missing or unparseable.
        """
        reference = parse_date(today)
        if reference is None:
            raise ValueError(f"today must be a date, got {today!r}")

        convention = AnchorConvention.from_anchor_day(
            first_present(anchor_day, self.config.anchor_day)
        )

        entries = build_timeline(
            sections, templates, visits, subject_anchor, convention, reference
        )
        has_anchor = _has_anchor(sections, subject_anchor)
        if not has_anchor:
            logger.info("Subject %s has no usable anchor date; timeline is empty", subject_id)

        dispenses, returns = events_from_visits(visits)
        frequency = first_present(dosing_frequency, self.config.default_dosing_frequency)
        records: List[ComplianceRecord] = []
        degraded = False
        if returns:
            records = compute_compliance(
                dispenses, returns, frequency, dose_per_day, subject_id
            )
            records = apply_compliance_threshold(records, self.config.compliance_threshold)
            degraded = any(r.degraded_confidence for r in records)

        entries = overlay_compliance(entries, compliance_rows)
        entries = overlay_compliance(
            entries, [r for r in records if r.is_available], match_return_key=False
        )

        return SubjectTimeline(
            subject_id=subject_id,
            today=reference,
            entries=entries,
            compliance_records=records,
            metrics=summarize_timeline(entries),
            compliance_summary=summarize_compliance(
                records, self.config.compliance_threshold, self.config.overuse_threshold
            ),
            has_anchor=has_anchor,
            degraded_confidence=degraded
        )

    def build_from_rows(
        self,
        template_rows: Iterable[Mapping[str, Any]],
        visit_rows: Iterable[Mapping[str, Any]],
        today: Any,
        subject_row: Optional[Mapping[str, Any]] = None,
        section_rows: Iterable[Mapping[str, Any]] = (),
        study_row: Optional[Mapping[str, Any]] = None,
        compliance_rows: Iterable[Mapping[str, Any]] = ()
    ) -> SubjectTimeline:
        """
        Build from raw datastore rows.

        study_row supplies anchor_day, dosing_frequency and dose_per_day;
        subject_row supplies id, randomization_date and enrollment_date.

        Raises:
            ValueError: If a row is missing its id, or today is unparseable.
        """
        study_row = study_row or {}
        subject_row = subject_row or {}
        return self.build(
            templates=[VisitTemplate.from_dict(r) for r in template_rows],
            visits=[ActualVisit.from_dict(r) for r in visit_rows],
            today=today,
            subject_anchor=SubjectAnchor.from_dict(subject_row),
            sections=[SectionAssignment.from_dict(r) for r in section_rows],
            anchor_day=study_row.get("anchor_day"),
            compliance_rows=[DrugComplianceRow.from_dict(r) for r in compliance_rows],
            dosing_frequency=study_row.get("dosing_frequency"),
            dose_per_day=study_row.get("dose_per_day"),
            subject_id=subject_row.get("id")
        )


def _has_anchor(
    sections: Sequence[SectionAssignment],
    subject_anchor: Optional[SubjectAnchor]
) -> bool:
    if sections:
        return any(s.anchor_date is not None for s in sections)
    return subject_anchor is not None and subject_anchor.anchor_date is not None
