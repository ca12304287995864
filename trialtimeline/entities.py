"""
Read models consumed by the timeline and compliance engine.

Design principles:
- Entities are immutable after creation (frozen dataclasses)
- No business logic inside entities (pure data holders)
- Dates are parsed once, at construction from a row; unparseable dates are
  stored as None rather than guessed
- Structural problems (missing ids, wrong types) fail loudly at construction

Rows come from the datastore as plain mappings; each entity has a from_dict()
that resolves optional or joined fields through labels.resolve_field.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Mapping, Optional, Tuple

from trialtimeline.dates import parse_date, to_day_offset
from trialtimeline.labels import first_present, resolve_field
from trialtimeline.statuses import VisitStatus, RECORDED_STATUSES


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


_TRUE_STRINGS = ("true", "t", "yes", "1")
_FALSE_STRINGS = ("false", "f", "no", "0")


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _tags(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(tag) for tag in value)


def _require_id(row: Mapping[str, Any], entity: str) -> str:
    value = _optional_str(row.get("id")) if row else None
    if not value:
        raise ValueError(f"{entity} row is missing 'id'")
    return value


@dataclass(frozen=True)
class VisitTemplate:
    """
    One protocol visit from the schedule of events.

    Fields:
    - template_id: Unique identifier (visit_schedules.id)
    - visit_name / visit_number: Display name and protocol label ("V3")
    - visit_day: Day offset from the anchor, in the protocol's own numbering
    - window_before_days / window_after_days: Allowed deviation (0 = none)
    - procedures: Ordered procedure tags required at this visit
    - section_id: Study section this template belongs to (None = untagged)
    """
    template_id: str
    visit_name: str
    visit_day: int
    visit_number: Optional[str] = None
    window_before_days: int = 0
    window_after_days: int = 0
    procedures: Tuple[str, ...] = field(default_factory=tuple)
    section_id: Optional[str] = None

    def __post_init__(self):
        """Validate fields at construction time (fail fast)."""
        if not self.template_id:
            raise ValueError("template_id cannot be empty")

        if not isinstance(self.visit_day, int):
            raise TypeError(f"visit_day must be int, got {type(self.visit_day).__name__}")

        if self.window_before_days < 0:
            raise ValueError(f"window_before_days must be >= 0, got {self.window_before_days}")

        if self.window_after_days < 0:
            raise ValueError(f"window_after_days must be >= 0, got {self.window_after_days}")

        if not isinstance(self.procedures, tuple):
            raise TypeError(f"procedures must be tuple, got {type(self.procedures).__name__}")

    @staticmethod
    def from_dict(row: Mapping[str, Any]) -> "VisitTemplate":
        """
        Build from a visit_schedules row.

        visit_day wins over timing_value/timing_unit when both are present.
        """
        template_id = _require_id(row, "VisitTemplate")

        visit_day = _optional_int(row.get("visit_day"))
        if visit_day is None:
            timing_value = _optional_int(row.get("timing_value"))
            if timing_value is not None:
                visit_day = to_day_offset(timing_value, row.get("timing_unit") or "days")

        visit_number = _optional_str(row.get("visit_number"))
        return VisitTemplate(
            template_id=template_id,
            visit_name=first_present(
                _optional_str(row.get("visit_name")), visit_number, default=template_id
            ),
            visit_day=visit_day or 0,
            visit_number=visit_number,
            window_before_days=max(_optional_int(row.get("window_before_days")) or 0, 0),
            window_after_days=max(_optional_int(row.get("window_after_days")) or 0, 0),
            procedures=_tags(row.get("procedures")),
            section_id=_optional_str(row.get("section_id"))
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for JSON export."""
        return {
            "type": "VisitTemplate",
            "id": self.template_id,
            "visit_name": self.visit_name,
            "visit_number": self.visit_number,
            "visit_day": self.visit_day,
            "window_before_days": self.window_before_days,
            "window_after_days": self.window_after_days,
            "procedures": list(self.procedures),
            "section_id": self.section_id
        }


@dataclass(frozen=True)
class ActualVisit:
    """
    A visit a coordinator scheduled or logged for a subject.

    template_id None means an unscheduled (out-of-protocol) visit.
    visit_date None means the recorded date could not be parsed.

    IP accountability fields:
    - ip_id / ip_dispensed / ip_start_date: bottle handed out at this visit
    - return_ip_id / ip_returned / ip_last_dose_date: bottle brought back
    """
    visit_id: str
    visit_date: Optional[date]
    status: VisitStatus = VisitStatus.SCHEDULED
    template_id: Optional[str] = None
    subject_id: Optional[str] = None
    visit_name: Optional[str] = None
    procedures_completed: Tuple[str, ...] = field(default_factory=tuple)
    ip_id: Optional[str] = None
    ip_dispensed: Optional[int] = None
    ip_start_date: Optional[date] = None
    return_ip_id: Optional[str] = None
    ip_returned: Optional[int] = None
    ip_last_dose_date: Optional[date] = None
    visit_not_needed: bool = False
    unscheduled_reason: Optional[str] = None
    subject_section_id: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        """Validate fields at construction time."""
        if not self.visit_id:
            raise ValueError("visit_id cannot be empty")

        if self.status not in RECORDED_STATUSES:
            raise ValueError(
                f"status must be one of {[s.value for s in RECORDED_STATUSES]}, got {self.status}"
            )

        if self.visit_date is not None and not isinstance(self.visit_date, date):
            raise TypeError(f"visit_date must be date or None, got {type(self.visit_date).__name__}")

    @property
    def is_unscheduled(self) -> bool:
        return self.template_id is None

    @staticmethod
    def from_dict(row: Mapping[str, Any]) -> "ActualVisit":
        """Build from a subject_visits row (joined visit_schedules allowed)."""
        return ActualVisit(
            visit_id=_require_id(row, "ActualVisit"),
            visit_date=parse_date(row.get("visit_date")),
            status=VisitStatus.from_recorded(row.get("status")),
            template_id=_optional_str(
                resolve_field(row, ("visit_schedule_id", "visit_schedules.id"))
            ),
            subject_id=_optional_str(row.get("subject_id")),
            visit_name=_optional_str(
                resolve_field(row, ("visit_name", "visit_schedules.visit_name"))
            ),
            procedures_completed=_tags(row.get("procedures_completed")),
            ip_id=_optional_str(row.get("ip_id")),
            ip_dispensed=_optional_int(row.get("ip_dispensed")),
            ip_start_date=parse_date(row.get("ip_start_date")),
            return_ip_id=_optional_str(row.get("return_ip_id")),
            ip_returned=_optional_int(row.get("ip_returned")),
            ip_last_dose_date=parse_date(
                resolve_field(row, ("ip_last_dose_date", "ip_last_dose_date_current_visit"))
            ),
            visit_not_needed=_optional_bool(row.get("visit_not_needed")) or False,
            unscheduled_reason=_optional_str(row.get("unscheduled_reason")),
            subject_section_id=_optional_str(row.get("subject_section_id")),
            notes=_optional_str(row.get("notes"))
        )


@dataclass(frozen=True)
class SectionAssignment:
    """
    A subject's placement in one protocol section (screening, treatment, ...).

    Each assignment carries its own anchor date; templates tagged with
    study_section_id are re-based on it. ended_at None means the assignment
    is still active.
    """
    assignment_id: str
    anchor_date: Optional[date]
    study_section_id: Optional[str] = None
    subject_id: Optional[str] = None
    section_code: Optional[str] = None
    section_order: Optional[int] = None
    ended_at: Optional[date] = None

    def __post_init__(self):
        """Validate fields at construction time."""
        if not self.assignment_id:
            raise ValueError("assignment_id cannot be empty")

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @staticmethod
    def from_dict(row: Mapping[str, Any]) -> "SectionAssignment":
        """Build from a subject_sections row (joined study_sections allowed)."""
        return SectionAssignment(
            assignment_id=_require_id(row, "SectionAssignment"),
            anchor_date=parse_date(row.get("anchor_date")),
            study_section_id=_optional_str(row.get("study_section_id")),
            subject_id=_optional_str(row.get("subject_id")),
            section_code=_optional_str(
                resolve_field(row, ("section_code", "study_sections.code"))
            ),
            section_order=_optional_int(
                resolve_field(row, ("section_order", "study_sections.order_index"))
            ),
            ended_at=parse_date(resolve_field(row, ("ended_at", "end_date")))
        )


@dataclass(frozen=True)
class SubjectAnchor:
    """Subject-level anchor fields used when no section assignment exists."""
    enrollment_date: Optional[date] = None
    randomization_date: Optional[date] = None

    @property
    def anchor_date(self) -> Optional[date]:
        """Randomization date preferred; enrollment date is the fallback."""
        return first_present(self.randomization_date, self.enrollment_date)

    @staticmethod
    def from_dict(row: Optional[Mapping[str, Any]]) -> "SubjectAnchor":
        row = row or {}
        return SubjectAnchor(
            enrollment_date=parse_date(row.get("enrollment_date")),
            randomization_date=parse_date(row.get("randomization_date"))
        )


@dataclass(frozen=True)
class DispenseEvent:
    """A bottle/kit handed to the subject."""
    ip_id: str
    dispensed_count: int
    start_date: Optional[date]
    dispense_date: Optional[date] = None
    visit_id: Optional[str] = None

    def __post_init__(self):
        if not self.ip_id:
            raise ValueError("ip_id cannot be empty")


@dataclass(frozen=True)
class ReturnEvent:
    """A bottle/kit brought back, with the count left in it."""
    ip_id: str
    returned_count: int
    last_dose_date: Optional[date]
    return_date: Optional[date] = None
    visit_id: Optional[str] = None

    def __post_init__(self):
        if not self.ip_id:
            raise ValueError("ip_id cannot be empty")


@dataclass(frozen=True)
class DrugComplianceRow:
    """A stored drug_compliance row, as written by the datastore."""
    ip_id: Optional[str]
    assessment_date: Optional[date]
    visit_id: Optional[str] = None
    dispensed_count: Optional[int] = None
    returned_count: Optional[int] = None
    expected_taken: Optional[float] = None
    compliance_percentage: Optional[float] = None
    is_compliant: Optional[bool] = None

    @staticmethod
    def from_dict(row: Mapping[str, Any]) -> "DrugComplianceRow":
        return DrugComplianceRow(
            ip_id=_optional_str(row.get("ip_id")),
            assessment_date=parse_date(row.get("assessment_date")),
            visit_id=_optional_str(row.get("visit_id")),
            dispensed_count=_optional_int(row.get("dispensed_count")),
            returned_count=_optional_int(row.get("returned_count")),
            expected_taken=_optional_float(row.get("expected_taken")),
            compliance_percentage=_optional_float(row.get("compliance_percentage")),
            is_compliant=_optional_bool(row.get("is_compliant"))
        )
