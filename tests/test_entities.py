"""
Unit tests for read models.

Focus areas:
1. Immutability: Entities cannot be modified after creation
2. Validation: Structural problems fail loudly at construction
3. Row parsing: Optional and joined fields resolved in priority order
4. Tolerance: Bad dates become None instead of failing
"""

import pytest
from datetime import date

from trialtimeline.entities import (
    ActualVisit,
    DrugComplianceRow,
    SectionAssignment,
    SubjectAnchor,
    VisitTemplate
)
from trialtimeline.statuses import VisitStatus


class TestVisitTemplate:
    """Test VisitTemplate validation and row parsing."""

    def test_creation_valid(self):
        template = VisitTemplate(template_id="VS1", visit_name="Week 4", visit_day=28)

        assert template.window_before_days == 0
        assert template.procedures == ()
        assert template.section_id is None

    def test_immutable(self):
        template = VisitTemplate(template_id="VS1", visit_name="Week 4", visit_day=28)
        with pytest.raises(Exception):
            template.visit_day = 29

    def test_empty_id_fails(self):
        with pytest.raises(ValueError, match="template_id cannot be empty"):
            VisitTemplate(template_id="", visit_name="Week 4", visit_day=28)

    def test_negative_window_fails(self):
        with pytest.raises(ValueError, match="window_before_days must be >= 0"):
            VisitTemplate(template_id="VS1", visit_name="W4", visit_day=28, window_before_days=-1)

    def test_non_int_day_fails(self):
        with pytest.raises(TypeError, match="visit_day must be int"):
            VisitTemplate(template_id="VS1", visit_name="W4", visit_day="28")

    def test_from_dict(self):
        template = VisitTemplate.from_dict({
            "id": "VS3",
            "visit_name": "Week 4",
            "visit_number": "V3",
            "visit_day": 28,
            "window_before_days": 3,
            "window_after_days": None,
            "procedures": ["Vital Signs", "Lab Kit"],
            "section_id": "SEC-TRT"
        })

        assert template.template_id == "VS3"
        assert template.window_before_days == 3
        assert template.window_after_days == 0
        assert template.procedures == ("Vital Signs", "Lab Kit")
        assert template.section_id == "SEC-TRT"

    def test_from_dict_timing_units(self):
        template = VisitTemplate.from_dict({
            "id": "VS4", "visit_name": "Month 3", "timing_value": 3, "timing_unit": "months"
        })
        assert template.visit_day == 90

    def test_from_dict_name_falls_back_to_number(self):
        template = VisitTemplate.from_dict({"id": "VS5", "visit_number": "V5", "visit_day": 56})
        assert template.visit_name == "V5"

    def test_from_dict_missing_id_fails(self):
        with pytest.raises(ValueError, match="missing 'id'"):
            VisitTemplate.from_dict({"visit_name": "Week 4", "visit_day": 28})

    def test_serialization(self):
        data = VisitTemplate(
            template_id="VS1", visit_name="Week 4", visit_day=28, procedures=("ECG",)
        ).to_dict()

        assert data["type"] == "VisitTemplate"
        assert data["id"] == "VS1"
        assert data["procedures"] == ["ECG"]


class TestActualVisit:
    """Test ActualVisit validation and row parsing."""

    def test_unscheduled_when_no_template(self):
        visit = ActualVisit(visit_id="v1", visit_date=date(2024, 1, 5))
        assert visit.is_unscheduled
        assert visit.status is VisitStatus.SCHEDULED

    def test_derived_status_rejected(self):
        with pytest.raises(ValueError, match="status must be one of"):
            ActualVisit(visit_id="v1", visit_date=None, status=VisitStatus.UPCOMING)

    def test_empty_id_fails(self):
        with pytest.raises(ValueError, match="visit_id cannot be empty"):
            ActualVisit(visit_id="", visit_date=None)

    def test_from_dict_full_row(self):
        visit = ActualVisit.from_dict({
            "id": "v3",
            "subject_id": "S-001",
            "visit_schedule_id": "VS3",
            "visit_date": "2024-01-29",
            "status": "completed",
            "procedures_completed": ["Vital Signs"],
            "ip_id": "BOTTLE-2",
            "ip_dispensed": 60,
            "return_ip_id": "BOTTLE-1",
            "ip_returned": 5,
            "ip_last_dose_date": "2024-01-28",
            "visit_not_needed": None,
            "subject_section_id": "ASSN-1"
        })

        assert visit.template_id == "VS3"
        assert visit.visit_date == date(2024, 1, 29)
        assert visit.status is VisitStatus.COMPLETED
        assert visit.ip_dispensed == 60
        assert visit.ip_returned == 5
        assert visit.ip_last_dose_date == date(2024, 1, 28)
        assert visit.visit_not_needed is False
        assert visit.subject_section_id == "ASSN-1"

    def test_from_dict_joined_schedule(self):
        visit = ActualVisit.from_dict({
            "id": "v3",
            "visit_date": "2024-01-29",
            "status": "scheduled",
            "visit_schedules": {"id": "VS3", "visit_name": "Week 4"}
        })

        assert visit.template_id == "VS3"
        assert visit.visit_name == "Week 4"

    def test_from_dict_bad_date_is_none(self):
        visit = ActualVisit.from_dict({"id": "v1", "visit_date": "31/01/2024", "status": "scheduled"})
        assert visit.visit_date is None

    def test_from_dict_unknown_status_reads_as_scheduled(self):
        visit = ActualVisit.from_dict({"id": "v1", "visit_date": "2024-01-01", "status": "pending"})
        assert visit.status is VisitStatus.SCHEDULED

    def test_from_dict_legacy_last_dose_field(self):
        visit = ActualVisit.from_dict({
            "id": "v1",
            "visit_date": "2024-01-11",
            "ip_last_dose_date_current_visit": "2024-01-10"
        })
        assert visit.ip_last_dose_date == date(2024, 1, 10)

    @pytest.mark.parametrize("raw,expected", [
        (True, True), (False, False), ("true", True), ("false", False),
        ("TRUE", True), ("0", False), ("1", True), (None, False), ("", False)
    ])
    def test_from_dict_visit_not_needed_text(self, raw, expected):
        """Text booleans are parsed, not truth-tested."""
        visit = ActualVisit.from_dict({
            "id": "v1", "visit_date": "2024-01-11", "visit_not_needed": raw
        })
        assert visit.visit_not_needed is expected


class TestSectionAssignment:
    """Test SectionAssignment row parsing."""

    def test_from_dict_with_joined_section(self):
        assignment = SectionAssignment.from_dict({
            "id": "ASSN-2",
            "study_section_id": "SEC-TRT",
            "anchor_date": "2024-02-01",
            "study_sections": {"code": "TRT", "order_index": 2}
        })

        assert assignment.anchor_date == date(2024, 2, 1)
        assert assignment.section_code == "TRT"
        assert assignment.section_order == 2
        assert assignment.is_active

    def test_direct_fields_win_over_join(self):
        assignment = SectionAssignment.from_dict({
            "id": "ASSN-2",
            "anchor_date": "2024-02-01",
            "section_code": "T1",
            "study_sections": {"code": "TRT"}
        })
        assert assignment.section_code == "T1"

    def test_ended_assignment(self):
        assignment = SectionAssignment.from_dict({
            "id": "ASSN-1", "anchor_date": "2024-01-01", "ended_at": "2024-01-31"
        })
        assert not assignment.is_active

    def test_empty_id_fails(self):
        with pytest.raises(ValueError, match="assignment_id cannot be empty"):
            SectionAssignment(assignment_id="", anchor_date=None)


class TestSubjectAnchor:
    """Test anchor resolution order."""

    def test_randomization_preferred(self):
        anchor = SubjectAnchor.from_dict({
            "enrollment_date": "2024-01-01", "randomization_date": "2024-01-08"
        })
        assert anchor.anchor_date == date(2024, 1, 8)

    def test_enrollment_fallback(self):
        anchor = SubjectAnchor.from_dict({"enrollment_date": "2024-01-01", "randomization_date": None})
        assert anchor.anchor_date == date(2024, 1, 1)

    def test_unparseable_randomization_falls_back(self):
        anchor = SubjectAnchor.from_dict({"enrollment_date": "2024-01-01", "randomization_date": "TBD"})
        assert anchor.anchor_date == date(2024, 1, 1)

    def test_no_dates(self):
        assert SubjectAnchor.from_dict(None).anchor_date is None


class TestDrugComplianceRow:
    """Test stored compliance row parsing."""

    def test_from_dict(self):
        row = DrugComplianceRow.from_dict({
            "visit_id": "v2",
            "ip_id": "BOTTLE-1",
            "assessment_date": "2024-01-11",
            "dispensed_count": 30,
            "returned_count": 10,
            "expected_taken": "10",
            "compliance_percentage": "200.00",
            "is_compliant": "maybe"
        })

        assert row.assessment_date == date(2024, 1, 11)
        assert row.expected_taken == 10.0
        assert row.compliance_percentage == 200.0
        assert row.is_compliant is None

    @pytest.mark.parametrize("raw,expected", [(True, True), ("t", True), ("false", False), (None, None)])
    def test_from_dict_is_compliant_text(self, raw, expected):
        row = DrugComplianceRow.from_dict({"ip_id": "B1", "is_compliant": raw})
        assert row.is_compliant is expected
