"""
Tests for field resolution and status labels.

Focus areas:
1. Presence: None and "" are absent, falsy values are not
2. Priority: first present candidate wins, nested paths supported
3. Labels: not needed overrides overdue, overdue only for scheduled visits
"""

import pytest

from trialtimeline.labels import first_present, is_present, lookup, resolve_field, status_label
from trialtimeline.statuses import DisplayStatus, VisitStatus


class TestPresence:
    """Test what counts as a present value."""

    @pytest.mark.parametrize("value", [0, False, [], "x", 0.0])
    def test_falsy_values_are_present(self, value):
        assert is_present(value)

    @pytest.mark.parametrize("value", [None, "", "  "])
    def test_absent_values(self, value):
        assert not is_present(value)

    def test_first_present_skips_absent(self):
        assert first_present(None, "", "b", "c") == "b"

    def test_first_present_keeps_zero(self):
        assert first_present(None, 0, 5) == 0

    def test_first_present_default(self):
        assert first_present(None, "", default="fallback") == "fallback"
        assert first_present() is None


class TestResolveField:
    """Test prioritized lookup over nested rows."""

    def test_lookup_nested(self):
        row = {"study_sections": {"code": "TRT"}}
        assert lookup(row, "study_sections.code") == "TRT"

    def test_lookup_through_non_mapping(self):
        assert lookup({"study_sections": None}, "study_sections.code") is None
        assert lookup(None, "id") is None

    def test_direct_field_wins(self):
        row = {"visit_schedule_id": "VS1", "visit_schedules": {"id": "VS2"}}
        assert resolve_field(row, ("visit_schedule_id", "visit_schedules.id")) == "VS1"

    def test_falls_back_to_joined_field(self):
        row = {"visit_schedule_id": None, "visit_schedules": {"id": "VS2"}}
        assert resolve_field(row, ("visit_schedule_id", "visit_schedules.id")) == "VS2"

    def test_default_when_nothing_present(self):
        assert resolve_field({}, ("a", "b.c"), default="none") == "none"
        assert resolve_field(None, ("a",), default=1) == 1


class TestStatusLabel:
    """Test reported label priority."""

    def test_not_needed_overrides_everything(self):
        assert status_label(VisitStatus.SCHEDULED, True, True) is DisplayStatus.NOT_NEEDED
        assert status_label(VisitStatus.COMPLETED, False, True) is DisplayStatus.NOT_NEEDED

    def test_overdue_for_outstanding_scheduled_visit(self):
        assert status_label(VisitStatus.SCHEDULED, True, False) is DisplayStatus.OVERDUE

    def test_overdue_flag_ignored_for_placeholders(self):
        """A past template with no visit keeps its not_scheduled label."""
        assert status_label(VisitStatus.NOT_SCHEDULED, True, False) is DisplayStatus.NOT_SCHEDULED

    def test_completed_never_overdue(self):
        assert status_label(VisitStatus.COMPLETED, True, False) is DisplayStatus.COMPLETED

    @pytest.mark.parametrize("status", list(VisitStatus))
    def test_plain_status_passes_through(self, status):
        assert status_label(status, False, False).value == status.value
