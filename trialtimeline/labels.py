"""
Prioritized field resolution and status labels.

Read models arrive with optional, sometimes nested fields (a visit row may
carry `visit_schedule_id` directly or a joined `visit_schedules.id`, a section
row `section_code` or a joined `study_sections.code`). Every place that needs
one of these values resolves it through the same ordered lookup:

    candidates are tried left to right; the first one that is present wins.

"Present" means not None and not an empty string. Zero and False are values.
"""

from typing import Any, Mapping, Optional, Sequence

from trialtimeline.statuses import VisitStatus, DisplayStatus


def is_present(value: Any) -> bool:
    """None and "" are absent; everything else (0, False, []) is a value."""
    if value is None:
        return False
    if isinstance(value, str) and value.strip() == "":
        return False
    return True


def first_present(*candidates: Any, default: Any = None) -> Any:
    """Return the first present candidate, else default."""
    for candidate in candidates:
        if is_present(candidate):
            return candidate
    return default


def lookup(record: Optional[Mapping[str, Any]], path: str) -> Any:
    """
    Read a dotted path from nested mappings.

    Example:
        lookup({"study_sections": {"code": "TRT"}}, "study_sections.code") -> "TRT"
    """
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def resolve_field(
    record: Optional[Mapping[str, Any]],
    paths: Sequence[str],
    default: Any = None
) -> Any:
    """Resolve the first present value among dotted paths, in priority order."""
    if not record:
        return default
    return first_present(*(lookup(record, path) for path in paths), default=default)


def status_label(
    status: VisitStatus,
    is_overdue: bool,
    visit_not_needed: bool
) -> DisplayStatus:
    """
    Label shown for a timeline entry.

    Priority: not needed > overdue (only for outstanding scheduled visits) >
    the entry's own status.
    """
    if visit_not_needed:
        return DisplayStatus.NOT_NEEDED
    if is_overdue and status is VisitStatus.SCHEDULED:
        return DisplayStatus.OVERDUE
    return DisplayStatus(status.value)
