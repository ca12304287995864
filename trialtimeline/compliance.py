"""
Investigational-product (IP) compliance from dispense/return pairs.

Formula (per dispensing cycle):
    elapsed_days   = max(0, last_dose_date - dispense start date)
    expected_taken = max(0, round(elapsed_days * dose multiplier))
    actual_taken   = dispensed - returned
    compliance %   = round(100 * actual_taken / expected_taken)   if expected_taken > 0
                   = None                                          otherwise

The denominator is expected doses, not tablets dispensed, so percentages
above 100 are real results (over-use) and are kept as computed. Impossible
counts (negative returns, more returned than dispensed) are flagged on the
record rather than clamped.

Each dispense/return pair is scored on its own. Subject-level figures and
is_compliant thresholds are caller decisions; helpers for both live at the
bottom of this module and are never applied implicitly.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from trialtimeline.entities import ActualVisit, DispenseEvent, DrugComplianceRow, ReturnEvent
from trialtimeline.labels import first_present
from trialtimeline.timeline import TimelineEntry

logger = logging.getLogger(__name__)

# Doses per day by dosing-frequency code
DOSING_MULTIPLIERS: Dict[str, float] = {
    "QD": 1.0,
    "BID": 2.0,
    "TID": 3.0,
    "QID": 4.0,
    "WEEKLY": 1.0 / 7.0,
}

DOSING_ALIASES: Dict[str, str] = {
    "ONCEDAILY": "QD",
    "DAILY": "QD",
    "TWICEDAILY": "BID",
    "THREETIMESDAILY": "TID",
    "FOURTIMESDAILY": "QID",
    "QW": "WEEKLY",
    "ONCEWEEKLY": "WEEKLY",
}

DEFAULT_MULTIPLIER = 1.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _positive_float(value: Any) -> Optional[float]:
    """float(value) when it parses and is > 0, else None (row values may be text)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable dose_per_day %r", value)
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


@dataclass(frozen=True)
class DoseMultiplier:
    """
    Resolved doses-per-day.

    degraded_confidence is True when the code was missing or unrecognised and
    the once-daily default was substituted; callers should warn the user.
    """
    multiplier: float
    code: Optional[str]
    degraded_confidence: bool = False


def normalize_frequency_code(code: Any) -> Optional[str]:
    """Canonical code (QD, BID, TID, QID, WEEKLY) or None if unrecognised."""
    if code is None:
        return None
    key = "".join(ch for ch in str(code).upper() if ch.isalnum())
    if key in DOSING_MULTIPLIERS:
        return key
    return DOSING_ALIASES.get(key)


def resolve_dose_multiplier(
    dosing_frequency: Any,
    dose_per_day: Optional[float] = None
) -> DoseMultiplier:
    """
    Doses per day for a study or drug.

    An explicit positive dose_per_day (per-drug override) wins over the
    frequency code. Unknown codes fall back to once daily and are flagged.
    """
    override = _positive_float(dose_per_day)
    if override is not None:
        return DoseMultiplier(multiplier=override, code=None)

    code = normalize_frequency_code(dosing_frequency)
    if code is None:
        logger.warning(
            "Unrecognised dosing frequency %r; assuming once daily (degraded confidence)",
            dosing_frequency
        )
        return DoseMultiplier(
            multiplier=DEFAULT_MULTIPLIER, code=None, degraded_confidence=True
        )
    return DoseMultiplier(multiplier=DOSING_MULTIPLIERS[code], code=code)


class ComplianceDeviation(Enum):
    """Data-quality and protocol flags raised while scoring one return."""

    NEGATIVE_RETURN = "negative_return_count"
    RETURN_EXCEEDS_DISPENSE = "return_exceeds_dispense"
    NO_DISPENSE = "no_ip_dispensed"
    OVER_COMPLIANCE = "over_compliance"


# Flags that mean the counts themselves are wrong, not the subject's behaviour
ENTRY_ERROR_DEVIATIONS = frozenset({
    ComplianceDeviation.NEGATIVE_RETURN,
    ComplianceDeviation.RETURN_EXCEEDS_DISPENSE,
    ComplianceDeviation.NO_DISPENSE,
})


@dataclass(frozen=True)
class ComplianceRecord:
    """
    Compliance for one returned bottle/kit.

    Keyed by (subject_id, ip_id, assessment_date). visit_id is the returning
    visit; dispense_visit_id the visit the bottle was handed out at.
    compliance_percentage None means "not available" (no matching dispense,
    missing dates, or zero expected doses).

    deviations lists the flags raised for this pair. The percentage is never
    clamped, so an entry error such as more tablets returned than dispensed
    still yields its (negative) figure alongside the flag.
    """
    ip_id: str
    assessment_date: Optional[date]
    dispensed_count: Optional[int]
    returned_count: int
    actual_taken: Optional[int]
    elapsed_days: Optional[int]
    expected_taken: Optional[int]
    compliance_percentage: Optional[int]
    dose_multiplier: float
    degraded_confidence: bool = False
    visit_id: Optional[str] = None
    dispense_visit_id: Optional[str] = None
    subject_id: Optional[str] = None
    is_compliant: Optional[bool] = None
    deviations: Tuple[ComplianceDeviation, ...] = ()

    @property
    def is_available(self) -> bool:
        return self.compliance_percentage is not None

    @property
    def has_entry_error(self) -> bool:
        return any(d in ENTRY_ERROR_DEVIATIONS for d in self.deviations)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for JSON export."""
        return {
            "subject_id": self.subject_id,
            "ip_id": self.ip_id,
            "assessment_date": self.assessment_date.isoformat() if self.assessment_date else None,
            "visit_id": self.visit_id,
            "dispense_visit_id": self.dispense_visit_id,
            "dispensed_count": self.dispensed_count,
            "returned_count": self.returned_count,
            "actual_taken": self.actual_taken,
            "elapsed_days": self.elapsed_days,
            "expected_taken": self.expected_taken,
            "compliance_percentage": self.compliance_percentage,
            "dose_multiplier": self.dose_multiplier,
            "degraded_confidence": self.degraded_confidence,
            "is_compliant": self.is_compliant,
            "deviations": [d.value for d in self.deviations]
        }


def events_from_visits(
    visits: Iterable[ActualVisit]
) -> Tuple[List[DispenseEvent], List[ReturnEvent]]:
    """
    Extract dispense and return events from recorded visits.

    A dispense needs ip_id and ip_dispensed; its start date defaults to the
    visit date. A return needs return_ip_id and ip_returned.
    """
    dispenses: List[DispenseEvent] = []
    returns: List[ReturnEvent] = []
    for visit in visits:
        if visit.ip_id and visit.ip_dispensed is not None:
            dispenses.append(DispenseEvent(
                ip_id=visit.ip_id,
                dispensed_count=visit.ip_dispensed,
                start_date=first_present(visit.ip_start_date, visit.visit_date),
                dispense_date=visit.visit_date,
                visit_id=visit.visit_id
            ))
        if visit.return_ip_id and visit.ip_returned is not None:
            returns.append(ReturnEvent(
                ip_id=visit.return_ip_id,
                returned_count=visit.ip_returned,
                last_dose_date=visit.ip_last_dose_date,
                return_date=visit.visit_date,
                visit_id=visit.visit_id
            ))
    return dispenses, returns


def find_prior_dispense(
    dispenses: Sequence[DispenseEvent],
    returned: ReturnEvent
) -> Optional[DispenseEvent]:
    """
    Most recent dispense of the same bottle on or before the return.

    Ordered by start date, then dispense date, then input position (later
    wins). Undated dispenses are eligible but rank below dated ones.
    """
    cutoff = first_present(returned.return_date, returned.last_dose_date)
    best: Optional[DispenseEvent] = None
    best_key: Optional[Tuple[date, date, int]] = None

    for position, dispense in enumerate(dispenses):
        if dispense.ip_id != returned.ip_id:
            continue
        started = first_present(dispense.start_date, dispense.dispense_date)
        if cutoff is not None and started is not None and started > cutoff:
            continue

        key = (started or date.min, dispense.dispense_date or date.min, position)
        if best_key is None or key > best_key:
            best, best_key = dispense, key
    return best


def detect_deviations(
    dispensed: Optional[int],
    returned_count: int,
    taken: Optional[int],
    expected: Optional[int]
) -> Tuple[ComplianceDeviation, ...]:
    """
    Flags for one dispense/return pair, in a fixed order.

    NO_DISPENSE covers both a missing dispense and a count of zero or less.
    RETURN_EXCEEDS_DISPENSE is only checked against a real dispense.
    OVER_COMPLIANCE needs a known expected count.
    """
    flags: List[ComplianceDeviation] = []
    if returned_count < 0:
        flags.append(ComplianceDeviation.NEGATIVE_RETURN)
    if dispensed is None or dispensed <= 0:
        flags.append(ComplianceDeviation.NO_DISPENSE)
    elif returned_count > dispensed:
        flags.append(ComplianceDeviation.RETURN_EXCEEDS_DISPENSE)
    if taken is not None and expected is not None and taken > expected:
        flags.append(ComplianceDeviation.OVER_COMPLIANCE)
    return tuple(flags)


def score_pair(
    dispense: Optional[DispenseEvent],
    returned: ReturnEvent,
    dose: DoseMultiplier,
    subject_id: Optional[str] = None
) -> ComplianceRecord:
    """Compute one ComplianceRecord from a dispense/return pair."""
    last_dose = first_present(returned.last_dose_date, returned.return_date)
    assessment = first_present(returned.return_date, returned.last_dose_date)

    dispensed = dispense.dispensed_count if dispense is not None else None
    started = first_present(dispense.start_date, dispense.dispense_date) if dispense else None

    elapsed: Optional[int] = None
    if started is not None and last_dose is not None:
        elapsed = max(0, (last_dose - started).days)

    expected: Optional[int] = None
    if elapsed is not None:
        expected = max(0, _round_half_up(elapsed * dose.multiplier))

    taken = dispensed - returned.returned_count if dispensed is not None else None

    percentage: Optional[int] = None
    if taken is not None and expected:
        percentage = _round_half_up(100.0 * taken / expected)

    deviations = detect_deviations(dispensed, returned.returned_count, taken, expected)
    if deviations:
        logger.debug(
            "Return of %s at visit %s flagged: %s",
            returned.ip_id, returned.visit_id, ", ".join(d.value for d in deviations)
        )

    return ComplianceRecord(
        ip_id=returned.ip_id,
        assessment_date=assessment,
        dispensed_count=dispensed,
        returned_count=returned.returned_count,
        actual_taken=taken,
        elapsed_days=elapsed,
        expected_taken=expected,
        compliance_percentage=percentage,
        dose_multiplier=dose.multiplier,
        degraded_confidence=dose.degraded_confidence,
        visit_id=returned.visit_id,
        dispense_visit_id=dispense.visit_id if dispense is not None else None,
        subject_id=subject_id,
        deviations=deviations
    )


def compute_compliance(
    dispense_events: Iterable[DispenseEvent],
    return_events: Iterable[ReturnEvent],
    dosing_frequency: Any = None,
    dose_per_day: Optional[float] = None,
    subject_id: Optional[str] = None
) -> List[ComplianceRecord]:
    """
    Score every return against its dispense.

    Args:
        dispense_events: Bottles handed out
        return_events: Bottles brought back (one record each, input order)
        dosing_frequency: Study code (QD, BID, TID, QID, weekly)
        dose_per_day: Per-drug override, wins over dosing_frequency
        subject_id: Stamped onto every record

    Returns:
        One ComplianceRecord per return event.
    """
    dispenses = list(dispense_events)
    dose = resolve_dose_multiplier(dosing_frequency, dose_per_day)

    records: List[ComplianceRecord] = []
    for returned in return_events:
        dispense = find_prior_dispense(dispenses, returned)
        if dispense is None:
            logger.warning(
                "Return of %s at visit %s has no matching dispense", returned.ip_id, returned.visit_id
            )
        records.append(score_pair(dispense, returned, dose, subject_id))
    return records


ComplianceSource = Union[ComplianceRecord, DrugComplianceRow]


def overlay_compliance(
    entries: Iterable[TimelineEntry],
    records: Iterable[ComplianceSource],
    match_return_key: bool = True
) -> List[TimelineEntry]:
    """
    Attach compliance to timeline entries.

    Matching, in priority order:
    1. record.visit_id == entry id (latest assessment wins)
    2. (record.ip_id, record.assessment_date) == (entry.return_ip_id,
       entry.actual_date), for rows stored against the dispensing visit

    Entries with no match are returned unchanged. match_return_key=False
    restricts matching to visit ids.
    """
    ordered = sorted(records, key=lambda r: r.assessment_date or date.min)

    by_visit: Dict[str, ComplianceSource] = {}
    by_return_key: Dict[Tuple[str, date], ComplianceSource] = {}
    for record in ordered:
        if record.visit_id:
            by_visit[record.visit_id] = record
        if record.ip_id and record.assessment_date:
            by_return_key[(record.ip_id, record.assessment_date)] = record

    overlaid: List[TimelineEntry] = []
    for entry in entries:
        match = by_visit.get(entry.entry_id)
        if match is None and match_return_key and entry.return_ip_id and entry.actual_date:
            match = by_return_key.get((entry.return_ip_id, entry.actual_date))

        if match is None:
            overlaid.append(entry)
            continue

        overlaid.append(replace(
            entry,
            compliance_percentage=match.compliance_percentage,
            is_compliant=match.is_compliant
        ))
    return overlaid


# ---------------------------------------------------------------------------
# Caller-side helpers: thresholds, tiers and subject-level summaries
# ---------------------------------------------------------------------------

def apply_compliance_threshold(
    records: Iterable[ComplianceRecord],
    threshold: float = 80.0
) -> List[ComplianceRecord]:
    """Set is_compliant = percentage >= threshold (None when not available)."""
    return [
        replace(
            record,
            is_compliant=None if record.compliance_percentage is None
            else record.compliance_percentage >= threshold
        )
        for record in records
    ]


class ComplianceTier(Enum):
    """Display tiers; over-use gets its own tier rather than reading as 'good'."""

    OVERUSE = "overuse"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    NOT_AVAILABLE = "not_available"


def compliance_tier(
    percentage: Optional[float],
    overuse_threshold: float = 100.0
) -> ComplianceTier:
    """Tier for one percentage: >overuse, >=90, >=75, else poor."""
    if percentage is None:
        return ComplianceTier.NOT_AVAILABLE
    if percentage > overuse_threshold:
        return ComplianceTier.OVERUSE
    if percentage >= 90:
        return ComplianceTier.GOOD
    if percentage >= 75:
        return ComplianceTier.FAIR
    return ComplianceTier.POOR


@dataclass
class ComplianceSummary:
    """
    Subject- or study-level roll-up of compliance records.

    mean_percentage caps each value at 100 before averaging so over-use does
    not inflate the average; None when no record has a percentage.
    Records flagged with an entry error are counted in entry_error_records
    and left out of every percentage figure.
    """
    total_records: int
    available_records: int
    mean_percentage: Optional[int]
    min_percentage: Optional[float]
    max_percentage: Optional[float]
    alert_count: int
    degraded_records: int
    entry_error_records: int = 0

    def summary(self) -> str:
        """Human-readable summary."""
        mean = f"{self.mean_percentage}%" if self.mean_percentage is not None else "n/a"
        return (
            f"Compliance: {self.available_records}/{self.total_records} records scored\n"
            f"  Mean (capped at 100): {mean}\n"
            f"  Alerts: {self.alert_count}\n"
            f"  Degraded confidence: {self.degraded_records}\n"
            f"  Entry errors: {self.entry_error_records}"
        )


def _has_entry_error(record: ComplianceSource) -> bool:
    # stored rows carry no deviations
    return any(d in ENTRY_ERROR_DEVIATIONS for d in getattr(record, "deviations", ()))


def summarize_compliance(
    records: Iterable[ComplianceSource],
    threshold: float = 80.0,
    overuse_threshold: float = 100.0
) -> ComplianceSummary:
    """
    Roll up compliance records.

    An alert is a percentage below threshold or above overuse_threshold.
    Records without a percentage are counted but never alert, and neither
    do records with an entry error (their percentage reflects bad counts).
    """
    items = list(records)
    entry_errors = sum(1 for r in items if _has_entry_error(r))
    values = [
        float(r.compliance_percentage) for r in items
        if r.compliance_percentage is not None and not _has_entry_error(r)
    ]
    degraded = sum(1 for r in items if getattr(r, "degraded_confidence", False))

    if not values:
        return ComplianceSummary(
            total_records=len(items),
            available_records=0,
            mean_percentage=None,
            min_percentage=None,
            max_percentage=None,
            alert_count=0,
            degraded_records=degraded,
            entry_error_records=entry_errors
        )

    array = np.array(values, dtype=float)
    alerts = int(np.count_nonzero((array < threshold) | (array > overuse_threshold)))

    return ComplianceSummary(
        total_records=len(items),
        available_records=len(values),
        mean_percentage=_round_half_up(float(np.mean(np.minimum(array, 100.0)))),
        min_percentage=float(np.min(array)),
        max_percentage=float(np.max(array)),
        alert_count=alerts,
        degraded_records=degraded,
        entry_error_records=entry_errors
    )
