"""
Example: One Subject's Visit Timeline with Drug Compliance

Demonstrates:
1. Building a timeline from datastore rows (templates, visits, subject, study)
2. Placeholder entries for protocol visits nobody has booked yet
3. Overdue and "not needed" labels
4. Compliance scored per returned bottle, including over-use above 100%
5. Section-based re-anchoring (screening -> treatment)
"""

import logging

from trialtimeline.compliance import compliance_tier
from trialtimeline.config import EngineConfig
from trialtimeline.engine import TimelineEngine


STUDY = {"anchor_day": 1, "dosing_frequency": "BID"}

SUBJECT = {
    "id": "SUBJ-0042",
    "enrollment_date": "2024-02-20",
    "randomization_date": "2024-03-01",
}

TEMPLATES = [
    {"id": "VS-BL", "visit_name": "Baseline", "visit_number": "V1", "visit_day": 1,
     "procedures": ["Vital Signs", "Dispense IP"]},
    {"id": "VS-W2", "visit_name": "Week 2", "visit_number": "V2", "visit_day": 15,
     "window_before_days": 2, "window_after_days": 2, "procedures": ["Vital Signs", "IP Return"]},
    {"id": "VS-W4", "visit_name": "Week 4", "visit_number": "V3", "visit_day": 29,
     "window_before_days": 3, "window_after_days": 3, "procedures": ["Labs", "IP Return"]},
    {"id": "VS-W8", "visit_name": "Week 8", "visit_number": "V4", "visit_day": 57,
     "window_before_days": 5, "window_after_days": 5},
    {"id": "VS-FU", "visit_name": "Follow-up", "visit_number": "V5", "timing_value": 3,
     "timing_unit": "months"},
]

VISITS = [
    {"id": "sv-1", "visit_schedule_id": "VS-BL", "visit_date": "2024-03-01",
     "status": "completed", "ip_id": "KIT-100", "ip_dispensed": 60},
    {"id": "sv-2", "visit_schedule_id": "VS-W2", "visit_date": "2024-03-16",
     "status": "completed", "ip_id": "KIT-101", "ip_dispensed": 60,
     "return_ip_id": "KIT-100", "ip_returned": 32, "ip_last_dose_date": "2024-03-15"},
    {"id": "sv-3", "visit_schedule_id": "VS-W4", "visit_date": "2024-03-29",
     "status": "scheduled", "return_ip_id": "KIT-101", "ip_returned": 10,
     "ip_last_dose_date": "2024-03-28"},
    {"id": "sv-u1", "visit_date": "2024-03-10", "status": "completed",
     "unscheduled_reason": "Adverse event follow-up"},
]


def print_timeline(result):
    print(f"\n{'Date':12s} {'Visit':22s} {'Label':14s} {'Window':24s} Compliance")
    print("-" * 84)
    for entry in result.entries:
        window = f"{entry.window_start.isoformat()}..{entry.window_end.isoformat()}"
        if entry.compliance_percentage is None:
            compliance = ""
        else:
            tier = compliance_tier(entry.compliance_percentage)
            compliance = f"{entry.compliance_percentage:.0f}% ({tier.value})"
        name = entry.visit_name + (" *" if entry.is_unscheduled else "")
        print(
            f"{entry.sort_date.isoformat():12s} {name:22s} "
            f"{entry.status_label.value:14s} {window:24s} {compliance}"
        )
    print("(* unscheduled)")


def demonstrate_single_anchor(engine):
    """Subject without sections: anchored on randomization date."""
    print("\n" + "=" * 80)
    print("SINGLE ANCHOR (randomization date, Day 1 protocol)")
    print("=" * 80)

    result = engine.build_from_rows(
        TEMPLATES, VISITS, "2024-04-05", subject_row=SUBJECT, study_row=STUDY
    )
    print_timeline(result)
    print()
    print(result.summary())

    print("\nWhat to notice:")
    print("  - Week 4 was booked for 2024-03-29 and never completed: overdue")
    print("  - Week 8 and Follow-up have no visit yet: placeholders")
    print("  - KIT-100: 28 of 28 expected BID doses taken (100%)")
    print("  - KIT-101: 50 taken against 24 expected, reported as over-use")
    return result


def demonstrate_not_needed(engine):
    """Investigator marks a visit as not needed; the entry stays."""
    print("\n" + "=" * 80)
    print("VISIT MARKED NOT NEEDED")
    print("=" * 80)

    visits = [dict(v) for v in VISITS]
    visits[2]["visit_not_needed"] = True

    result = engine.build_from_rows(
        TEMPLATES, visits, "2024-04-05", subject_row=SUBJECT, study_row=STUDY
    )
    entry = result.get_entry("sv-3")
    print(f"\n  {entry.visit_name}: status={entry.status.value}, label={entry.status_label.value}")
    print(f"  Overdue visits now: {result.metrics.overdue_visits}")


def demonstrate_sections(engine):
    """Screening and treatment each anchored on their own date."""
    print("\n" + "=" * 80)
    print("SECTION RE-ANCHORING")
    print("=" * 80)

    templates = [
        {"id": "SCR-1", "visit_name": "Screening", "visit_day": 1, "section_id": "SEC-SCR"},
        {"id": "SCR-2", "visit_name": "Screening labs", "visit_day": 8, "section_id": "SEC-SCR"},
        {"id": "TRT-1", "visit_name": "Treatment start", "visit_day": 1, "section_id": "SEC-TRT"},
        {"id": "TRT-2", "visit_name": "Treatment week 2", "visit_day": 15, "section_id": "SEC-TRT"},
    ]
    sections = [
        {"id": "ss-1", "study_section_id": "SEC-SCR", "anchor_date": "2024-02-20",
         "ended_at": "2024-02-29", "study_sections": {"code": "SCR", "order_index": 1}},
        {"id": "ss-2", "study_section_id": "SEC-TRT", "anchor_date": "2024-03-04",
         "study_sections": {"code": "TRT", "order_index": 2}},
    ]

    result = engine.build_from_rows(
        templates, [], "2024-03-10", subject_row=SUBJECT, section_rows=sections, study_row=STUDY
    )
    for entry in result.entries:
        print(f"  [{entry.section_code}] {entry.scheduled_date.isoformat()}  "
              f"{entry.visit_name:20s} {entry.entry_id}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    print("\n" + "=" * 80)
    print("SUBJECT VISIT TIMELINE")
    print("=" * 80)

    engine = TimelineEngine(EngineConfig(anchor_day=0))

    demonstrate_single_anchor(engine)
    demonstrate_not_needed(engine)
    demonstrate_sections(engine)

    print("\n" + "=" * 80)
    print("SUMMARY")
    print("=" * 80)
    print("""
The engine is a pure function of its inputs:

1. Same rows + same reference date -> same timeline
2. Every protocol visit appears exactly once, booked or not
3. Compliance is taken / expected doses, so over-use reads above 100%
4. Sections re-anchor independently; moving one never shifts another
""")
