"""
Roster reconciliation and dashboard aggregates.

Pure functions over already-fetched records: nothing here performs I/O or
keeps state between calls, and inputs are never mutated.
"""

import locale
import logging
from typing import Dict, List, Optional, Sequence

from schemas import (
    ARRIVAL_SLOTS,
    RELATION_FIELDS,
    AttendanceSummary,
    Family,
    FamilyListing,
    RegistrationSummary,
    SlotCount,
    Student,
    StudentView,
    canonical_slot,
)

logger = logging.getLogger(__name__)

REGISTRATION_FILTERS = ("all", "registered", "unregistered")


class InvalidInputError(ValueError):
    """Raised when the reconciler is handed something other than record sequences."""


def _require_records(value, model, arg: str) -> None:
    if not isinstance(value, (list, tuple)):
        raise InvalidInputError(f"{arg} must be a list of {model.__name__}, got {type(value).__name__}")
    for i, item in enumerate(value):
        if not isinstance(item, model):
            raise InvalidInputError(f"{arg}[{i}] is {type(item).__name__}, expected {model.__name__}")


def _filled(value: Optional[str]) -> bool:
    return bool(value and value.strip())


# ----------------------- Registration predicate -----------------------

def is_meaningfully_filled(record: Family) -> bool:
    """True when the family record carries any actual family data.

    A row can exist from an earlier partial save with every field blank; such a
    row is a placeholder, not a registration. An ``others`` entry only counts
    when its name is filled, whatever its relationship says.
    """
    if any(_filled(getattr(record, f)) for f in RELATION_FIELDS):
        return True
    return any(_filled(member.name) for member in record.others or [])


# ----------------------- Join -----------------------

def registered_family_map(family_records: Sequence[Family]) -> Dict[str, Family]:
    """student id -> authoritative family record; later records win."""
    mapping: Dict[str, Family] = {}
    for record in family_records:
        if is_meaningfully_filled(record):
            mapping[str(record.student_id)] = record
    return mapping


def _collation_key(name: str) -> str:
    try:
        return locale.strxfrm(name)
    except ValueError:
        # strxfrm refuses embedded NUL characters
        return name


def _name_key(view: StudentView):
    return (not view.is_registered, _collation_key(view.name))


def reconcile(students: Sequence[Student], family_records: Sequence[Family]) -> List[StudentView]:
    """Merge the roster with family records into one view per student.

    The roster decides who exists: family records for unknown student ids are
    dropped. Registered students come first, each group sorted by name.
    """
    _require_records(students, Student, "students")
    _require_records(family_records, Family, "family_records")

    registered = registered_family_map(family_records)
    views = []
    for student in students:
        family = registered.get(str(student.id))
        views.append(
            StudentView(
                **student.model_dump(),
                is_registered=family is not None,
                family_details=family,
            )
        )
    views.sort(key=_name_key)
    logger.debug(
        "reconciled %d students against %d family records (%d registered)",
        len(students), len(family_records), len(registered),
    )
    return views


# ----------------------- Aggregates -----------------------

def aggregate_attendance(students: Sequence[Student]) -> AttendanceSummary:
    _require_records(students, Student, "students")

    summary = AttendanceSummary(total_students=len(students))
    observed: Dict[str, SlotCount] = {}
    for s in students:
        male = s.male or 0
        female = s.female or 0
        summary.total_males += male
        summary.total_females += female
        slot = canonical_slot(s.when_reach)
        if slot is None:
            continue
        counter = observed.setdefault(slot, SlotCount())
        counter.male += male
        counter.female += female

    summary.grand_total = summary.total_males + summary.total_females
    # canonical slots in vocabulary order, anything else as first seen
    for slot in ARRIVAL_SLOTS:
        if slot in observed:
            summary.by_slot[slot] = observed.pop(slot)
    summary.by_slot.update(observed)
    return summary


def aggregate_registrations(views: Sequence[StudentView]) -> RegistrationSummary:
    _require_records(views, StudentView, "views")

    counts: Dict[str, int] = {}
    registered = 0
    for v in views:
        if v.is_registered:
            registered += 1
            counts[v.class_name] = counts.get(v.class_name, 0) + 1

    return RegistrationSummary(
        total_students=len(views),
        total_registered=registered,
        total_unregistered=len(views) - registered,
        counts_by_class=dict(sorted(counts.items())),
    )


# ----------------------- Admin views -----------------------

def class_labels(views: Sequence[StudentView]) -> List[str]:
    return sorted({v.class_name for v in views})


def group_by_class(views: Sequence[StudentView]) -> Dict[str, List[StudentView]]:
    """Students per class for the registration picker, in reconciled order."""
    _require_records(views, StudentView, "views")

    grouped: Dict[str, List[StudentView]] = {}
    seen = set()
    for v in views:
        key = (v.class_name, str(v.id))
        if key in seen:
            continue
        seen.add(key)
        grouped.setdefault(v.class_name, []).append(v)
    return {label: grouped[label] for label in sorted(grouped)}


def _search_text(view: StudentView) -> List[str]:
    parts = [str(view.id), view.name, view.class_name, view.when_reach or ""]
    family = view.family_details
    if family is not None:
        parts.extend(getattr(family, f) or "" for f in RELATION_FIELDS)
        for member in family.others:
            parts.append(member.relationship or "")
            parts.append(member.name or "")
    return parts


def filter_views(
    views: Sequence[StudentView],
    registration: str = "all",
    class_name: str = "all",
    search: Optional[str] = None,
) -> List[StudentView]:
    """Apply the admin table filters, keeping the incoming order."""
    if registration not in REGISTRATION_FILTERS:
        raise InvalidInputError(f"registration must be one of {REGISTRATION_FILTERS}, got {registration!r}")

    result = list(views)
    if registration != "all":
        wanted = registration == "registered"
        result = [v for v in result if v.is_registered == wanted]
    if class_name and class_name != "all":
        result = [v for v in result if v.class_name == class_name]
    if search:
        needle = search.lower()
        result = [v for v in result if any(needle in p.lower() for p in _search_text(v))]
    return result


def family_listing(students: Sequence[Student], family_records: Sequence[Family]) -> List[FamilyListing]:
    """Every family record with its student's name and class, newest first.

    Unlike ``reconcile`` this keeps records for students missing from the
    roster so an admin can find and delete them.
    """
    _require_records(students, Student, "students")
    _require_records(family_records, Family, "family_records")

    by_id = {str(s.id): s for s in students}
    rows = []
    for record in family_records:
        student = by_id.get(str(record.student_id))
        rows.append(
            FamilyListing(
                **record.model_dump(),
                student_name=student.name if student else f"ID: {record.student_id}",
                student_class=student.class_name if student else "N/A",
                is_registered=is_meaningfully_filled(record),
            )
        )
    # records without a timestamp sort last
    rows.sort(key=lambda r: (r.created_at is not None, r.created_at or 0), reverse=True)
    return rows
