"""Search, filter and sort helpers for patient lists.

These functions are pure: the same list and parameters always give the
same result, which lets the patient store memoise them on the parameter
tuple.  Sorting is stable, so ties keep their incoming order.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Iterable, List, Optional

from consultation_queue import local_date
from models import Patient

GENDER_FILTERS = ("all", "Male", "Female")
PAYMENT_FILTERS = ("all", "cash", "medical_aid")
SORT_KEYS = ("name", "age", "lastVisit")
SORT_ORDERS = ("asc", "desc")
PERIODS = ("today", "week", "month", "year", "all")


def calculate_age(date_of_birth: Optional[date], today: date) -> int:
    if date_of_birth is None:
        return 0
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return max(0, age)


def last_activity(patient: Patient) -> Optional[datetime]:
    return patient.last_status_change or patient.created_at


def filter_patients(
    patients: Iterable[Patient],
    search_term: str = "",
    gender: str = "all",
    payment_method: str = "all",
) -> List[Patient]:
    """Keep patients matching the search term and categorical filters.

    The search is a case-insensitive substring match on the full name, ID
    number and contact number.  A filter value of ``"all"`` matches
    everyone.
    """
    needle = search_term.strip().lower()
    result = []
    for patient in patients:
        if gender != "all" and patient.sex.value != gender:
            continue
        if payment_method != "all" and patient.payment_method.value != payment_method:
            continue
        if needle:
            haystacks = (
                patient.full_name.lower(),
                patient.id_number.lower(),
                patient.contact_number.lower(),
            )
            if not any(needle in h for h in haystacks):
                continue
        result.append(patient)
    return result


def sort_patients(
    patients: Iterable[Patient],
    sort_by: str = "name",
    sort_order: str = "asc",
    today: Optional[date] = None,
) -> List[Patient]:
    """Order patients by name, age or last visit.

    Ascending age puts the youngest first.  Age is worked out from the date
    of birth at ``today``.
    """
    descending = sort_order == "desc"
    if sort_by == "age":
        today = today or date.today()
        return sorted(patients, key=lambda p: calculate_age(p.date_of_birth, today), reverse=descending)
    if sort_by == "lastVisit":

        def visit_key(p: Patient) -> float:
            ts = last_activity(p)
            return ts.timestamp() if ts is not None else float("-inf")

        return sorted(patients, key=visit_key, reverse=descending)
    return sorted(patients, key=lambda p: p.full_name.casefold(), reverse=descending)


def process_patients(
    patients: Iterable[Patient],
    search_term: str = "",
    gender: str = "all",
    payment_method: str = "all",
    sort_by: str = "name",
    sort_order: str = "asc",
    today: Optional[date] = None,
) -> List[Patient]:
    filtered = filter_patients(patients, search_term, gender, payment_method)
    return sort_patients(filtered, sort_by, sort_order, today)


def patient_status(patient: Patient, now: datetime) -> str:
    """Classify a patient as new, active, follow-up or inactive."""
    created = patient.created_at
    if created is not None and created.timestamp() > (now - timedelta(days=30)).timestamp():
        return "new"
    activity = last_activity(patient)
    if activity is None:
        return "inactive"
    idle = now.timestamp() - activity.timestamp()
    if idle > timedelta(days=365).total_seconds():
        return "inactive"
    if idle > timedelta(days=180).total_seconds():
        return "follow-up"
    return "active"


def period_start(period: str, today: date) -> Optional[date]:
    if period == "today":
        return today
    if period == "week":
        # Weeks start on Sunday.
        return today - timedelta(days=(today.weekday() + 1) % 7)
    if period == "month":
        return today.replace(day=1)
    if period == "year":
        return today.replace(month=1, day=1)
    return None


def filter_by_period(
    patients: Iterable[Patient],
    period: str,
    today: date,
    tz: Optional[tzinfo] = None,
) -> List[Patient]:
    """Patients whose last activity falls on or after the start of ``period``."""
    if period == "all":
        return list(patients)
    start = period_start(period, today)
    if start is None:
        raise ValueError(f"Unknown period: {period}")
    result = []
    for patient in patients:
        ts = last_activity(patient)
        if ts is not None and local_date(ts, tz) >= start:
            result.append(patient)
    return result
