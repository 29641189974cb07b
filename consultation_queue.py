"""Consultation queue derivation and status transitions.

Nothing here touches the backend.  Given the patient list as last fetched
and a reference date, :func:`derive_queue` splits patients into the three
buckets shown on the dashboards:

* waiting: checked in on the reference date, earliest first (FIFO).  The
  first entry is the one flagged "NEXT".
* in consultation: started on the reference date.  The board expects at
  most one; a new consultation may only start while this bucket is empty.
* served: completed on the reference date, most recent first.

Patients with no usable timestamp are left out of every bucket.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, Iterable, List, Optional

from zoneinfo import ZoneInfo

from models import ConsultationStatus, Patient

CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE")


class TransitionError(Exception):
    """A queue action is not allowed from the patient's current status."""


# action -> (allowed current statuses, resulting status)
TRANSITIONS = {
    "check_in": (
        {ConsultationStatus.none, ConsultationStatus.served},
        ConsultationStatus.waiting,
    ),
    "follow_up": (
        {ConsultationStatus.none, ConsultationStatus.served},
        ConsultationStatus.waiting,
    ),
    "start": ({ConsultationStatus.waiting}, ConsultationStatus.in_consultation),
    "complete": ({ConsultationStatus.in_consultation}, ConsultationStatus.served),
}

_REFUSALS = {
    ConsultationStatus.waiting: "Patient is already waiting in the queue",
    ConsultationStatus.in_consultation: "Patient is already in consultation",
    ConsultationStatus.served: "Patient has already been served",
    ConsultationStatus.none: "Patient is not in the queue",
}


def get_clinic_timezone() -> Optional[tzinfo]:
    """Configured clinic time zone, or None for the host's local zone."""
    if CLINIC_TIMEZONE:
        return ZoneInfo(CLINIC_TIMEZONE)
    return None


def local_date(ts: datetime, tz: Optional[tzinfo] = None) -> date:
    """Calendar date of ``ts`` in the clinic's zone.  Naive values are taken as local."""
    if ts.tzinfo is None:
        return ts.date()
    return ts.astimezone(tz).date()


def queue_timestamp(patient: Patient) -> Optional[datetime]:
    return patient.last_status_change or patient.created_at


def _instant(ts: datetime) -> float:
    return ts.timestamp()


@dataclass
class QueueBoard:
    reference_date: date
    waiting: List[Patient] = field(default_factory=list)
    in_consultation: List[Patient] = field(default_factory=list)
    served: List[Patient] = field(default_factory=list)

    @property
    def next_up(self) -> Optional[Patient]:
        return self.waiting[0] if self.waiting else None

    @property
    def can_start_consultation(self) -> bool:
        return not self.in_consultation

    def as_dict(self, today: Optional[date] = None) -> Dict[str, Any]:
        next_id = self.next_up.id if self.next_up else None
        waiting = []
        for position, patient in enumerate(self.waiting, start=1):
            entry = patient.to_row()
            entry["position"] = position
            entry["is_next"] = patient.id == next_id
            waiting.append(entry)
        board: Dict[str, Any] = {
            "date": self.reference_date.isoformat(),
            "waiting": waiting,
            "in_consultation": [p.to_row() for p in self.in_consultation],
            "served": [p.to_row() for p in self.served],
            "next_patient_id": next_id,
            "can_start_consultation": self.can_start_consultation,
        }
        if today is not None:
            upcoming = next_date(self.reference_date, today)
            board["previous_date"] = previous_date(self.reference_date).isoformat()
            board["next_date"] = upcoming.isoformat() if upcoming else None
            board["is_today"] = self.reference_date == today
        return board


def derive_queue(
    patients: Iterable[Patient],
    reference_date: date,
    tz: Optional[tzinfo] = None,
) -> QueueBoard:
    """Partition ``patients`` into the day's waiting, in-consultation and served buckets."""
    board = QueueBoard(reference_date=reference_date)
    for patient in patients:
        status = patient.consultation_status
        if status == ConsultationStatus.waiting:
            ts = queue_timestamp(patient)
            if ts is not None and local_date(ts, tz) == reference_date:
                board.waiting.append(patient)
        elif status == ConsultationStatus.in_consultation:
            ts = patient.last_status_change
            if ts is not None and local_date(ts, tz) == reference_date:
                board.in_consultation.append(patient)
        elif status == ConsultationStatus.served:
            ts = patient.last_status_change
            if ts is not None and local_date(ts, tz) == reference_date:
                board.served.append(patient)

    board.waiting.sort(key=lambda p: _instant(queue_timestamp(p)))
    board.served.sort(key=lambda p: _instant(p.last_status_change), reverse=True)
    return board


def previous_date(reference_date: date) -> date:
    return reference_date - timedelta(days=1)


def next_date(reference_date: date, today: date) -> Optional[date]:
    """Day after ``reference_date``; None once the board already shows today."""
    if reference_date >= today:
        return None
    return reference_date + timedelta(days=1)


def check_transition(
    patient: Patient,
    action: str,
    today: Optional[date] = None,
    tz: Optional[tzinfo] = None,
) -> ConsultationStatus:
    """Return the status ``action`` moves ``patient`` to, or raise TransitionError.

    A patient served on ``today`` stays served for the rest of that day;
    being served on an earlier day does not block a new check-in.
    """
    try:
        allowed, target = TRANSITIONS[action]
    except KeyError:
        raise TransitionError(f"Unknown queue action: {action}")
    current = patient.consultation_status
    if current not in allowed:
        raise TransitionError(_REFUSALS[current])
    if (
        current == ConsultationStatus.served
        and today is not None
        and patient.last_status_change is not None
        and local_date(patient.last_status_change, tz) == today
    ):
        raise TransitionError("Patient has already been served today")
    return target
