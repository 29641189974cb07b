"""Stores and queue actions.

Each store wraps the backend and keeps an in-memory copy of its table.  The
copy has no authority: it is replaced wholesale after every confirmed
mutation and can be dropped at any time.  Store methods that change data
return an :class:`ActionResult` carrying either the new record or a message
that can be shown to staff as-is.

Redis is optional.  When ``REDIS_URL`` is set, queue changes are published
on a channel for live dashboards and system settings are cached.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Callable, Dict, List, Optional, Tuple

import nh3
import redis

from backend import UNIQUE_VIOLATION, BackendError, new_id, utc_now
from consultation_queue import (
    QueueBoard,
    TransitionError,
    check_transition,
    derive_queue,
    local_date,
)
from models import ConsultationNote, ConsultationStatus, Patient, Payment, PaymentStatus, Role, VisitType
from patient_filters import filter_by_period, patient_status, process_patients
from schemas import ConsultationNoteRequest, ConsultationNoteUpdate, PatientForm, PaymentRequest

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
QUEUE_CHANNEL = "clinic:updates"
SETTINGS_CACHE_KEY = "clinic:settings"
PAYMENT_PROOF_BUCKET = "payment-proofs"
GENERIC_ERROR = "An unexpected error occurred"

# Markup produced by the clinical notes editor.
ALLOWED_NOTE_TAGS = {
    "p", "br", "strong", "em", "b", "i", "u", "s",
    "h1", "h2", "h3", "ul", "ol", "li", "blockquote",
}

Clock = Callable[[], datetime]

# Redis connection
_redis_client = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client if configured."""
    global _redis_client
    if not REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
            _redis_client.ping()
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            _redis_client = None

    return _redis_client


@dataclass
class ActionResult:
    """Outcome of a store mutation.

    ``kind`` classifies failures: validation, not_found, conflict or backend.
    ``warning`` is set on a success that only partly went through.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    field: Optional[str] = None
    kind: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, warning: Optional[str] = None) -> "ActionResult":
        return cls(success=True, data=data, warning=warning)

    @classmethod
    def fail(cls, error: str, kind: str = "backend", field: Optional[str] = None) -> "ActionResult":
        return cls(success=False, error=error or GENERIC_ERROR, kind=kind, field=field)


def sanitize_clinical_notes(html: str) -> str:
    """Strip scripts, attributes and unknown tags from rich-text notes."""
    return nh3.clean(html, tags=ALLOWED_NOTE_TAGS, attributes={})


class PatientStore:
    """Patients, the day's queue and the queue actions."""

    def __init__(self, backend, clock: Clock = utc_now, tz: Optional[tzinfo] = None) -> None:
        self.backend = backend
        self.clock = clock
        self.tz = tz
        self._patients: Optional[List[Patient]] = None
        self._version = 0
        self._query_cache: Dict[Tuple, List[Patient]] = {}

    def today(self) -> date:
        return local_date(self.clock(), self.tz)

    @property
    def patients(self) -> List[Patient]:
        if self._patients is None:
            self.reload()
        return self._patients

    def reload(self) -> List[Patient]:
        rows = self.backend.select("patients", order="created_at")
        self._patients = [Patient.from_row(row) for row in rows]
        self._version += 1
        self._query_cache.clear()
        return self._patients

    def _refresh(self) -> None:
        try:
            self.reload()
        except BackendError as e:
            # The write went through; fetch again on next access.
            logger.warning("Reload after mutation failed: %s", e.message)
            self._patients = None
            self._query_cache.clear()

    def _find(self, patient_id: str) -> Optional[Patient]:
        return next((p for p in self.patients if p.id == patient_id), None)

    def get(self, patient_id: str) -> Optional[Patient]:
        rows = self.backend.select("patients", {"id": patient_id})
        return Patient.from_row(rows[0]) if rows else None

    def query(
        self,
        search_term: str = "",
        gender: str = "all",
        payment_method: str = "all",
        sort_by: str = "name",
        sort_order: str = "asc",
    ) -> List[Patient]:
        patients = self.patients
        today = self.today()
        key = (self._version, search_term, gender, payment_method, sort_by, sort_order, today)
        if key not in self._query_cache:
            # Only the latest query is kept.
            self._query_cache = {
                key: process_patients(patients, search_term, gender, payment_method, sort_by, sort_order, today)
            }
        return self._query_cache[key]

    def queue(self, reference_date: Optional[date] = None) -> QueueBoard:
        return derive_queue(self.patients, reference_date or self.today(), self.tz)

    def activity(self, period: str) -> List[Patient]:
        return filter_by_period(self.patients, period, self.today(), self.tz)

    def receptionist_stats(self, reference_date: Optional[date] = None) -> Dict[str, Any]:
        reference_date = reference_date or self.today()
        patients = self.patients
        now = self.clock()
        follow_ups = [
            p
            for p in patients
            if p.visit_type == VisitType.follow_up
            and p.last_status_change is not None
            and local_date(p.last_status_change, self.tz) == reference_date
        ]
        return {
            "date": reference_date.isoformat(),
            "total_patients": len(patients),
            "male_patients": sum(1 for p in patients if p.sex.value == "Male"),
            "female_patients": sum(1 for p in patients if p.sex.value == "Female"),
            "new_patients": sum(1 for p in patients if patient_status(p, now) == "new"),
            "follow_ups": len(follow_ups),
            "cash_patients": sum(1 for p in patients if p.payment_method.value == "cash"),
            "medical_aid_patients": sum(1 for p in patients if p.payment_method.value == "medical_aid"),
        }

    # ===== PATIENT RECORDS =====

    def _duplicate_id(self, error: BackendError) -> bool:
        return error.code == UNIQUE_VIOLATION and "id_number" in error.message

    def create(self, form: PatientForm) -> ActionResult:
        try:
            row = self.backend.insert("patients", form.to_patient_row())
        except BackendError as e:
            if self._duplicate_id(e):
                return ActionResult.fail(
                    "A patient with this ID number already exists. Please check the ID number and try again.",
                    kind="validation",
                    field="id_number",
                )
            logger.error("Error creating patient: %s", e.message)
            return ActionResult.fail(e.message)
        patient = Patient.from_row(row)
        logger.info("Registered patient %s", patient.id)
        self._refresh()
        return ActionResult.ok(patient)

    def update(self, patient_id: str, form: PatientForm) -> ActionResult:
        values = form.to_patient_row()
        values["updated_at"] = self.clock().isoformat()
        try:
            rows = self.backend.update("patients", values, {"id": patient_id})
        except BackendError as e:
            if self._duplicate_id(e):
                return ActionResult.fail(
                    "A patient with this ID number already exists. Please check the ID number and try again.",
                    kind="validation",
                    field="id_number",
                )
            logger.error("Error updating patient %s: %s", patient_id, e.message)
            return ActionResult.fail(e.message)
        if not rows:
            return ActionResult.fail("Patient not found", kind="not_found")
        self._refresh()
        return ActionResult.ok(Patient.from_row(rows[0]))

    def delete(self, patient_id: str) -> ActionResult:
        try:
            deleted = self.backend.delete("patients", {"id": patient_id})
        except BackendError as e:
            logger.error("Error deleting patient %s: %s", patient_id, e.message)
            return ActionResult.fail(e.message)
        if not deleted:
            return ActionResult.fail("Patient not found", kind="not_found")
        logger.info("Deleted patient %s", patient_id)
        self._refresh()
        publish_queue_update("deleted", patient_id)
        return ActionResult.ok()

    # ===== QUEUE ACTIONS =====

    def _transition(self, patient_id: str, action: str, extra: Optional[Dict[str, Any]] = None) -> ActionResult:
        try:
            self.reload()
        except BackendError as e:
            return ActionResult.fail(e.message)

        patient = self._find(patient_id)
        if patient is None:
            return ActionResult.fail("Patient not found", kind="not_found")

        today = self.today()
        try:
            target = check_transition(patient, action, today, self.tz)
        except TransitionError as e:
            return ActionResult.fail(str(e), kind="conflict")

        if action == "start" and not self.queue(today).can_start_consultation:
            return ActionResult.fail(
                "Another patient is already in consultation. Complete it before starting the next one.",
                kind="conflict",
            )

        now = self.clock().isoformat()
        values = {
            "consultation_status": target.value,
            "last_status_change": now,
            "updated_at": now,
        }
        values.update(extra or {})
        current = patient.consultation_status
        # Rows written before the status column had a default hold NULL.
        expected = [None, current.value] if current == ConsultationStatus.none else current.value
        try:
            # Only applies if nobody moved the patient since the reload above.
            rows = self.backend.update(
                "patients", values, {"id": patient_id, "consultation_status": expected}
            )
        except BackendError as e:
            logger.error("Queue action %s failed for patient %s: %s", action, patient_id, e.message)
            return ActionResult.fail(e.message)
        if not rows:
            self._refresh()
            return ActionResult.fail(
                "This patient's status was changed elsewhere. Please refresh and try again.",
                kind="conflict",
            )

        logger.info("Patient %s: %s -> %s", patient_id, current.value, target.value)
        self._refresh()
        publish_queue_update(action, patient_id)
        return ActionResult.ok(Patient.from_row(rows[0]))

    def check_in(self, patient_id: str) -> ActionResult:
        return self._transition(
            patient_id,
            "check_in",
            {"visit_type": VisitType.regular.value, "visit_reason": None},
        )

    def add_follow_up(self, patient_id: str, reason: str = "") -> ActionResult:
        return self._transition(
            patient_id,
            "follow_up",
            {"visit_type": VisitType.follow_up.value, "visit_reason": reason.strip() or None},
        )

    def start_consultation(self, patient_id: str, doctor_id: Optional[str] = None) -> ActionResult:
        return self._transition(patient_id, "start", {"current_doctor_id": doctor_id})

    def complete_consultation(self, patient_id: str) -> ActionResult:
        return self._transition(patient_id, "complete", {"current_doctor_id": None})


class ConsultationNoteStore:
    def __init__(self, backend, clock: Clock = utc_now, tz: Optional[tzinfo] = None) -> None:
        self.backend = backend
        self.clock = clock
        self.tz = tz
        self._notes: Optional[List[ConsultationNote]] = None

    @property
    def notes(self) -> List[ConsultationNote]:
        if self._notes is None:
            self.reload()
        return self._notes

    def reload(self) -> List[ConsultationNote]:
        rows = self.backend.select("consultation_notes", order="created_at", descending=True)
        self._notes = [ConsultationNote.from_row(row) for row in rows]
        return self._notes

    def _refresh(self) -> None:
        try:
            self.reload()
        except BackendError as e:
            logger.warning("Reload of consultation notes failed: %s", e.message)
            self._notes = None

    def by_patient(self, patient_id: str) -> List[ConsultationNote]:
        notes = [n for n in self.notes if n.patient_id == patient_id]
        return sorted(notes, key=lambda n: n.date, reverse=True)

    def _default_doctor(self) -> Optional[str]:
        doctors = self.backend.select("users", {"role": Role.doctor.value}, order="created_at")
        return doctors[0]["id"] if doctors else None

    def create(self, request: ConsultationNoteRequest, doctor_id: Optional[str] = None) -> ActionResult:
        row = request.model_dump(mode="json", exclude={"complete_consultation"})
        row["clinical_notes"] = sanitize_clinical_notes(request.clinical_notes)
        row["date"] = (request.date or local_date(self.clock(), self.tz)).isoformat()
        try:
            row["doctor_id"] = doctor_id or self._default_doctor()
            created = self.backend.insert("consultation_notes", row)
        except BackendError as e:
            logger.error("Error creating consultation note: %s", e.message)
            return ActionResult.fail(e.message)
        note = ConsultationNote.from_row(created)
        logger.info("Consultation note %s saved for patient %s", note.id, note.patient_id)
        self._refresh()
        return ActionResult.ok(note)

    def update(self, note_id: str, changes: ConsultationNoteUpdate) -> ActionResult:
        values = changes.model_dump(mode="json", exclude_none=True)
        if "clinical_notes" in values:
            values["clinical_notes"] = sanitize_clinical_notes(values["clinical_notes"])
        if "icd10_code" in values:
            values["icd10_code"] = values["icd10_code"].strip() or None
        values["updated_at"] = self.clock().isoformat()
        try:
            rows = self.backend.update("consultation_notes", values, {"id": note_id})
        except BackendError as e:
            logger.error("Error updating consultation note %s: %s", note_id, e.message)
            return ActionResult.fail(e.message)
        if not rows:
            return ActionResult.fail("Consultation note not found", kind="not_found")
        self._refresh()
        return ActionResult.ok(ConsultationNote.from_row(rows[0]))

    def delete(self, note_id: str) -> ActionResult:
        try:
            deleted = self.backend.delete("consultation_notes", {"id": note_id})
        except BackendError as e:
            logger.error("Error deleting consultation note %s: %s", note_id, e.message)
            return ActionResult.fail(e.message)
        if not deleted:
            return ActionResult.fail("Consultation note not found", kind="not_found")
        self._refresh()
        return ActionResult.ok()

    def doctor_stats(self, patients: List[Patient]) -> Dict[str, Any]:
        now = self.clock()
        today = local_date(now, self.tz)
        week_ago = today - timedelta(days=7)
        known = {p.id for p in patients}
        # Notes of deleted patients are not counted.
        notes = [n for n in self.notes if n.patient_id in known]
        statuses = [patient_status(p, now) for p in patients]
        return {
            "total_patients": len(patients),
            "total_consultations": len(notes),
            "today_consultations": sum(1 for n in notes if n.date == today),
            "week_consultations": sum(1 for n in notes if n.date >= week_ago),
            "new_patients": statuses.count("new"),
            "follow_up_needed": statuses.count("follow-up"),
        }


def record_consultation(
    patients: PatientStore,
    notes: ConsultationNoteStore,
    request: ConsultationNoteRequest,
    doctor_id: Optional[str] = None,
) -> ActionResult:
    """Save a consultation note and, if asked, mark the patient as served."""
    try:
        patient = patients.get(request.patient_id)
    except BackendError as e:
        return ActionResult.fail(e.message)
    if patient is None:
        return ActionResult.fail("Patient not found", kind="not_found")

    result = notes.create(request, doctor_id)
    if not result.success:
        return result
    if request.complete_consultation and patient.consultation_status == ConsultationStatus.in_consultation:
        completed = patients.complete_consultation(patient.id)
        if not completed.success:
            logger.warning("Note %s saved but patient %s not served: %s", result.data.id, patient.id, completed.error)
            return ActionResult.ok(
                result.data,
                warning=f"Consultation saved, but the patient could not be marked as served: {completed.error}",
            )
    return result


class PaymentStore:
    def __init__(self, backend) -> None:
        self.backend = backend
        self._payments: Optional[List[Payment]] = None

    @property
    def payments(self) -> List[Payment]:
        if self._payments is None:
            self.reload()
        return self._payments

    def reload(self) -> List[Payment]:
        rows = self.backend.select("payments", order="created_at", descending=True)
        self._payments = [Payment.from_row(row) for row in rows]
        return self._payments

    def create(self, request: PaymentRequest) -> ActionResult:
        data = None
        if request.proof_base64:
            try:
                data = base64.b64decode(request.proof_base64, validate=True)
            except (binascii.Error, ValueError):
                return ActionResult.fail("Proof of payment is not valid base64", kind="validation", field="proof_base64")

        try:
            # The patient id becomes part of the storage path.
            if not self.backend.select("patients", {"id": request.patient_id}):
                return ActionResult.fail("Patient not found", kind="not_found", field="patient_id")
        except BackendError as e:
            return ActionResult.fail(e.message)

        proof_url = path = None
        if data is not None:
            path = f"{request.patient_id}/{new_id()}.{proof_extension(request.proof_filename)}"
            try:
                proof_url = self.backend.upload(PAYMENT_PROOF_BUCKET, path, data, request.proof_content_type)
            except BackendError as e:
                logger.error("Proof upload failed for patient %s: %s", request.patient_id, e.message)
                return ActionResult.fail(e.message)

        row = request.model_dump(
            mode="json", exclude={"proof_base64", "proof_filename", "proof_content_type"}
        )
        row["proof_url"] = proof_url
        row["status"] = PaymentStatus.completed.value
        try:
            created = self.backend.insert("payments", row)
        except BackendError as e:
            logger.error("Error creating payment: %s", e.message)
            if path is not None:
                self._remove_proof(path)
            return ActionResult.fail(e.message)
        self._payments = None
        logger.info("Payment %s recorded for patient %s", created["id"], request.patient_id)
        return ActionResult.ok(Payment.from_row(created))

    def _remove_proof(self, path: str) -> None:
        try:
            self.backend.remove(PAYMENT_PROOF_BUCKET, path)
        except BackendError as e:
            logger.error("Could not remove orphaned proof %s: %s", path, e.message)


def proof_extension(filename: Optional[str]) -> str:
    """File extension for a stored proof; anything but a short alphanumeric suffix becomes ``bin``."""
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[-1].lower()
        if ext.isalnum() and ext.isascii() and len(ext) <= 8:
            return ext
    return "bin"


# ===== REDIS HELPER FUNCTIONS =====

def publish_queue_update(event: str, patient_id: Optional[str] = None) -> None:
    """Publish a queue change to the Redis channel for live dashboards."""
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.publish(QUEUE_CHANNEL, json.dumps({
                "type": "queue_update",
                "event": event,
                "patient_id": patient_id,
                "timestamp": utc_now().isoformat(),
            }))
        except redis.RedisError as e:
            logger.warning("Redis publish error: %s", e)


def cache_settings(settings_data: List[Dict[str, Any]]) -> None:
    """Cache settings in Redis with 5 minute TTL."""
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.setex(SETTINGS_CACHE_KEY, 300, json.dumps(settings_data))
        except redis.RedisError as e:
            logger.warning("Redis cache settings error: %s", e)


def get_cached_settings() -> Optional[List[Dict[str, Any]]]:
    """Get cached settings rows from Redis."""
    redis_client = get_redis()
    if redis_client:
        try:
            cached = redis_client.get(SETTINGS_CACHE_KEY)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning("Redis get settings error: %s", e)
    return None


def clear_cached_settings() -> None:
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.delete(SETTINGS_CACHE_KEY)
        except redis.RedisError as e:
            logger.warning("Redis clear settings error: %s", e)
