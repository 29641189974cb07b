"""FastAPI application for the clinic's EHR dashboards.

The receptionist, doctor and admin dashboards talk to this API.  Patients,
consultation notes, payments and admin data live behind a backend
collaborator (the hosted REST backend, or a local SQLite file for
development).  Redis is optional and used for live queue events and the
settings cache.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import traceback
from dataclasses import dataclass
from datetime import date, tzinfo
from typing import Any, Dict, List, Optional

import redis
import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from admin_services import PracticeStore, SettingsStore, UserStore, admin_stats
from backend import BackendError, get_backend, utc_now
from consultation_queue import get_clinic_timezone
from lab_results import LabResultFilters, LabResultStore
from models import ResultStatus
from services import (
    QUEUE_CHANNEL,
    REDIS_URL,
    ActionResult,
    ConsultationNoteStore,
    PatientStore,
    PaymentStore,
    get_redis,
    record_consultation,
)
from schemas import (
    ConsultationNoteRequest,
    ConsultationNoteUpdate,
    FollowUpRequest,
    LabAcknowledgeRequest,
    LabResultRequest,
    LabViewedRequest,
    PasswordResetRequest,
    PatientForm,
    PaymentRequest,
    PracticeRequest,
    PracticeUpdate,
    SettingsUpdate,
    StartConsultationRequest,
    UserUpdate,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))
EVENTS_INTERVAL = 5.0

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "backend": 502,
}


@dataclass
class ClinicStores:
    backend: Any
    patients: PatientStore
    notes: ConsultationNoteStore
    payments: PaymentStore
    labs: LabResultStore
    practices: PracticeStore
    users: UserStore
    settings: SettingsStore


def build_stores(backend, clock=utc_now, tz: Optional[tzinfo] = None) -> ClinicStores:
    return ClinicStores(
        backend=backend,
        patients=PatientStore(backend, clock, tz),
        notes=ConsultationNoteStore(backend, clock, tz),
        payments=PaymentStore(backend),
        labs=LabResultStore(backend, clock, tz),
        practices=PracticeStore(backend, clock),
        users=UserStore(backend, clock),
        settings=SettingsStore(backend, clock),
    )


app = FastAPI(title="Clinic EHR")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    logger.error(f"Backend error on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=502, content={"error": "Backend error", "message": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch anything unhandled so the dashboards always get JSON back."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    logger.error(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": "An unexpected error occurred"},
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
    return response


@app.on_event("startup")
def on_startup() -> None:
    # Tests install their own stores before the app starts.
    if getattr(app.state, "stores", None) is None:
        app.state.stores = build_stores(get_backend(), tz=get_clinic_timezone())
    logger.info("Clinic EHR API ready")


def get_stores(request: Request) -> ClinicStores:
    return request.app.state.stores


def unwrap(result: ActionResult) -> Any:
    """Return the result's data or raise the matching HTTP error."""
    if result.success:
        return result.data
    raise HTTPException(
        status_code=STATUS_BY_KIND.get(result.kind, 400),
        detail={"error": result.error, "field": result.field},
    )


def _rows(records) -> List[Dict[str, Any]]:
    return [r.to_row() for r in records]


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok", "redis": get_redis() is not None}


# ===== PATIENTS =====

@app.get("/patients")
def list_patients(
    request: Request,
    search: str = "",
    gender: str = Query("all", pattern="^(all|Male|Female)$"),
    payment_method: str = Query("all", pattern="^(all|cash|medical_aid)$"),
    sort_by: str = Query("name", pattern="^(name|age|lastVisit)$"),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
) -> Dict[str, Any]:
    store = get_stores(request).patients
    store.reload()
    patients = store.query(search, gender, payment_method, sort_by, sort_order)
    return {"patients": _rows(patients), "count": len(patients)}


@app.post("/patients", status_code=201)
def create_patient(request: Request, form: PatientForm) -> Dict[str, Any]:
    return unwrap(get_stores(request).patients.create(form)).to_row()


@app.get("/patients/activity")
def patient_activity(
    request: Request,
    period: str = Query("all", pattern="^(today|week|month|year|all)$"),
) -> Dict[str, Any]:
    """Patients seen during a reporting period, for exports."""
    store = get_stores(request).patients
    store.reload()
    patients = store.activity(period)
    return {"period": period, "patients": _rows(patients), "count": len(patients)}


@app.get("/patients/{patient_id}")
def get_patient(request: Request, patient_id: str) -> Dict[str, Any]:
    patient = get_stores(request).patients.get(patient_id)
    if patient is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient.to_row()


@app.put("/patients/{patient_id}")
def update_patient(request: Request, patient_id: str, form: PatientForm) -> Dict[str, Any]:
    return unwrap(get_stores(request).patients.update(patient_id, form)).to_row()


@app.delete("/patients/{patient_id}", status_code=204)
def delete_patient(request: Request, patient_id: str) -> None:
    unwrap(get_stores(request).patients.delete(patient_id))


# ===== QUEUE =====

def _board(stores: ClinicStores, day: Optional[date] = None) -> Dict[str, Any]:
    store = stores.patients
    return store.queue(day).as_dict(today=store.today())


@app.get("/queue")
def get_queue(request: Request, day: Optional[date] = Query(None, alias="date")) -> Dict[str, Any]:
    """Today's queue board, or the board of an earlier day for review."""
    stores = get_stores(request)
    stores.patients.reload()
    return _board(stores, day)


@app.post("/queue/{patient_id}/check-in")
def check_in(request: Request, patient_id: str) -> Dict[str, Any]:
    stores = get_stores(request)
    patient = unwrap(stores.patients.check_in(patient_id))
    return {"patient": patient.to_row(), "queue": _board(stores)}


@app.post("/queue/{patient_id}/follow-up")
def follow_up(request: Request, patient_id: str, body: FollowUpRequest) -> Dict[str, Any]:
    stores = get_stores(request)
    patient = unwrap(stores.patients.add_follow_up(patient_id, body.reason))
    return {"patient": patient.to_row(), "queue": _board(stores)}


@app.post("/queue/{patient_id}/start")
def start_consultation(
    request: Request, patient_id: str, body: Optional[StartConsultationRequest] = None
) -> Dict[str, Any]:
    stores = get_stores(request)
    doctor_id = body.doctor_id if body else None
    patient = unwrap(stores.patients.start_consultation(patient_id, doctor_id))
    return {"patient": patient.to_row(), "queue": _board(stores)}


@app.post("/queue/{patient_id}/complete")
def complete_consultation(request: Request, patient_id: str) -> Dict[str, Any]:
    stores = get_stores(request)
    patient = unwrap(stores.patients.complete_consultation(patient_id))
    return {"patient": patient.to_row(), "queue": _board(stores)}


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _snapshot(stores: ClinicStores) -> Dict[str, Any]:
    stores.patients.reload()
    return _board(stores)


async def queue_event_stream(stores: ClinicStores):
    """Live queue events from Redis, or periodic board snapshots without it."""
    if not REDIS_URL:
        while True:
            try:
                board = await run_in_threadpool(_snapshot, stores)
                yield _sse({"type": "queue_snapshot", "data": board})
            except BackendError as e:
                yield _sse({"type": "error", "message": e.message})
            await asyncio.sleep(EVENTS_INTERVAL)

    redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
    pubsub = redis_client.pubsub()
    try:
        await pubsub.subscribe(QUEUE_CHANNEL)
        while True:
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=EVENTS_INTERVAL)
                if message and message["type"] == "message":
                    yield f"data: {message['data']}\n\n"
                else:
                    yield _sse({"type": "heartbeat"})
            except redis.RedisError as e:
                logger.warning(f"Queue event stream error: {e}")
                yield _sse({"type": "error", "message": str(e)})
                await asyncio.sleep(1)
    finally:
        await pubsub.aclose()
        await redis_client.aclose()


@app.get("/queue/events")
async def queue_events(request: Request):
    """Server-Sent Events endpoint for live queue updates."""
    return StreamingResponse(
        queue_event_stream(get_stores(request)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ===== CONSULTATIONS =====

@app.get("/patients/{patient_id}/consultations")
def patient_consultations(request: Request, patient_id: str) -> Dict[str, Any]:
    stores = get_stores(request)
    if stores.patients.get(patient_id) is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    stores.notes.reload()
    notes = stores.notes.by_patient(patient_id)
    return {"consultations": _rows(notes), "count": len(notes)}


@app.post("/consultations", status_code=201)
def create_consultation(request: Request, body: ConsultationNoteRequest, doctor_id: Optional[str] = None) -> Dict[str, Any]:
    stores = get_stores(request)
    result = record_consultation(stores.patients, stores.notes, body, doctor_id)
    note = unwrap(result)
    return {**note.to_row(), "warning": result.warning}


@app.put("/consultations/{note_id}")
def update_consultation(request: Request, note_id: str, body: ConsultationNoteUpdate) -> Dict[str, Any]:
    return unwrap(get_stores(request).notes.update(note_id, body)).to_row()


@app.delete("/consultations/{note_id}", status_code=204)
def delete_consultation(request: Request, note_id: str) -> None:
    unwrap(get_stores(request).notes.delete(note_id))


# ===== PAYMENTS =====

@app.get("/payments")
def list_payments(request: Request, patient_id: Optional[str] = None) -> Dict[str, Any]:
    store = get_stores(request).payments
    payments = store.reload()
    if patient_id:
        payments = [p for p in payments if p.patient_id == patient_id]
    return {"payments": _rows(payments), "count": len(payments)}


@app.post("/payments", status_code=201)
def create_payment(request: Request, body: PaymentRequest) -> Dict[str, Any]:
    return unwrap(get_stores(request).payments.create(body)).to_row()


# ===== LAB RESULTS =====

@app.get("/patients/{patient_id}/lab-results")
def patient_lab_results(
    request: Request,
    patient_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    test_category: Optional[str] = None,
    test_code: Optional[str] = None,
    status: Optional[ResultStatus] = None,
    ordering_doctor_id: Optional[str] = None,
    abnormal_only: bool = False,
    critical_only: bool = False,
    unacknowledged_only: bool = False,
) -> Dict[str, Any]:
    stores = get_stores(request)
    if stores.patients.get(patient_id) is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    filters = LabResultFilters(
        date_from=date_from,
        date_to=date_to,
        test_category=test_category,
        test_code=test_code,
        status=status,
        ordering_doctor_id=ordering_doctor_id,
        abnormal_only=abnormal_only,
        critical_only=critical_only,
        unacknowledged_only=unacknowledged_only,
    )
    results = stores.labs.list(patient_id, filters)
    return {"lab_results": _rows(results), "count": len(results)}


@app.get("/patients/{patient_id}/lab-results/summary")
def lab_summary(request: Request, patient_id: str) -> Dict[str, Any]:
    return get_stores(request).labs.summary(patient_id)


@app.get("/patients/{patient_id}/lab-results/trends")
def lab_trends(request: Request, patient_id: str, test_code: Optional[str] = None) -> Dict[str, Any]:
    return {"trends": get_stores(request).labs.trends(patient_id, test_code)}


@app.post("/lab-results", status_code=201)
def record_lab_result(request: Request, body: LabResultRequest) -> Dict[str, Any]:
    result = get_stores(request).labs.record(body)
    return {**unwrap(result).to_row(), "warning": result.warning}


@app.get("/lab-results/critical")
def critical_lab_results(request: Request, practice_code: Optional[str] = None) -> Dict[str, Any]:
    alerts = get_stores(request).labs.critical_alerts(practice_code)
    return {
        "alerts": alerts,
        "count": len(alerts),
        "unacknowledged": sum(1 for a in alerts if not a.get("acknowledged")),
    }


@app.post("/lab-results/{result_id}/acknowledge")
def acknowledge_lab_result(request: Request, result_id: str, body: LabAcknowledgeRequest) -> Dict[str, Any]:
    return unwrap(get_stores(request).labs.acknowledge(result_id, body.user_id, body.notes)).to_row()


@app.post("/lab-results/{result_id}/viewed")
def lab_result_viewed(request: Request, result_id: str, body: LabViewedRequest) -> Dict[str, Any]:
    return unwrap(get_stores(request).labs.mark_viewed(result_id, body.user_id)).to_row()


# ===== DASHBOARD STATS =====

@app.get("/stats/receptionist")
def receptionist_stats(request: Request, day: Optional[date] = Query(None, alias="date")) -> Dict[str, Any]:
    store = get_stores(request).patients
    store.reload()
    return store.receptionist_stats(day)


@app.get("/stats/doctor")
def doctor_stats(request: Request) -> Dict[str, Any]:
    stores = get_stores(request)
    patients = stores.patients.reload()
    stores.notes.reload()
    return stores.notes.doctor_stats(patients)


# ===== ADMIN CONSOLE =====

@app.get("/admin/stats")
def get_admin_stats(request: Request) -> Dict[str, Any]:
    return admin_stats(get_stores(request).backend)


@app.get("/admin/practices")
def list_practices(request: Request) -> Dict[str, Any]:
    return {"practices": _rows(get_stores(request).practices.list())}


@app.post("/admin/practices", status_code=201)
def create_practice(request: Request, body: PracticeRequest) -> Dict[str, Any]:
    return unwrap(get_stores(request).practices.create(body)).to_row()


@app.put("/admin/practices/{practice_id}")
def update_practice(request: Request, practice_id: str, body: PracticeUpdate) -> Dict[str, Any]:
    return unwrap(get_stores(request).practices.update(practice_id, body)).to_row()


@app.post("/admin/practices/{practice_id}/toggle")
def toggle_practice(request: Request, practice_id: str) -> Dict[str, Any]:
    return unwrap(get_stores(request).practices.toggle_status(practice_id)).to_row()


@app.get("/admin/users")
def list_users(request: Request) -> Dict[str, Any]:
    return {"users": _rows(get_stores(request).users.list())}


@app.put("/admin/users/{user_id}")
def update_user(request: Request, user_id: str, body: UserUpdate) -> Dict[str, Any]:
    return unwrap(get_stores(request).users.update(user_id, body)).to_row()


@app.delete("/admin/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str) -> None:
    unwrap(get_stores(request).users.delete(user_id))


@app.post("/admin/users/{user_id}/reset-password")
def reset_password(request: Request, user_id: str, body: PasswordResetRequest) -> Dict[str, Any]:
    logger.info(f"Password reset requested for user {user_id}")
    return unwrap(get_stores(request).users.reset_password(body.email))


@app.get("/admin/settings")
def get_settings(request: Request) -> Dict[str, Any]:
    return {"settings": get_stores(request).settings.values()}


@app.put("/admin/settings")
def save_settings(request: Request, body: SettingsUpdate) -> Dict[str, Any]:
    return {"settings": unwrap(get_stores(request).settings.save(body.values))}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT)
