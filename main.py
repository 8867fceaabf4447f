"""FastAPI application for the clinic front desk.

Patients book without an account, get a uid and a QR payload, follow the
live queue and download prescriptions.  Staff run the day's queue, payments
and patient records through the ``/admin`` endpoints, which require the
clinic passcode.  Configuration comes from environment variables (see
``config.py``); Redis is optional and only used to fan change events out to
other processes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

import events
import services
from clinic_settings import check_admin_passcode, get_settings, public_settings, set_admin_pass, update_settings
from config import ADMIN_PASS, CORS_ORIGINS, LOG_LEVEL, PORT, clinic_today
from database import engine, get_session, init_db
from errors import (
    ClinicError,
    InvalidTransitionError,
    InvalidVisitError,
    PrescriptionNotFoundError,
    StorageError,
    TokenConflictError,
    VisitNotFoundError,
)
from models import ClinicSettings, PaymentStatus, Prescription, Visit, VisitStatus
from qr import encode_qr_payload
from queue_summary import get_queue_summary, recompute_queue_summary
from schemas import (
    ActionRequest,
    BookingRequest,
    PaymentRequest,
    PrescriptionCreate,
    ScanRequest,
    SettingsUpdate,
    VisitNotesUpdate,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0

ACTION_STATUS = {
    "check_in": VisitStatus.arrived,
    "start_consultation": VisitStatus.in_consultation,
    "complete": VisitStatus.completed,
    "cancel": VisitStatus.cancelled,
    "no_show": VisitStatus.no_show,
}

ERROR_STATUS = [
    (InvalidVisitError, 400),
    (VisitNotFoundError, 404),
    (PrescriptionNotFoundError, 404),
    (InvalidTransitionError, 409),
    (TokenConflictError, 409),
    (StorageError, 503),
]

app = FastAPI(title="Clinic Front Desk", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ClinicError)
async def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Something went wrong, please try again"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.on_event("startup")
def on_startup() -> None:
    # Initialise the database and settings
    init_db(engine)
    if ADMIN_PASS:
        with Session(engine) as session:
            set_admin_pass(session, ADMIN_PASS)
        logger.info("Admin passcode set from environment")


def require_admin(passcode: str, session: Session = Depends(get_session)) -> bool:
    """Gate for admin endpoints.  Wrong passcode answers 401."""
    if not check_admin_passcode(session, passcode):
        raise HTTPException(status_code=401, detail="Invalid passcode")
    return True


# ===== SYSTEM =====

@app.get("/")
def root() -> Dict[str, Any]:
    return {"service": "Clinic Front Desk", "status": "running", "documentation": "/docs"}


@app.get("/health")
def health(session: Session = Depends(get_session)) -> Dict[str, Any]:
    settings = get_settings(session)
    return {
        "status": "healthy",
        "clinic": settings.clinic_name,
        "database": engine.url.get_backend_name(),
        "redis": events.get_redis() is not None,
        "today": clinic_today().isoformat(),
    }


# ===== PATIENT-FACING =====

@app.get("/api/settings")
def read_settings(session: Session = Depends(get_session)) -> Dict[str, Any]:
    return public_settings(get_settings(session))


@app.post("/api/visits", status_code=201)
def book_visit(request: BookingRequest, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Book a visit and return it with the payload for its QR code."""
    visit = services.create_visit(session, request.model_dump())
    return {"visit": visit, "qr_payload": encode_qr_payload(visit.uid, visit.id)}


@app.get("/api/visits/{uid}")
def read_visit(uid: str, session: Session = Depends(get_session)) -> Visit:
    return services.get_visit_by_uid(session, uid)


@app.get("/api/track/{uid}")
def track(uid: str, session: Session = Depends(get_session)) -> Dict[str, Any]:
    return services.track_visit(session, uid)


@app.get("/api/queue/summary")
def queue_summary(day: Optional[date] = None, session: Session = Depends(get_session)) -> Dict[str, Any]:
    return get_queue_summary(session, day or clinic_today())


@app.get("/api/prescriptions/{prescription_id}/download", response_class=PlainTextResponse)
def download_prescription(prescription_id: str, session: Session = Depends(get_session)) -> PlainTextResponse:
    prescription = services.get_prescription(session, prescription_id)
    return PlainTextResponse(
        services.render_prescription(session, prescription),
        headers={"Content-Disposition": f'attachment; filename="prescription_{prescription.patient_uid}.txt"'},
    )


@app.get("/api/events")
async def stream_events():
    """Server-Sent Events feed of visit and summary changes."""

    async def event_stream():
        heartbeat = f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
        redis_client = events.get_redis()
        if redis_client is None:
            # Single process: listen to in-process publishes.
            loop = asyncio.get_running_loop()
            queue: asyncio.Queue = asyncio.Queue()
            unsubscribe = events.subscribe(
                lambda message: loop.call_soon_threadsafe(queue.put_nowait, message)
            )
            try:
                while True:
                    try:
                        message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                    except asyncio.TimeoutError:
                        yield heartbeat
                        continue
                    yield f"data: {json.dumps(message, default=str)}\n\n"
            finally:
                unsubscribe()
        else:
            # Use Redis pub/sub so every worker's changes reach every stream
            pubsub = redis_client.pubsub()
            pubsub.subscribe(events.CHANNEL)
            try:
                while True:
                    message = await asyncio.to_thread(
                        pubsub.get_message, ignore_subscribe_messages=True, timeout=HEARTBEAT_SECONDS
                    )
                    if message and message["type"] == "message":
                        yield f"data: {message['data']}\n\n"
                    else:
                        yield heartbeat
            finally:
                pubsub.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ===== ADMIN =====

@app.get("/admin/queue", dependencies=[Depends(require_admin)])
def admin_queue(
    day: Optional[date] = None,
    status: Optional[VisitStatus] = None,
    search: Optional[str] = None,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """The day's queue in token order, with the day's summary."""
    day = day or clinic_today()
    return {
        "day": day,
        "visits": services.list_queue(session, day, status=status, term=search),
        "queue_summary": get_queue_summary(session, day),
    }


@app.post("/admin/action", dependencies=[Depends(require_admin)])
def admin_action(request: ActionRequest, session: Session = Depends(get_session)) -> Visit:
    """Move a visit along the queue (check_in, start_consultation, complete, cancel, no_show)."""
    new_status = ACTION_STATUS.get(request.action)
    if new_status is None:
        raise HTTPException(status_code=400, detail="Invalid action")
    return services.change_visit_status(session, request.visit_id, new_status, confirm=request.confirm)


@app.post("/admin/payment", dependencies=[Depends(require_admin)])
def admin_payment(request: PaymentRequest, session: Session = Depends(get_session)) -> Visit:
    return services.set_payment_status(
        session, request.visit_id, request.payment_status, payment_id=request.payment_id
    )


@app.patch("/admin/visits/{visit_id}/notes", dependencies=[Depends(require_admin)])
def admin_notes(visit_id: str, request: VisitNotesUpdate, session: Session = Depends(get_session)) -> Visit:
    return services.update_visit_notes(session, visit_id, request.model_dump(exclude_unset=True))


@app.post("/admin/visits/{visit_id}/prescription", status_code=201, dependencies=[Depends(require_admin)])
def admin_prescription(
    visit_id: str, request: PrescriptionCreate, session: Session = Depends(get_session)
) -> Prescription:
    return services.create_prescription(session, visit_id, request.model_dump())


@app.delete("/admin/visits/{visit_id}", dependencies=[Depends(require_admin)])
def admin_delete(visit_id: str, session: Session = Depends(get_session)) -> Dict[str, Any]:
    services.delete_visit(session, visit_id)
    return {"deleted": visit_id}


@app.get("/admin/search", dependencies=[Depends(require_admin)])
def admin_search(
    q: Optional[str] = None,
    status: Optional[VisitStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> List[Visit]:
    return services.search_visits(session, q, status, start_date, end_date, limit=min(limit, 500))


@app.get("/admin/patients/{uid}", dependencies=[Depends(require_admin)])
def admin_patient(uid: str, session: Session = Depends(get_session)) -> Dict[str, Any]:
    visit = services.get_visit_by_uid(session, uid)
    return {"visit": visit, "past_visits": services.patient_history(session, visit)}


@app.get("/admin/payments", dependencies=[Depends(require_admin)])
def admin_payments(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[PaymentStatus] = None,
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    return services.payment_report(session, start_date, end_date, status)


@app.put("/admin/settings", dependencies=[Depends(require_admin)])
def admin_settings(request: SettingsUpdate, session: Session = Depends(get_session)) -> Dict[str, Any]:
    settings: ClinicSettings = update_settings(session, request.model_dump(exclude_unset=True, mode="json"))
    return public_settings(settings)


@app.post("/admin/scan", dependencies=[Depends(require_admin)])
def admin_scan(request: ScanRequest, session: Session = Depends(get_session)) -> Visit:
    """Resolve a scanned QR code and check the patient in."""
    return services.check_in_from_scan(session, request.payload, check_in=request.check_in)


@app.post("/admin/summary/recompute", dependencies=[Depends(require_admin)])
def admin_recompute(day: Optional[date] = None, session: Session = Depends(get_session)) -> Dict[str, Any]:
    summary = recompute_queue_summary(session, day or clinic_today())
    return summary.model_dump()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
