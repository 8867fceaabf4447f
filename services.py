"""Business logic for bookings, the queue and patient records.

Every function takes an open SQLModel ``Session``.  Mutations commit, then
refresh the day's queue summary and publish a change message; failures of
either follow-up are logged by their own modules and never undo the write.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

import events
from clinic_settings import get_settings
from config import TOKEN_RETRY_LIMIT, clinic_today, local_date, utcnow
from errors import (
    ConfirmationRequiredError,
    InvalidTransitionError,
    InvalidVisitError,
    PrescriptionNotFoundError,
    StorageError,
    TokenConflictError,
    VisitNotFoundError,
)
from models import (
    PaymentMethod,
    PaymentStatus,
    Prescription,
    Visit,
    VisitStatus,
)
from qr import decode_qr_payload
from queue_summary import CANCELLED_STATUSES, WAITING_STATUSES, get_queue_summary, refresh_queue_summary
from tokens import estimate_wait_minutes, format_estimated_time, format_uid, reserve_token

logger = logging.getLogger(__name__)


# ===== STATUS TRANSITIONS =====

ALLOWED_TRANSITIONS: Dict[VisitStatus, frozenset] = {
    VisitStatus.upcoming: frozenset({VisitStatus.arrived, VisitStatus.cancelled, VisitStatus.no_show}),
    VisitStatus.arrived: frozenset(
        {VisitStatus.in_consultation, VisitStatus.cancelled, VisitStatus.no_show}
    ),
    VisitStatus.in_consultation: frozenset({VisitStatus.completed, VisitStatus.no_show}),
    VisitStatus.completed: frozenset(),
    VisitStatus.cancelled: frozenset(),
    VisitStatus.no_show: frozenset(),
}

STATUS_TIMESTAMPS: Dict[VisitStatus, Sequence[str]] = {
    VisitStatus.arrived: ("arrived_at",),
    VisitStatus.in_consultation: ("consultation_start_time",),
    VisitStatus.completed: ("consultation_end_time", "completed_at"),
    VisitStatus.cancelled: ("cancelled_at",),
    VisitStatus.no_show: (),
}

BOOKING_FIELDS = (
    "age",
    "phone",
    "email",
    "gender",
    "address",
    "reason",
    "symptoms",
    "medical_history",
    "allergies",
    "current_medications",
    "emergency_contact_name",
    "emergency_contact_phone",
)

NOTE_FIELDS = {
    "notes",
    "diagnosis",
    "treatment_plan",
    "follow_up_date",
    "follow_up_instructions",
    "doctor_rating",
    "feedback",
}


def can_transition(current: VisitStatus, new_status: VisitStatus) -> bool:
    return VisitStatus(new_status) in ALLOWED_TRANSITIONS[VisitStatus(current)]


# ===== HELPERS =====

def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _matches_term(term: str):
    """Case-insensitive substring match on name, uid or phone; ``%`` and ``_`` match literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return or_(
        col(Visit.name).ilike(pattern, escape="\\"),
        col(Visit.uid).ilike(pattern, escape="\\"),
        col(Visit.phone).ilike(pattern, escape="\\"),
    )


def _commit(session: Session, action: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Storage failure while trying to %s", action)
        raise StorageError(f"Could not {action}, please try again") from exc


def _after_visit_change(session: Session, visit: Visit, event_type: str, *loaded: Any) -> None:
    """Refresh the summary and publish.

    ``visit`` and ``loaded`` must be freshly loaded.  They are returned to the
    caller detached, so the summary commit cannot expire them and nothing is
    read back from storage after the mutation has committed.
    """
    data = events.visit_event_data(visit)
    for instance in (visit,) + loaded:
        session.expunge(instance)
    refresh_queue_summary(session, visit.visit_date)
    events.publish(event_type, data)


def new_payment_id() -> str:
    return f"pay_{int(time.time() * 1000)}"


# ===== BOOKING =====

def _validate_booking(session: Session, booking: Dict[str, Any], day: date):
    name = _clean(booking.get("name"))
    if not name:
        raise InvalidVisitError("Patient name is required")
    method = booking.get("payment_method")
    if not method:
        raise InvalidVisitError("Payment method is required")
    try:
        method = PaymentMethod(method)
    except ValueError:
        raise InvalidVisitError(f"Unknown payment method: {method}") from None

    settings = get_settings(session)
    if method == PaymentMethod.online and not settings.online_payment_enabled:
        raise InvalidVisitError("Online payment is not available")
    if method == PaymentMethod.clinic and not settings.clinic_payment_enabled:
        raise InvalidVisitError("Payment at the clinic is not available")

    if settings.max_daily_appointments:
        booked = session.exec(
            select(func.count())
            .select_from(Visit)
            .where(
                Visit.visit_date == day,
                col(Visit.visit_status).notin_(list(CANCELLED_STATUSES)),
            )
        ).one()
        if booked >= settings.max_daily_appointments:
            raise InvalidVisitError("No appointments left for today")
    return name, method, settings


def create_visit(
    session: Session, booking: Dict[str, Any], now: Optional[datetime] = None
) -> Visit:
    """Book a visit: claim the next token for today and persist the row.

    A lost token race (uniqueness conflict) is retried with a fresh read up to
    ``TOKEN_RETRY_LIMIT`` times before giving up with ``TokenConflictError``.
    """
    created_at = now or utcnow()
    day = local_date(created_at)
    name, method, settings = _validate_booking(session, booking, day)
    average = settings.average_consultation_time

    for attempt in range(1, TOKEN_RETRY_LIMIT + 1):
        try:
            token = reserve_token(session, day)
            visit = Visit(
                uid=format_uid(token),
                token_number=token,
                visit_date=day,
                name=name,
                payment_method=method,
                payment_status=PaymentStatus.pending,
                payment_amount=settings.consultation_fee,
                visit_status=VisitStatus.upcoming,
                queue_position=token,
                estimated_time=format_estimated_time(estimate_wait_minutes(token, average)),
                created_at=created_at,
                updated_at=created_at,
                **{field: booking.get(field) for field in BOOKING_FIELDS},
            )
            session.add(visit)
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning("Token race lost for %s (attempt %d/%d)", day, attempt, TOKEN_RETRY_LIMIT)
            continue
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Storage failure while booking a visit")
            raise StorageError("Could not book the visit, please try again") from exc

        session.refresh(visit)
        logger.info("Booked %s (token %d) for %s", visit.uid, visit.token_number, day)
        _after_visit_change(session, visit, events.VISIT_CREATED)
        return visit

    raise TokenConflictError("Could not assign a queue token, please try booking again")


# ===== READS =====

def get_visit(session: Session, visit_id: str) -> Visit:
    visit = session.get(Visit, visit_id)
    if visit is None:
        raise VisitNotFoundError(visit_id)
    return visit


def get_visit_by_uid(session: Session, uid: str, day: Optional[date] = None) -> Visit:
    """Exact uid match.  Without ``day`` the most recent booking with that uid wins."""
    uid = (uid or "").strip().upper()
    statement = select(Visit).where(Visit.uid == uid)
    if day is not None:
        statement = statement.where(Visit.visit_date == day)
    visit = session.exec(statement.order_by(col(Visit.created_at).desc())).first()
    if visit is None:
        raise VisitNotFoundError(uid)
    return visit


def search_visits(
    session: Session,
    term: Optional[str] = None,
    status: Optional[VisitStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
) -> List[Visit]:
    """Case-insensitive substring search over name, uid and phone."""
    statement = select(Visit)
    term = _clean(term)
    if term:
        statement = statement.where(_matches_term(term))
    if status is not None:
        statement = statement.where(Visit.visit_status == VisitStatus(status))
    if start_date:
        statement = statement.where(Visit.visit_date >= start_date)
    if end_date:
        statement = statement.where(Visit.visit_date <= end_date)
    statement = statement.order_by(col(Visit.created_at).desc()).limit(limit)
    return list(session.exec(statement).all())


def list_queue(
    session: Session,
    day: Optional[date] = None,
    status: Optional[VisitStatus] = None,
    term: Optional[str] = None,
) -> List[Visit]:
    """The queue board: one day's visits in token order."""
    day = day or clinic_today()
    statement = select(Visit).where(Visit.visit_date == day)
    if status is not None:
        statement = statement.where(Visit.visit_status == VisitStatus(status))
    term = _clean(term)
    if term:
        statement = statement.where(_matches_term(term))
    return list(session.exec(statement.order_by(col(Visit.token_number))).all())


def patients_ahead(session: Session, visit: Visit) -> int:
    if VisitStatus(visit.visit_status) not in WAITING_STATUSES:
        return 0
    return session.exec(
        select(func.count())
        .select_from(Visit)
        .where(
            Visit.visit_date == visit.visit_date,
            col(Visit.visit_status).in_(list(WAITING_STATUSES)),
            Visit.token_number < visit.token_number,
        )
    ).one()


def track_visit(session: Session, uid: str) -> Dict[str, Any]:
    visit = get_visit_by_uid(session, uid)
    return {
        "visit": visit,
        "patients_ahead": patients_ahead(session, visit),
        "queue_summary": get_queue_summary(session, visit.visit_date),
    }


def patient_history(session: Session, visit: Visit) -> List[Visit]:
    """Other visits by the same patient: same name, and same phone when known."""
    statement = select(Visit).where(Visit.name == visit.name, Visit.id != visit.id)
    if visit.phone:
        statement = statement.where(Visit.phone == visit.phone)
    return list(session.exec(statement.order_by(col(Visit.created_at).desc())).all())


# ===== STATUS & PAYMENT =====

def change_visit_status(
    session: Session,
    visit_id: str,
    new_status: VisitStatus,
    confirm: bool = False,
    now: Optional[datetime] = None,
) -> Visit:
    """Move a visit along its lifecycle and stamp the matching timestamps.

    Out-of-order moves raise ``InvalidTransitionError``; cancelling needs
    ``confirm=True``.
    """
    visit = get_visit(session, visit_id)
    try:
        new_status = VisitStatus(new_status)
    except ValueError:
        raise InvalidVisitError(f"Unknown visit status: {new_status}") from None
    current = VisitStatus(visit.visit_status)
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current.value, new_status.value)
    if new_status == VisitStatus.cancelled and not confirm:
        raise ConfirmationRequiredError("Cancelling a visit must be confirmed")

    stamp = now or utcnow()
    visit.visit_status = new_status
    for field in STATUS_TIMESTAMPS[new_status]:
        setattr(visit, field, stamp)
    if new_status == VisitStatus.in_consultation:
        waited_since = visit.arrived_at or visit.created_at
        visit.actual_wait_time = max(0, int((stamp - waited_since).total_seconds() // 60))
    visit.updated_at = stamp
    session.add(visit)
    _commit(session, "update the visit status")
    session.refresh(visit)

    logger.info("Visit %s: %s -> %s", visit.uid, current.value, new_status.value)
    _after_visit_change(session, visit, events.VISIT_UPDATED)
    return visit


def set_payment_status(
    session: Session,
    visit_id: str,
    status: PaymentStatus,
    payment_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Visit:
    """Record a payment state.  The visit status is left alone."""
    visit = get_visit(session, visit_id)
    try:
        status = PaymentStatus(status)
    except ValueError:
        raise InvalidVisitError(f"Unknown payment status: {status}") from None

    visit.payment_status = status
    if status == PaymentStatus.paid:
        visit.payment_id = _clean(payment_id) or visit.payment_id or new_payment_id()
    visit.updated_at = now or utcnow()
    session.add(visit)
    _commit(session, "update the payment")
    session.refresh(visit)

    logger.info("Visit %s payment -> %s", visit.uid, status.value)
    _after_visit_change(session, visit, events.VISIT_UPDATED)
    return visit


# ===== CLINICAL RECORD =====

def update_visit_notes(session: Session, visit_id: str, changes: Dict[str, Any]) -> Visit:
    visit = get_visit(session, visit_id)
    unknown = set(changes) - NOTE_FIELDS
    if unknown:
        raise InvalidVisitError(f"Fields cannot be edited here: {', '.join(sorted(unknown))}")
    rating = changes.get("doctor_rating")
    if rating is not None and not 1 <= rating <= 5:
        raise InvalidVisitError("Rating must be between 1 and 5")

    for key, value in changes.items():
        setattr(visit, key, value)
    visit.updated_at = utcnow()
    session.add(visit)
    _commit(session, "save the notes")
    session.refresh(visit)
    _after_visit_change(session, visit, events.VISIT_UPDATED)
    return visit


def prescription_download_path(prescription_id: str) -> str:
    return f"/api/prescriptions/{prescription_id}/download"


def create_prescription(
    session: Session, visit_id: str, data: Dict[str, Any], now: Optional[datetime] = None
) -> Prescription:
    """Attach a new prescription to a visit; an earlier one becomes inactive."""
    visit = get_visit(session, visit_id)
    instructions = _clean(data.get("instructions"))
    if not instructions:
        raise InvalidVisitError("Prescription text is required")
    settings = get_settings(session)
    stamp = now or utcnow()

    previous = session.exec(
        select(Prescription).where(Prescription.visit_id == visit.id, Prescription.is_active == True)  # noqa: E712
    ).all()
    for old in previous:
        old.is_active = False
        old.updated_at = stamp
        session.add(old)

    prescription = Prescription(
        visit_id=visit.id,
        patient_name=visit.name,
        patient_uid=visit.uid,
        doctor_name=settings.doctor_name,
        prescription_date=local_date(stamp),
        medications=[m.strip() for m in data.get("medications") or [] if m and m.strip()],
        instructions=instructions,
        file_url=data.get("file_url"),
        file_name=data.get("file_name"),
        file_size=data.get("file_size"),
        file_type=data.get("file_type"),
        created_at=stamp,
        updated_at=stamp,
    )
    session.add(prescription)

    visit.prescription_id = prescription.id
    visit.prescription_url = prescription.file_url or prescription_download_path(prescription.id)
    visit.prescription_notes = instructions
    visit.updated_at = stamp
    session.add(visit)
    _commit(session, "save the prescription")
    session.refresh(prescription)
    session.refresh(visit)

    logger.info("Prescription %s issued for %s", prescription.id, visit.uid)
    _after_visit_change(session, visit, events.VISIT_UPDATED, prescription)
    return prescription


def get_prescription(session: Session, prescription_id: str) -> Prescription:
    prescription = session.get(Prescription, prescription_id)
    if prescription is None:
        raise PrescriptionNotFoundError(prescription_id)
    return prescription


def render_prescription(session: Session, prescription: Prescription) -> str:
    settings = get_settings(session)
    lines = [
        settings.clinic_name,
        settings.clinic_address,
        "",
        "PRESCRIPTION",
        "",
        f"Patient: {prescription.patient_name}",
        f"UID: {prescription.patient_uid}",
        f"Date: {prescription.prescription_date.isoformat()}",
        "",
    ]
    if prescription.medications:
        lines.append("Medications:")
        lines.extend(f"  - {item}" for item in prescription.medications)
        lines.append("")
    lines.extend(["Instructions:", prescription.instructions or "", ""])
    lines.append(f"Doctor: {prescription.doctor_name}")
    if settings.doctor_qualifications:
        lines.append(settings.doctor_qualifications)
    return "\n".join(lines) + "\n"


def delete_visit(session: Session, visit_id: str) -> None:
    """Hard delete, for correcting erroneous bookings.  Prescriptions go with it."""
    visit = get_visit(session, visit_id)
    data = events.visit_event_data(visit)
    day = visit.visit_date
    for prescription in session.exec(
        select(Prescription).where(Prescription.visit_id == visit.id)
    ).all():
        session.delete(prescription)
    session.flush()
    session.delete(visit)
    _commit(session, "delete the visit")

    logger.info("Deleted visit %s (%s)", data["uid"], day)
    refresh_queue_summary(session, day)
    events.publish(events.VISIT_DELETED, data)


# ===== PAYMENTS REPORT =====

def payment_report(
    session: Session,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[PaymentStatus] = None,
) -> Dict[str, Any]:
    statement = select(Visit)
    if start_date:
        statement = statement.where(Visit.visit_date >= start_date)
    if end_date:
        statement = statement.where(Visit.visit_date <= end_date)
    if status is not None:
        statement = statement.where(Visit.payment_status == PaymentStatus(status))
    visits = list(session.exec(statement.order_by(col(Visit.created_at).desc())).all())

    def count(predicate) -> int:
        return sum(1 for v in visits if predicate(v))

    revenue = sum(
        v.payment_amount or 0.0 for v in visits if v.payment_status == PaymentStatus.paid
    )
    return {
        "total_revenue": round(revenue, 2),
        "paid_count": count(lambda v: v.payment_status == PaymentStatus.paid),
        "pending_count": count(lambda v: v.payment_status == PaymentStatus.pending),
        "refunded_count": count(lambda v: v.payment_status == PaymentStatus.refunded),
        "online_count": count(lambda v: v.payment_method == PaymentMethod.online),
        "clinic_count": count(lambda v: v.payment_method == PaymentMethod.clinic),
        "visits": visits,
    }


# ===== QR CHECK-IN =====

def check_in_from_scan(session: Session, scanned: str, check_in: bool = True) -> Visit:
    payload = decode_qr_payload(scanned)
    if payload is None:
        raise InvalidVisitError("QR code does not contain a visit")
    if payload.visit_id:
        visit = get_visit(session, payload.visit_id)
    else:
        visit = get_visit_by_uid(session, payload.uid, day=clinic_today())

    if check_in and VisitStatus(visit.visit_status) == VisitStatus.upcoming:
        visit = change_visit_status(session, visit.id, VisitStatus.arrived)
    return visit
