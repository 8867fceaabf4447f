"""Per-day queue summary.

The summary row is a cache: every figure is recomputed from the day's visits,
so running the recomputation again converges on the same row.  Refreshing is
best effort and never fails the mutation that triggered it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import events
from clinic_settings import get_settings
from config import DEFAULT_AVERAGE_CONSULTATION_TIME, utcnow
from models import PaymentStatus, QueueSummary, Visit, VisitStatus

logger = logging.getLogger(__name__)

WAITING_STATUSES = {VisitStatus.upcoming, VisitStatus.arrived}
CANCELLED_STATUSES = {VisitStatus.cancelled, VisitStatus.no_show}


def summarize_visits(visits: Iterable[Visit], average_consultation_time: int) -> Dict[str, Any]:
    """Aggregate one day's visits.  Pure: no I/O, no clock."""
    average = average_consultation_time or DEFAULT_AVERAGE_CONSULTATION_TIME
    total = waiting = completed = cancelled = 0
    revenue = 0.0
    in_consultation = []
    completed_tokens = []

    for visit in visits:
        total += 1
        status = VisitStatus(visit.visit_status)
        if status in WAITING_STATUSES:
            waiting += 1
        elif status == VisitStatus.completed:
            completed += 1
            completed_tokens.append(visit.token_number)
        elif status in CANCELLED_STATUSES:
            cancelled += 1
        elif status == VisitStatus.in_consultation:
            in_consultation.append(visit.token_number)

        if PaymentStatus(visit.payment_status) == PaymentStatus.paid:
            revenue += visit.payment_amount or 0.0

    return {
        "total_appointments": total,
        "total_waiting": waiting,
        "total_completed": completed,
        "total_cancelled": cancelled,
        # Normally at most one patient is with the doctor; the lowest token wins.
        "current_token": min(in_consultation) if in_consultation else None,
        "last_completed_token": max(completed_tokens) if completed_tokens else None,
        "estimated_wait_time": waiting * average,
        "average_consultation_time": average,
        "total_revenue": round(revenue, 2),
    }


def _visits_for_day(session: Session, day: date):
    return session.exec(select(Visit).where(Visit.visit_date == day)).all()


def compute_queue_summary(session: Session, day: date) -> Dict[str, Any]:
    settings = get_settings(session)
    return summarize_visits(_visits_for_day(session, day), settings.average_consultation_time)


def recompute_queue_summary(
    session: Session, day: date, now: Optional[datetime] = None
) -> QueueSummary:
    """Recompute and upsert the summary row for ``day``.  Raises on failure."""
    values = compute_queue_summary(session, day)
    stamp = now or utcnow()

    for attempt in range(2):
        summary = session.exec(select(QueueSummary).where(QueueSummary.day == day)).first()
        if summary is None:
            summary = QueueSummary(day=day)
        for key, value in values.items():
            setattr(summary, key, value)
        summary.updated_at = stamp
        session.add(summary)
        try:
            session.commit()
            break
        except IntegrityError:
            # Another writer inserted the row for this day first; update it instead.
            session.rollback()
            if attempt:
                raise
    session.refresh(summary)

    events.publish(events.SUMMARY_UPDATED, summary_event_data(summary))
    return summary


def refresh_queue_summary(session: Session, day: date) -> Optional[QueueSummary]:
    """Best-effort recomputation used after every visit mutation."""
    try:
        return recompute_queue_summary(session, day)
    except Exception:
        session.rollback()
        logger.exception("Failed to refresh queue summary for %s", day)
        return None


def get_queue_summary(session: Session, day: date) -> Dict[str, Any]:
    """The stored summary for ``day``, or a fresh computation if none exists."""
    summary = session.exec(select(QueueSummary).where(QueueSummary.day == day)).first()
    if summary is not None:
        return summary.model_dump()
    values = compute_queue_summary(session, day)
    values.update({"day": day, "updated_at": None})
    return values


def summary_event_data(summary: QueueSummary) -> Dict[str, Any]:
    data = summary.model_dump(exclude={"id"})
    data["day"] = summary.day.isoformat()
    data["updated_at"] = summary.updated_at.isoformat()
    return data
