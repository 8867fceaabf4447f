"""Token assignment and wait estimates.

Tokens restart at 1 every clinic day.  The per-day counter row is locked while
it is bumped, so two bookings racing for the same day serialise on it instead
of both reading the same maximum.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import func
from sqlmodel import Session, select

from config import CLINIC_CODE, DEFAULT_AVERAGE_CONSULTATION_TIME
from models import TokenCounter, Visit


def format_uid(token_number: int, clinic_code: str = CLINIC_CODE) -> str:
    """``7`` -> ``XC-007``.  Tokens past 999 keep all their digits.

    The code is always upper case, as uid lookups normalise to upper case.
    """
    return f"{clinic_code.upper()}-{token_number:03d}"


def estimate_wait_minutes(position: int, average_consultation_time: int) -> int:
    return position * (average_consultation_time or DEFAULT_AVERAGE_CONSULTATION_TIME)


def format_estimated_time(minutes: int) -> str:
    return f"{minutes} minutes"


def max_token_for_day(session: Session, day: date) -> int:
    current = session.exec(
        select(func.max(Visit.token_number)).where(Visit.visit_date == day)
    ).one()
    return current or 0


def reserve_token(session: Session, day: date) -> int:
    """Claim the next token for ``day`` inside the caller's transaction.

    The caller commits (or rolls back) together with the visit insert.  A
    concurrent first booking of the day can still collide on the counter's
    primary key; that surfaces as an ``IntegrityError`` on flush and the caller
    retries.
    """
    counter = session.get(TokenCounter, day, with_for_update=True)
    if counter is None:
        counter = TokenCounter(day=day, last_token=0)
    # Rows written without going through the counter still push it forward.
    next_token = max(counter.last_token, max_token_for_day(session, day)) + 1
    counter.last_token = next_token
    session.add(counter)
    session.flush()
    return next_token
