from datetime import date, timedelta

import pytest
from sqlmodel import select

import services
from clinic_settings import update_settings
from errors import TokenConflictError
from models import PaymentMethod, TokenCounter, Visit
from tests.conftest import MORNING
from tokens import estimate_wait_minutes, format_estimated_time, format_uid, reserve_token


def test_format_uid_pads_to_three_digits():
    assert format_uid(1) == "XC-001"
    assert format_uid(42) == "XC-042"
    assert format_uid(1234) == "XC-1234"
    assert format_uid(7, clinic_code="AB") == "AB-007"


def test_wait_estimate():
    assert estimate_wait_minutes(3, 15) == 45
    assert format_estimated_time(45) == "45 minutes"


def test_tokens_are_sequential(book):
    visits = [book(f"Patient {i}", minutes=i) for i in range(5)]
    assert [v.token_number for v in visits] == [1, 2, 3, 4, 5]
    assert [v.uid for v in visits] == ["XC-001", "XC-002", "XC-003", "XC-004", "XC-005"]
    assert all(v.visit_date == date(2026, 3, 2) for v in visits)


def test_third_booking_of_the_day(book):
    book("First")
    book("Second", minutes=1)
    asha = book("Asha", minutes=2, age=34, phone="555-0101")

    assert asha.token_number == 3
    assert asha.uid == "XC-003"
    assert asha.queue_position == 3
    assert asha.estimated_time == "45 minutes"
    assert asha.visit_status == "upcoming"
    assert asha.payment_status == "pending"
    assert asha.payment_amount == 500.0


def test_tokens_restart_each_day(session, book):
    book("Monday one")
    book("Monday two", minutes=1)
    tuesday = services.create_visit(
        session, {"name": "Tuesday", "payment_method": "online"}, now=MORNING + timedelta(days=1)
    )
    assert tuesday.token_number == 1
    assert tuesday.uid == "XC-001"
    assert tuesday.visit_date == date(2026, 3, 3)


def test_counter_catches_up_with_rows_written_directly(session, book):
    book("Counted")
    session.add(
        Visit(
            uid="XC-009",
            token_number=9,
            visit_date=date(2026, 3, 2),
            name="Imported",
            payment_method=PaymentMethod.clinic,
            queue_position=9,
            created_at=MORNING,
        )
    )
    session.commit()

    assert book("Next", minutes=5).token_number == 10
    counter = session.get(TokenCounter, date(2026, 3, 2))
    assert counter.last_token == 10


def test_reserve_token_bumps_counter(session):
    day = date(2026, 3, 2)
    assert reserve_token(session, day) == 1
    assert reserve_token(session, day) == 2
    session.commit()
    assert session.get(TokenCounter, day).last_token == 2


def test_average_time_change_applies_to_new_bookings(session, book):
    update_settings(session, {"average_consultation_time": 10})
    book("One")
    second = book("Two", minutes=1)
    assert second.estimated_time == "20 minutes"


def test_lost_token_race_is_retried(session, book, monkeypatch):
    book("Winner")
    real_reserve = services.reserve_token
    calls = []

    def flaky(session, day):
        calls.append(day)
        if len(calls) == 1:
            return 1  # already taken
        return real_reserve(session, day)

    monkeypatch.setattr(services, "reserve_token", flaky)
    visit = book("Retried", minutes=1)

    assert len(calls) == 2
    assert visit.token_number == 2
    assert len(session.exec(select(Visit)).all()) == 2


def test_token_conflict_after_retries(session, book, monkeypatch):
    book("Winner")
    monkeypatch.setattr(services, "reserve_token", lambda session, day: 1)

    with pytest.raises(TokenConflictError):
        book("Loser", minutes=1)
    assert len(session.exec(select(Visit)).all()) == 1


def test_uid_code_is_upper_case(session, book):
    assert format_uid(5, clinic_code="xc") == "XC-005"
    visit = book("Asha")
    assert services.get_visit_by_uid(session, visit.uid.lower()).id == visit.id
