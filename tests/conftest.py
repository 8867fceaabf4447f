import os

# Configure before any project module reads the environment.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("REDIS_URL", None)
os.environ["ADMIN_PASS"] = "letmein"
os.environ["CLINIC_TIMEZONE"] = "UTC"
os.environ["CLINIC_CODE"] = "XC"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

import events
import services
from database import engine, init_db
from main import app

ADMIN = {"passcode": "letmein"}
MORNING = datetime(2026, 3, 2, 9, 0)


@pytest.fixture(autouse=True)
def fresh_db():
    SQLModel.metadata.drop_all(engine)
    init_db(engine)
    yield


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def received():
    messages = []
    unsubscribe = events.subscribe(messages.append)
    yield messages
    unsubscribe()


@pytest.fixture
def book(session):
    """Book a visit at ``MORNING`` plus ``minutes``."""

    def _book(name="Patient", minutes=0, payment_method="clinic", **extra):
        booking = {"name": name, "payment_method": payment_method, **extra}
        return services.create_visit(session, booking, now=MORNING + timedelta(minutes=minutes))

    return _book
