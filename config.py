"""Runtime configuration for the clinic front desk.

Values come from environment variables.  A ``.env`` file next to the code is
loaded first when present; variables already set in the environment win.
"""

from __future__ import annotations

import os
from datetime import date, datetime, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "clinic.db")

DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_FILENAME}"
REDIS_URL = os.getenv("REDIS_URL")
ADMIN_PASS = os.getenv("ADMIN_PASS")

CLINIC_CODE = os.getenv("CLINIC_CODE", "XC").strip().upper()
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "UTC")
TOKEN_RETRY_LIMIT = int(os.getenv("TOKEN_RETRY_LIMIT", "3"))

PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS: List[str] = [
    origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
]

# Used when the settings row has no value of its own.
DEFAULT_CONSULTATION_FEE = 500.0
DEFAULT_AVERAGE_CONSULTATION_TIME = 15

_clinic_tz = ZoneInfo(CLINIC_TIMEZONE)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_date(moment: datetime) -> date:
    """Calendar date of a stored (naive UTC) timestamp in the clinic timezone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_clinic_tz).date()


def clinic_today(now: Optional[datetime] = None) -> date:
    return local_date(now or utcnow())
