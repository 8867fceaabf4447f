"""Database models for the clinic front desk.

We use SQLModel to define the schema.  ``visits`` is the single shared source
of truth: one row per booking, carrying queue, payment and clinical state.
``clinic_settings`` is a singleton row of clinic-level configuration.
``queue_summary`` is a per-day cache derived from visits and written only by
the aggregator.  ``token_counters`` holds the last token handed out per day so
that token assignment is a single locked increment.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from config import DEFAULT_AVERAGE_CONSULTATION_TIME, DEFAULT_CONSULTATION_FEE, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class VisitStatus(str, Enum):
    """Lifecycle of a visit."""

    upcoming = "upcoming"
    arrived = "arrived"
    in_consultation = "in_consultation"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class PaymentMethod(str, Enum):
    online = "online"
    clinic = "clinic"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    refunded = "refunded"


class Gender(str, Enum):
    male = "male"
    female = "female"
    other = "other"


class Visit(SQLModel, table=True):
    __tablename__ = "visits"
    __table_args__ = (
        UniqueConstraint("visit_date", "token_number", name="uq_visits_day_token"),
        UniqueConstraint("visit_date", "uid", name="uq_visits_day_uid"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    uid: str = Field(index=True)
    token_number: int = Field(index=True)
    visit_date: date = Field(index=True)

    name: str = Field(index=True)
    age: Optional[int] = None
    phone: Optional[str] = Field(default=None, index=True)
    email: Optional[str] = None
    gender: Optional[Gender] = None
    address: Optional[str] = None
    reason: Optional[str] = None
    symptoms: Optional[str] = None
    medical_history: Optional[str] = None
    allergies: Optional[str] = None
    current_medications: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None

    payment_method: PaymentMethod
    payment_status: PaymentStatus = Field(default=PaymentStatus.pending)
    payment_id: Optional[str] = None
    payment_amount: float = Field(default=DEFAULT_CONSULTATION_FEE)

    visit_status: VisitStatus = Field(default=VisitStatus.upcoming, index=True)
    queue_position: int
    estimated_time: Optional[str] = None
    actual_wait_time: Optional[int] = None  # minutes
    consultation_start_time: Optional[datetime] = None
    consultation_end_time: Optional[datetime] = None

    notes: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    follow_up_date: Optional[date] = None
    follow_up_instructions: Optional[str] = None
    prescription_id: Optional[str] = None
    prescription_url: Optional[str] = None
    prescription_notes: Optional[str] = None
    doctor_rating: Optional[int] = None
    feedback: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, index=True)
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Prescription(SQLModel, table=True):
    __tablename__ = "prescriptions"

    id: str = Field(default_factory=_new_id, primary_key=True)
    visit_id: str = Field(foreign_key="visits.id", ondelete="CASCADE", index=True)
    patient_name: str
    patient_uid: str = Field(index=True)
    doctor_name: str
    prescription_date: date
    medications: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    instructions: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class QueueSummary(SQLModel, table=True):
    __tablename__ = "queue_summary"

    id: Optional[int] = Field(default=None, primary_key=True)
    day: date = Field(unique=True, index=True)
    total_appointments: int = 0
    total_waiting: int = 0
    total_completed: int = 0
    total_cancelled: int = 0
    current_token: Optional[int] = None
    last_completed_token: Optional[int] = None
    estimated_wait_time: int = 0  # minutes
    average_consultation_time: int = DEFAULT_AVERAGE_CONSULTATION_TIME
    total_revenue: float = 0.0
    updated_at: datetime = Field(default_factory=utcnow)


class TokenCounter(SQLModel, table=True):
    __tablename__ = "token_counters"

    day: date = Field(primary_key=True)
    last_token: int = 0


DEFAULT_OPERATING_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class ClinicSettings(SQLModel, table=True):
    __tablename__ = "clinic_settings"

    id: Optional[int] = Field(default=1, primary_key=True)
    clinic_name: str = Field(default="X Clinic")
    clinic_address: str = Field(default="123 Healthcare Street, Medical District")
    clinic_phone: Optional[str] = None
    clinic_email: Optional[str] = None
    clinic_logo_url: Optional[str] = None
    website_url: Optional[str] = None
    doctor_name: str = Field(default="Dr. Sarah Johnson")
    doctor_qualifications: str = Field(default="MBBS, MD (Internal Medicine)")
    doctor_specialization: Optional[str] = Field(default="General Medicine")
    doctor_photo_url: Optional[str] = None
    morning_shift: str = Field(default="9:00 AM - 1:00 PM")
    evening_shift: str = Field(default="5:00 PM - 9:00 PM")
    consultation_fee: float = Field(default=DEFAULT_CONSULTATION_FEE)
    average_consultation_time: int = Field(default=DEFAULT_AVERAGE_CONSULTATION_TIME)
    online_payment_enabled: bool = Field(default=True)
    clinic_payment_enabled: bool = Field(default=True)
    max_daily_appointments: Optional[int] = Field(default=50)
    emergency_contact: Optional[str] = None
    social_media: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    operating_days: List[str] = Field(
        default_factory=lambda: list(DEFAULT_OPERATING_DAYS), sa_column=Column(JSON)
    )
    holiday_dates: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    admin_passcode: str = Field(default="demo")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
