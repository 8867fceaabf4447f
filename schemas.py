"""Pydantic schemas for requests.

Responses are the SQLModel rows themselves or plain dicts built by the service
layer; only request bodies are declared here.
"""
from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from models import Gender, PaymentMethod, PaymentStatus


class BookingRequest(BaseModel):
    name: str
    payment_method: PaymentMethod
    age: Optional[int] = Field(default=None, ge=0, le=150)
    phone: Optional[str] = None
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


class ActionRequest(BaseModel):
    action: str
    visit_id: str
    confirm: bool = False


class PaymentRequest(BaseModel):
    visit_id: str
    payment_status: PaymentStatus
    payment_id: Optional[str] = None


class VisitNotesUpdate(BaseModel):
    notes: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    follow_up_date: Optional[date] = None
    follow_up_instructions: Optional[str] = None
    doctor_rating: Optional[int] = Field(default=None, ge=1, le=5)
    feedback: Optional[str] = None


class PrescriptionCreate(BaseModel):
    instructions: str
    medications: List[str] = Field(default_factory=list)
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)
    file_type: Optional[str] = None


class ScanRequest(BaseModel):
    payload: str
    check_in: bool = True


class SettingsUpdate(BaseModel):
    clinic_name: Optional[str] = None
    clinic_address: Optional[str] = None
    clinic_phone: Optional[str] = None
    clinic_email: Optional[str] = None
    clinic_logo_url: Optional[str] = None
    website_url: Optional[str] = None
    doctor_name: Optional[str] = None
    doctor_qualifications: Optional[str] = None
    doctor_specialization: Optional[str] = None
    doctor_photo_url: Optional[str] = None
    morning_shift: Optional[str] = None
    evening_shift: Optional[str] = None
    consultation_fee: Optional[float] = Field(default=None, ge=0)
    average_consultation_time: Optional[int] = Field(default=None, gt=0)
    online_payment_enabled: Optional[bool] = None
    clinic_payment_enabled: Optional[bool] = None
    max_daily_appointments: Optional[int] = Field(default=None, gt=0)
    emergency_contact: Optional[str] = None
    social_media: Optional[Dict[str, str]] = None
    operating_days: Optional[List[str]] = None
    holiday_dates: Optional[List[date]] = None
    admin_passcode: Optional[str] = Field(default=None, min_length=4)
