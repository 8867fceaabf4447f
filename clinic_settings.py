"""Access to the singleton clinic settings row."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from config import utcnow
from errors import InvalidVisitError, StorageError
from models import ClinicSettings

logger = logging.getLogger(__name__)

SETTINGS_ID = 1

# Never returned by the public settings view.
PRIVATE_FIELDS = {"admin_passcode"}


def ensure_settings(session: Session) -> ClinicSettings:
    """Return the settings row, inserting the defaults if it is missing."""
    settings = session.get(ClinicSettings, SETTINGS_ID)
    if settings is None:
        settings = ClinicSettings(id=SETTINGS_ID)
        session.add(settings)
        session.commit()
        session.refresh(settings)
        logger.info("Seeded default clinic settings")
    return settings


def get_settings(session: Session) -> ClinicSettings:
    settings = session.get(ClinicSettings, SETTINGS_ID)
    if settings is None:
        # Deployments that were seeded by hand may not use id 1.
        settings = session.exec(select(ClinicSettings)).first()
    if settings is None:
        settings = ensure_settings(session)
    return settings


def public_settings(settings: ClinicSettings) -> Dict[str, Any]:
    return settings.model_dump(exclude=PRIVATE_FIELDS)


def update_settings(session: Session, changes: Dict[str, Any]) -> ClinicSettings:
    """Apply a partial update coming from the admin settings form."""
    settings = get_settings(session)
    unknown = set(changes) - set(ClinicSettings.model_fields) - {"id"}
    if unknown:
        raise InvalidVisitError(f"Unknown settings fields: {', '.join(sorted(unknown))}")
    columns = ClinicSettings.__table__.columns
    required = sorted(key for key, value in changes.items() if value is None and not columns[key].nullable)
    if required:
        raise InvalidVisitError(f"Settings fields cannot be empty: {', '.join(required)}")
    if "consultation_fee" in changes and changes["consultation_fee"] is not None:
        if changes["consultation_fee"] < 0:
            raise InvalidVisitError("Consultation fee cannot be negative")
    if "average_consultation_time" in changes and changes["average_consultation_time"] is not None:
        if changes["average_consultation_time"] <= 0:
            raise InvalidVisitError("Average consultation time must be positive")

    for key, value in changes.items():
        if key == "id":
            continue
        setattr(settings, key, value)
    settings.updated_at = utcnow()
    session.add(settings)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Failed to save clinic settings")
        raise StorageError("Could not save clinic settings") from exc
    session.refresh(settings)
    logger.info("Clinic settings updated: %s", ", ".join(sorted(changes)))
    return settings


def set_admin_pass(session: Session, passcode: str) -> None:
    settings = get_settings(session)
    settings.admin_passcode = passcode
    session.add(settings)
    session.commit()


def check_admin_passcode(session: Session, passcode: str) -> bool:
    settings = get_settings(session)
    return hmac.compare_digest(passcode.encode(), settings.admin_passcode.encode())
