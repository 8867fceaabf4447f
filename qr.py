"""QR payload codec.

The confirmation QR carries a small JSON envelope.  Scanners are not always
ours, so decoding also accepts any text that contains a uid.
"""

from __future__ import annotations

import json
import re
import time
from typing import NamedTuple, Optional

from config import CLINIC_CODE


class QRPayload(NamedTuple):
    uid: str
    visit_id: str  # empty when only a uid could be recovered


def _uid_pattern(clinic_code: str) -> "re.Pattern[str]":
    return re.compile(rf"{re.escape(clinic_code)}-\d{{3,}}")


def encode_qr_payload(
    uid: str,
    visit_id: str,
    clinic_code: str = CLINIC_CODE,
    timestamp: Optional[int] = None,
) -> str:
    if timestamp is None:
        timestamp = int(time.time() * 1000)
    return json.dumps(
        {"uid": uid, "visitId": visit_id, "clinicCode": clinic_code, "timestamp": timestamp}
    )


def decode_qr_payload(text: str, clinic_code: str = CLINIC_CODE) -> Optional[QRPayload]:
    """Return the (uid, visit id) pair carried by ``text``, or None.

    A JSON envelope from another clinic, or one missing its fields, falls back
    to searching the raw text for a uid.
    """
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        uid = parsed.get("uid")
        visit_id = parsed.get("visitId")
        if uid and visit_id and parsed.get("clinicCode") == clinic_code:
            return QRPayload(uid=str(uid), visit_id=str(visit_id))

    match = _uid_pattern(clinic_code).search(text)
    if match:
        return QRPayload(uid=match.group(0), visit_id="")
    return None
