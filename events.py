"""Change notifications.

After every successful mutation the service layer calls :func:`publish`.
Messages go to in-process subscribers (the SSE endpoint registers one per
open stream) and, when ``REDIS_URL`` is configured, to the ``clinic:updates``
channel so that other processes can fan them out too.  Viewers re-fetch what
they show on each message; nothing here is patched incrementally.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import redis

from config import REDIS_URL, utcnow

logger = logging.getLogger(__name__)

CHANNEL = "clinic:updates"

VISIT_CREATED = "visit_created"
VISIT_UPDATED = "visit_updated"
VISIT_DELETED = "visit_deleted"
SUMMARY_UPDATED = "summary_updated"

Subscriber = Callable[[Dict[str, Any]], None]

_subscribers: List[Subscriber] = []
_lock = threading.Lock()

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get the Redis client if one is configured and reachable."""
    global _redis_client
    if not REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
        except redis.RedisError as exc:
            logger.warning("Redis connection failed: %s", exc)
            return None
        _redis_client = client

    return _redis_client


def subscribe(callback: Subscriber) -> Callable[[], None]:
    """Register ``callback`` for every message; returns an unsubscribe function."""
    with _lock:
        _subscribers.append(callback)

    def unsubscribe() -> None:
        with _lock:
            if callback in _subscribers:
                _subscribers.remove(callback)

    return unsubscribe


def build_message(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": event_type, "data": data, "timestamp": utcnow().isoformat()}


def publish(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Deliver a change message.  Delivery failures are logged, never raised."""
    message = build_message(event_type, data)

    with _lock:
        listeners = list(_subscribers)
    for listener in listeners:
        try:
            listener(message)
        except Exception:
            logger.exception("Subscriber failed on %s", event_type)

    redis_client = get_redis()
    if redis_client is not None:
        try:
            redis_client.publish(CHANNEL, json.dumps(message, default=str))
        except redis.RedisError as exc:
            logger.error("Redis publish error: %s", exc)

    return message


def visit_event_data(visit) -> Dict[str, Any]:
    """Identifiers and statuses only; patient details stay out of the feed."""
    return {
        "id": visit.id,
        "uid": visit.uid,
        "token_number": visit.token_number,
        "visit_date": visit.visit_date.isoformat(),
        "visit_status": _value(visit.visit_status),
        "payment_status": _value(visit.payment_status),
    }


def _value(field: Any) -> Any:
    return getattr(field, "value", field)
