"""Publish chat events to Redis so every socket watching a conversation sees them."""

from __future__ import annotations

import json
import logging
import time
from datetime import date, datetime
from decimal import Decimal

import redis as redis_lib

from config import settings

logger = logging.getLogger(__name__)


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def _json_default(obj: object) -> str | float:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def broadcast(channel: str, event_type: str, data: dict | None = None) -> None:
    """Publish ``{type, channel, timestamp, data}`` on *channel*.

    Blocking; call it from a worker thread when inside the event loop.
    """
    envelope: dict = {"type": event_type, "channel": channel, "timestamp": time.time()}
    if data is not None:
        envelope["data"] = data
    r = redis_lib.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        r.publish(channel, json.dumps(envelope, default=_json_default))
    finally:
        r.close()


def publish_conversation_event(conversation_id: str, event: dict, origin: str) -> bool:
    """Fan *event* out to the conversation's channel, tagged with the sending socket.

    Best effort: a Redis failure is logged and reported as False.
    """
    try:
        broadcast(conversation_channel(conversation_id), event["type"], {**event, "origin": origin})
    except Exception:
        logger.warning("Failed to broadcast %s for conversation %s", event["type"], conversation_id, exc_info=True)
        return False
    return True
