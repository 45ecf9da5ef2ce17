"""Broadcast helper — publish room events to Redis channels for other workers."""

from __future__ import annotations

import json
import time
from datetime import date, datetime
from decimal import Decimal

import redis as redis_lib

from config import settings


def _json_default(obj: object) -> str | float:

    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def encode_event(channel: str, event_type: str, data: dict | None = None, origin: str | None = None) -> str:
    payload: dict = {"type": event_type, "channel": channel, "timestamp": time.time()}
    if data is not None:
        payload["data"] = data
    if origin is not None:
        payload["origin"] = origin
    return json.dumps(payload, default=_json_default)


def broadcast(channel: str, event_type: str, data: dict | None = None, origin: str | None = None) -> None:
    """Publish a JSON event to a Redis pub/sub channel.

    Sync function; async callers run it in a worker thread.  *origin*
    identifies the publishing process so it can skip its own echoes.
    """
    r = redis_lib.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        r.publish(channel, encode_event(channel, event_type, data, origin))
    finally:
        r.close()
