"""Chat WebSocket endpoint — JSON event envelopes, heartbeat and Redis room fan-out.

Client → server: ``{"type": <event>, "data": {...}}``; every event except
``pong`` is handed to the relay as its own task.  Server → client uses the
same envelope.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

import redis.asyncio as aioredis
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.exceptions import RedisError
from starlette.websockets import WebSocketState

from auth import authenticate_token
from config import settings
from services.connections import Connection
from services.relay import MessageRelay

logger = logging.getLogger(__name__)

router = APIRouter()


def _authenticate(relay: MessageRelay, token: str) -> int | None:
    """Validate token against the APIKey table. Returns the user id."""
    with relay.session_factory() as db:
        user = authenticate_token(db, token)
        return user.id if user else None


@router.websocket("/ws/chat/")
async def chat_ws(websocket: WebSocket, token: str = ""):
    relay: MessageRelay = websocket.app.state.relay

    user_id = _authenticate(relay, token) if token else None
    if user_id is None and (token or not settings.ALLOW_GUEST_CONNECTIONS):
        await websocket.close(code=1008, reason="Invalid or missing token")
        return

    await websocket.accept()

    send_lock = asyncio.Lock()
    last_activity = time.monotonic()
    waiting_pong = False
    pong_deadline = 0.0
    closed = False

    async def _send(event: str, data: dict) -> None:
        nonlocal last_activity
        if closed or websocket.client_state != WebSocketState.CONNECTED:
            return
        async with send_lock:
            await websocket.send_json({"type": event, "data": data})
        last_activity = time.monotonic()

    connection = relay.registry.add(Connection(send=_send, user_id=user_id))
    event_tasks: set[asyncio.Task] = set()

    async def _reader() -> None:
        """Read client events; each one runs as its own task."""
        nonlocal waiting_pong, last_activity
        while True:
            message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            last_activity = time.monotonic()

            raw = message.get("text")
            if not raw:
                continue

            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                msg = None
            if not isinstance(msg, dict) or not msg.get("type"):
                await _send("error", {"message": "Malformed event", "code": "invalid_request"})
                continue

            msg_type = msg["type"]
            if msg_type == "pong":
                waiting_pong = False
                continue

            task = asyncio.create_task(
                relay.handle_event(connection, msg_type, msg.get("data")),
                name=f"ws-event-{msg_type}",
            )
            event_tasks.add(task)
            task.add_done_callback(event_tasks.discard)

    async def _redis_listener() -> None:
        """Follow the connection's rooms on Redis and forward other workers' events."""
        r = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        pubsub = r.pubsub()
        subscriptions: set[str] = set()
        try:
            while True:
                wanted = set(connection.rooms)
                for channel in wanted - subscriptions:
                    await pubsub.subscribe(channel)
                    subscriptions.add(channel)
                for channel in subscriptions - wanted:
                    await pubsub.unsubscribe(channel)
                    subscriptions.discard(channel)

                if not subscriptions:
                    await asyncio.sleep(0.5)
                    continue
                try:
                    msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.5)
                except RedisError:
                    logger.warning("Redis pub/sub get_message failed, retrying", exc_info=True)
                    await asyncio.sleep(1)
                    continue
                if msg and msg["type"] == "message":
                    try:
                        payload = json.loads(msg["data"])
                    except json.JSONDecodeError:
                        logger.warning("Dropping malformed event on %s", msg.get("channel"))
                        continue
                    if payload.get("origin") != relay.worker_id:
                        await _send(payload.get("type", ""), payload.get("data") or {})
                await asyncio.sleep(0.05)
        finally:
            try:
                await pubsub.aclose()
                await r.aclose()
            except RedisError:
                logger.debug("Redis cleanup failed", exc_info=True)

    async def _heartbeat() -> None:
        """Send ping after HEARTBEAT_INTERVAL idle; close if no pong within PONG_TIMEOUT."""
        nonlocal waiting_pong, pong_deadline
        while True:
            await asyncio.sleep(1)
            now = time.monotonic()

            if waiting_pong and now > pong_deadline:
                logger.debug("Chat WS pong timeout, closing")
                return

            if not waiting_pong and (now - last_activity) >= settings.HEARTBEAT_INTERVAL:
                await _send("ping", {})
                waiting_pong = True
                pong_deadline = now + settings.PONG_TIMEOUT

    tasks: list[asyncio.Task] = []
    try:
        await _send("connected", {
            "connectionId": connection.id,
            "userId": user_id,
            "guest": connection.is_guest,
        })
        tasks = [
            asyncio.create_task(_reader(), name="ws-reader"),
            asyncio.create_task(_heartbeat(), name="ws-heartbeat"),
        ]
        if relay.publish is not None:
            tasks.append(asyncio.create_task(_redis_listener(), name="ws-redis"))
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for t in done:
            exc = t.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Chat WS task %s failed: %s", t.get_name(), exc)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Chat WS unexpected error")
    finally:
        closed = True
        # Cancelling in-flight events also cancels any run being polled
        for t in [*tasks, *event_tasks]:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, *event_tasks, return_exceptions=True)
        await relay.release(connection)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
