"""Real-time chat WebSocket.

Frames are JSON objects with a ``type`` field.

Inbound:  send_message {text, conversation_id?, backend_name?}
          join_conversation {conversation_id} / leave_conversation {conversation_id}
          ping
Outbound: message_received {conversation_id, role, message, ...}
          ai_typing / ai_typing_stop {conversation_id}
          error {message, details?}
          joined / left {conversation_id}, pong

For each send_message the sender first gets its own message echoed, then
ai_typing, then the assistant message or an error, then ai_typing_stop. Every
exchange runs as its own task and is not cancelled when the socket goes away:
the transcript and audit rows are still written, the reply is just dropped.

Exchange events are also published on ``conversation:<id>`` so other sockets
that joined the conversation see them; a socket skips events it published.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from api._helpers import build_orchestrator
from auth import authenticate_token
from config import settings
from database import SessionLocal
from schemas.chat import JoinConversationIn, SendMessageIn
from services.errors import ExchangeError
from services.exchange import ExchangeRequest
from services.transcript import TranscriptStore
from ws.broadcast import conversation_channel, publish_conversation_event

logger = logging.getLogger(__name__)

router = APIRouter()

# Strong references so detached exchange tasks are not garbage collected.
_inflight: set[asyncio.Task] = set()


def _authenticate(token: str) -> int | None:
    """Return the active user id owning *token*, or None."""
    db = SessionLocal()
    try:
        user = authenticate_token(token, db)
        return user.id if user else None
    finally:
        db.close()


def _owns_conversation(user_id: int, conversation_id: str) -> bool:
    db = SessionLocal()
    try:
        TranscriptStore(db).get_active(user_id, conversation_id)
        return True
    except ExchangeError:
        return False
    finally:
        db.close()


async def _run_exchange(send, backend_router, user_id: int, frame: dict, meta: dict, connection_id: str) -> None:
    try:
        payload = SendMessageIn.model_validate(frame)
    except ValidationError as exc:
        errors = exc.errors()
        await send({"type": "error", "message": "Invalid message", "details": errors[0]["msg"] if errors else ""})
        return

    async def emit(event: dict) -> None:
        await send(event)
        await asyncio.to_thread(publish_conversation_event, event["conversation_id"], event, connection_id)

    db = SessionLocal()
    try:
        orchestrator = build_orchestrator(db, backend_router, SessionLocal)
        request = ExchangeRequest(
            owner_id=user_id,
            text=payload.text,
            conversation_id=payload.conversation_id,
            backend_name=payload.backend_name,
            origin_address=meta.get("origin_address", ""),
            client_descriptor=meta.get("client_descriptor", ""),
        )
        try:
            pending = await asyncio.to_thread(orchestrator.begin, request)
        except ExchangeError as exc:
            await send({"type": "error", "message": exc.detail})
            return

        conversation_id = pending.conversation_id
        await emit({
            "type": "message_received",
            "conversation_id": conversation_id,
            "role": "user",
            "message": pending.user_message,
        })
        await emit({"type": "ai_typing", "conversation_id": conversation_id})
        try:
            result = await asyncio.to_thread(orchestrator.complete, pending)
        except ExchangeError as exc:
            logger.error("Socket chat error for user %s: %s", user_id, exc)
            await send({"type": "error", "message": exc.detail, "details": str(exc)})
        else:
            await emit({
                "type": "message_received",
                "conversation_id": conversation_id,
                "role": "assistant",
                "message": result.assistant_message,
                "backend": result.backend_used,
                "tokens": result.token_cost,
                "latency_ms": result.latency_ms,
                "used_fallback": result.used_fallback,
                "persisted": result.persisted,
                "warning": result.warning,
            })
        finally:
            await emit({"type": "ai_typing_stop", "conversation_id": conversation_id})
    except Exception:
        logger.exception("Unexpected socket chat failure for user %s", user_id)
        await send({"type": "error", "message": "Failed to process message"})
    finally:
        db.close()


@router.websocket("/ws/chat/")
async def chat_ws(websocket: WebSocket, token: str = ""):
    user_id = await asyncio.to_thread(_authenticate, token) if token else None
    if user_id is None:
        await websocket.close(code=1008, reason="Invalid or missing token")
        return

    await websocket.accept()
    logger.info("User %s connected to chat socket", user_id)

    connection_id = str(uuid.uuid4())
    backend_router = getattr(websocket.app.state, "backend_router", None)
    meta = {
        "origin_address": websocket.client.host if websocket.client else "",
        "client_descriptor": websocket.headers.get("user-agent", ""),
    }
    r = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    pubsub = r.pubsub()
    subscriptions: set[str] = set()
    closed = False

    async def _send(data: dict) -> None:
        if closed or websocket.client_state != WebSocketState.CONNECTED:
            logger.debug("Dropping %s event, socket closed", data.get("type"))
            return
        try:
            await websocket.send_json(data)
        except Exception:
            logger.debug("Dropping %s event, send failed", data.get("type"), exc_info=True)

    async def _join(frame: dict) -> None:
        try:
            conversation_id = JoinConversationIn.model_validate(frame).conversation_id
        except ValidationError:
            await _send({"type": "error", "message": "conversation_id is required"})
            return
        if not await asyncio.to_thread(_owns_conversation, user_id, conversation_id):
            await _send({"type": "error", "message": "Conversation not found"})
            return
        channel = conversation_channel(conversation_id)
        if channel not in subscriptions:
            try:
                await pubsub.subscribe(channel)
            except Exception:
                logger.warning("Redis subscribe failed for %s", channel, exc_info=True)
                await _send({"type": "error", "message": "Live updates unavailable"})
                return
            subscriptions.add(channel)
        logger.info("User %s joined conversation %s", user_id, conversation_id)
        await _send({"type": "joined", "conversation_id": conversation_id})

    async def _leave(frame: dict) -> None:
        conversation_id = frame.get("conversation_id") or ""
        channel = conversation_channel(conversation_id)
        if channel in subscriptions:
            await pubsub.unsubscribe(channel)
            subscriptions.discard(channel)
        logger.info("User %s left conversation %s", user_id, conversation_id)
        await _send({"type": "left", "conversation_id": conversation_id})

    async def _reader() -> None:
        while True:
            message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            raw = message.get("text")
            if not raw:
                continue
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await _send({"type": "error", "message": "Malformed frame"})
                continue
            if not isinstance(frame, dict):
                continue

            frame_type = frame.get("type")
            if frame_type == "send_message":
                if backend_router is None:
                    await _send({"type": "error", "message": "Generation backends are not initialised"})
                    continue
                task = asyncio.create_task(
                    _run_exchange(_send, backend_router, user_id, frame, meta, connection_id),
                    name=f"exchange-{connection_id[:8]}",
                )
                _inflight.add(task)
                task.add_done_callback(_inflight.discard)
            elif frame_type == "join_conversation":
                await _join(frame)
            elif frame_type == "leave_conversation":
                await _leave(frame)
            elif frame_type == "ping":
                await _send({"type": "pong"})

    async def _redis_listener() -> None:
        """Forward conversation events published by other sockets."""
        while True:
            if not subscriptions:
                await asyncio.sleep(0.5)
                continue
            try:
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.5)
            except Exception:
                logger.warning("Redis pub/sub get_message failed, retrying", exc_info=True)
                await asyncio.sleep(1)
                continue
            if msg and msg["type"] == "message":
                try:
                    event = json.loads(msg["data"]).get("data") or {}
                except (json.JSONDecodeError, AttributeError):
                    logger.debug("Skipping malformed pub/sub payload")
                    continue
                if event.get("origin") != connection_id:
                    event.pop("origin", None)
                    await _send(event)
            await asyncio.sleep(0.05)

    tasks: list[asyncio.Task] = []
    try:
        tasks = [
            asyncio.create_task(_reader(), name="chat-ws-reader"),
            asyncio.create_task(_redis_listener(), name="chat-ws-redis"),
        ]
        done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
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
        logger.info("User %s disconnected from chat socket", user_id)
        for t in tasks:
            if not t.done():
                t.cancel()
        for ch in list(subscriptions):
            try:
                await pubsub.unsubscribe(ch)
            except Exception:
                logger.debug("Failed to unsubscribe %s", ch, exc_info=True)
        try:
            await pubsub.close()
            await r.close()
        except Exception:
            logger.debug("Failed to close Redis connection", exc_info=True)
