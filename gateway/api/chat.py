"""Chat endpoints: send a message, read/rename/delete a conversation, backend health."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from api._helpers import get_backend_router, get_orchestrator, raise_http, serialize_conversation
from auth import get_current_user
from database import get_db
from models.user import UserProfile
from schemas.chat import ConversationDetailOut, ConversationOut, ConversationUpdate, ExchangeOut, SendMessageIn
from services.errors import AllBackendsUnavailable, ExchangeError
from services.exchange import ExchangeOrchestrator, ExchangeRequest
from services.router import BackendRouter
from services.transcript import TranscriptStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/message/", response_model=ExchangeOut)
def send_message(
    payload: SendMessageIn,
    request: Request,
    orchestrator: ExchangeOrchestrator = Depends(get_orchestrator),
    profile: UserProfile = Depends(get_current_user),
):
    exchange_request = ExchangeRequest(
        owner_id=profile.id,
        text=payload.text,
        conversation_id=payload.conversation_id,
        backend_name=payload.backend_name,
        origin_address=request.client.host if request.client else "",
        client_descriptor=request.headers.get("user-agent", ""),
    )
    try:
        result = orchestrator.run(exchange_request)
    except AllBackendsUnavailable as exc:
        logger.error("Chat error for user %s: %s", profile.id, exc)
        raise_http(exc)
    except ExchangeError as exc:
        raise_http(exc)

    return ExchangeOut(
        conversation_id=result.conversation_id,
        reply_text=result.reply_text,
        backend_name=result.backend_used,
        token_cost=result.token_cost,
        latency_ms=result.latency_ms,
        used_fallback=result.used_fallback,
        persisted=result.persisted,
        warning=result.warning,
    )


@router.get("/conversations/{conversation_id}/", response_model=ConversationDetailOut)
def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    profile: UserProfile = Depends(get_current_user),
):
    try:
        conversation = TranscriptStore(db).get_active(profile.id, conversation_id)
    except ExchangeError as exc:
        raise_http(exc)
    return serialize_conversation(conversation, with_messages=True)


@router.patch("/conversations/{conversation_id}/", response_model=ConversationOut)
def update_conversation(
    conversation_id: str,
    payload: ConversationUpdate,
    db: Session = Depends(get_db),
    profile: UserProfile = Depends(get_current_user),
):
    try:
        conversation = TranscriptStore(db).rename(profile.id, conversation_id, payload.title)
    except ExchangeError as exc:
        raise_http(exc)
    return serialize_conversation(conversation)


@router.delete("/conversations/{conversation_id}/", status_code=204)
def delete_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    profile: UserProfile = Depends(get_current_user),
):
    try:
        TranscriptStore(db).soft_delete(profile.id, conversation_id)
    except ExchangeError as exc:
        raise_http(exc)


@router.get("/backends/health/")
def backend_health(
    backend_router: BackendRouter = Depends(get_backend_router),
    profile: UserProfile = Depends(get_current_user),
):
    return backend_router.health()
