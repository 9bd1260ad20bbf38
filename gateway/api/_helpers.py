"""Shared helpers for API routers and the chat WebSocket."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal, get_db
from models.conversation import Conversation
from services.audit import AuditRecorder
from services.errors import ExchangeError
from services.exchange import ExchangeOrchestrator
from services.router import BackendRouter
from services.transcript import TranscriptStore


def get_backend_router(request: Request) -> BackendRouter:
    """FastAPI dependency: the process-wide router built at startup."""
    router = getattr(request.app.state, "backend_router", None)
    if router is None:
        raise HTTPException(status_code=503, detail="Generation backends are not initialised.")
    return router


def build_orchestrator(db: Session, router: BackendRouter, session_factory=None) -> ExchangeOrchestrator:
    return ExchangeOrchestrator(
        router,
        TranscriptStore(db, title_max_length=settings.TITLE_MAX_LENGTH),
        AuditRecorder(session_factory or SessionLocal),
        default_backend=settings.DEFAULT_BACKEND,
    )


def get_audit_session_factory():
    """FastAPI dependency: session factory for audit writes (overridden in tests)."""
    return SessionLocal


def get_orchestrator(
    db: Session = Depends(get_db),
    router: BackendRouter = Depends(get_backend_router),
    session_factory=Depends(get_audit_session_factory),
) -> ExchangeOrchestrator:
    return build_orchestrator(db, router, session_factory)


def raise_http(exc: ExchangeError) -> None:
    raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


def serialize_conversation(conversation: Conversation, *, with_messages: bool = False) -> dict:
    data = {
        "id": conversation.id,
        "title": conversation.title,
        "total_tokens": conversation.total_tokens,
        "preferred_backend": conversation.preferred_backend,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at,
    }
    if with_messages:
        data["messages"] = [
            {
                "position": m.position,
                "role": m.role,
                "content": m.content,
                "backend": m.backend,
                "tokens": m.tokens,
                "created_at": m.created_at,
            }
            for m in conversation.messages
        ]
    return data
