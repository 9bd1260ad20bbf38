"""ExchangeOrchestrator — one user message in, one assistant reply out.

An exchange moves through Resolving → Generating → Persisting → Auditing →
Done. It is split in two calls so a transport can act between them:

    pending = orchestrator.begin(request)     # Resolving
    result = orchestrator.complete(pending)   # Generating .. Done

``run()`` does both. Resolving failures (unknown conversation, unknown
backend) raise before anything is generated and leave no audit row. Once
generation is attempted exactly one audit row is written, whatever happens
next. A transcript write failure does not fail the exchange: the caller still
gets the reply, flagged as not persisted.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from logging_config import bind_exchange
from models.conversation import ROLE_ASSISTANT, ROLE_USER, Conversation
from services.audit import AuditEntry, AuditRecorder
from services.errors import AllBackendsUnavailable, PersistenceFailure
from services.router import BackendRouter
from services.transcript import TranscriptStore

logger = logging.getLogger(__name__)


@dataclass
class ExchangeRequest:
    owner_id: int
    text: str
    conversation_id: str | None = None
    backend_name: str | None = None
    origin_address: str = ""
    client_descriptor: str = ""
    options: dict = field(default_factory=dict)


@dataclass
class PendingExchange:
    exchange_id: str
    request: ExchangeRequest
    conversation: Conversation
    backend_name: str
    is_new: bool
    accepted_at: datetime

    @property
    def conversation_id(self) -> str:
        return self.conversation.id

    @property
    def user_message(self) -> dict:
        return message_payload(ROLE_USER, self.request.text, self.accepted_at)


@dataclass
class ExchangeResult:
    exchange_id: str
    conversation_id: str
    reply_text: str
    backend_used: str
    token_cost: int
    latency_ms: int
    used_fallback: bool
    persisted: bool = True
    warning: str | None = None
    user_message: dict = field(default_factory=dict)
    assistant_message: dict = field(default_factory=dict)


def message_payload(
    role: str,
    content: str,
    timestamp: datetime | None,
    *,
    backend: str | None = None,
    tokens: int = 0,
) -> dict:
    payload = {
        "role": role,
        "content": content,
        "timestamp": timestamp.isoformat() if timestamp else None,
        "tokens": tokens,
    }
    if role == ROLE_ASSISTANT:
        payload["backend"] = backend
    return payload


class ExchangeOrchestrator:

    def __init__(
        self,
        router: BackendRouter,
        transcript: TranscriptStore,
        audit: AuditRecorder,
        *,
        default_backend: str = "openai",
    ) -> None:
        self.router = router
        self.transcript = transcript
        self.audit = audit
        self.default_backend = default_backend

    def run(self, request: ExchangeRequest) -> ExchangeResult:
        return self.complete(self.begin(request))

    # ── Resolving ──────────────────────────────────────────────────────────

    def begin(self, request: ExchangeRequest) -> PendingExchange:
        exchange_id = str(uuid.uuid4())
        with bind_exchange(exchange_id, request.conversation_id or ""):
            conversation = None
            if request.conversation_id:
                conversation = self.transcript.get_active(request.owner_id, request.conversation_id)

            backend = (
                request.backend_name
                or (conversation.preferred_backend if conversation is not None else "")
                or self.default_backend
            )
            self.router.resolve(backend)

            is_new = conversation is None
            if is_new:
                conversation = self.transcript.new_conversation(request.owner_id, request.text, backend)
                logger.info("Starting new conversation %s for user %s", conversation.id, request.owner_id)

            return PendingExchange(
                exchange_id=exchange_id,
                request=request,
                conversation=conversation,
                backend_name=backend,
                is_new=is_new,
                accepted_at=datetime.now(timezone.utc),
            )

    # ── Generating → Persisting → Auditing → Done ──────────────────────────

    def complete(self, pending: PendingExchange) -> ExchangeResult:
        request = pending.request
        conversation = pending.conversation
        conversation_id = conversation.id
        with bind_exchange(pending.exchange_id, conversation_id):
            messages = self.transcript.history(conversation)
            messages.append({"role": ROLE_USER, "content": request.text})

            start = time.perf_counter()
            try:
                outcome = self.router.route(messages, pending.backend_name, request.options)
            except AllBackendsUnavailable as exc:
                latency_ms = int((time.perf_counter() - start) * 1000)
                tried = exc.backends_tried
                self.audit.record(AuditEntry(
                    exchange_id=pending.exchange_id,
                    owner_id=request.owner_id,
                    conversation_id=conversation_id,
                    input_text=request.text,
                    backend=tried[-1] if tried else pending.backend_name,
                    latency_ms=latency_ms,
                    used_fallback=len(tried) > 1,
                    error_message=str(exc),
                    ip_address=request.origin_address,
                    user_agent=request.client_descriptor,
                ))
                raise

            now = datetime.now(timezone.utc)
            persisted, warning = True, None
            user_message = pending.user_message
            assistant_message = message_payload(
                ROLE_ASSISTANT, outcome.text, now, backend=outcome.backend_used, tokens=outcome.token_count,
            )
            try:
                self.transcript.append_exchange(
                    conversation,
                    request.text,
                    outcome.text,
                    outcome.backend_used,
                    outcome.token_count,
                    now=now,
                    received_at=pending.accepted_at,
                )
            except PersistenceFailure as exc:
                logger.error("Reply generated but transcript not saved: %s", exc, exc_info=True)
                persisted, warning = False, PersistenceFailure.detail

            self.audit.record(AuditEntry(
                exchange_id=pending.exchange_id,
                owner_id=request.owner_id,
                conversation_id=conversation_id,
                input_text=request.text,
                output_text=outcome.text,
                backend=outcome.backend_used,
                used_fallback=outcome.used_fallback,
                latency_ms=outcome.latency_ms,
                tokens=outcome.token_count,
                input_tokens=outcome.input_tokens,
                output_tokens=outcome.output_tokens,
                model_name=outcome.model_name,
                ip_address=request.origin_address,
                user_agent=request.client_descriptor,
            ))

            logger.info(
                "Exchange processed for user %s via %s%s in %dms",
                request.owner_id, outcome.backend_used,
                " (fallback)" if outcome.used_fallback else "", outcome.latency_ms,
            )
            return ExchangeResult(
                exchange_id=pending.exchange_id,
                conversation_id=conversation_id,
                reply_text=outcome.text,
                backend_used=outcome.backend_used,
                token_cost=outcome.token_count,
                latency_ms=outcome.latency_ms,
                used_fallback=outcome.used_fallback,
                persisted=persisted,
                warning=warning,
                user_message=user_message,
                assistant_message=assistant_message,
            )
