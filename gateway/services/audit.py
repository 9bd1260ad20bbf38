"""AuditRecorder — write one ExchangeLog row per exchange attempt."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from models.exchange_log import STATUS_ERROR, STATUS_SUCCESS, ExchangeLog
from services.token_usage import calculate_cost

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    exchange_id: str
    owner_id: int
    conversation_id: str
    input_text: str
    backend: str
    latency_ms: int
    output_text: str = ""
    used_fallback: bool = False
    tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    model_name: str = ""
    error_message: str = ""
    ip_address: str = ""
    user_agent: str = ""

    @property
    def status(self) -> str:
        return STATUS_ERROR if self.error_message else STATUS_SUCCESS


class AuditRecorder:
    """Persists audit rows in a session of their own.

    The audit write never shares a transaction with the transcript, and it
    never raises: a failed write is logged and the exchange carries on.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def record(self, entry: AuditEntry) -> ExchangeLog | None:
        log = ExchangeLog(
            id=entry.exchange_id,
            user_profile_id=entry.owner_id,
            conversation_id=entry.conversation_id,
            input_text=entry.input_text,
            output_text=entry.output_text,
            backend=entry.backend,
            used_fallback=entry.used_fallback,
            latency_ms=entry.latency_ms,
            tokens=entry.tokens,
            input_tokens=entry.input_tokens,
            output_tokens=entry.output_tokens,
            cost_usd=calculate_cost(entry.model_name, entry.input_tokens, entry.output_tokens),
            status=entry.status,
            error_message=entry.error_message,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
        )
        try:
            with self.session_factory() as session:
                session.add(log)
                session.commit()
        except Exception:
            logger.exception("Failed to write audit record for exchange %s", entry.exchange_id)
            return None
        return log
