"""Exchange error taxonomy.

Every error carries an HTTP-style ``status_code`` and a ``detail`` string that
is safe to show to the caller. Transports translate them; the orchestrator
decides which ones are hard failures.
"""

from __future__ import annotations


class ExchangeError(Exception):
    status_code = 500
    detail = "Failed to process message"

    def __init__(self, message: str = "", *, detail: str | None = None) -> None:
        super().__init__(message or self.detail)
        if detail is not None:
            self.detail = detail


class ConversationNotFound(ExchangeError):
    status_code = 404
    detail = "Conversation not found"

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class UnsupportedBackend(ExchangeError):
    status_code = 400

    def __init__(self, backend: str) -> None:
        super().__init__(f"Unsupported backend: {backend}", detail=f"Unsupported backend: {backend}")
        self.backend = backend


class BackendUnavailable(ExchangeError):
    status_code = 502

    def __init__(self, backend: str, reason: str) -> None:
        super().__init__(f"{backend} backend error: {reason}")
        self.backend = backend
        self.reason = reason


class AllBackendsUnavailable(ExchangeError):
    status_code = 500

    def __init__(self, errors: list[BackendUnavailable]) -> None:
        tried = ", ".join(e.backend for e in errors) or "none"
        super().__init__(f"All backends are currently unavailable (tried: {tried})")
        self.errors = list(errors)

    @property
    def backends_tried(self) -> list[str]:
        return [e.backend for e in self.errors]


class PersistenceFailure(ExchangeError):
    status_code = 500
    detail = "Reply generated but could not be saved"
