"""TranscriptStore — ordered conversation messages with running token totals.

Writes are append-only: an exchange adds its user message and its assistant
message in one transaction, so the pair is always adjacent. Appends on the
same conversation are serialised in-process by ``ConversationLocks`` and
across processes by the conversation's version column; a conflicting
concurrent write is retried after reloading the transcript.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from models.conversation import ROLE_ASSISTANT, ROLE_USER, Conversation, ConversationMessage
from services.errors import ConversationNotFound, PersistenceFailure

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 50
APPEND_ATTEMPTS = 3


def derive_title(text: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    if not text or not text.strip():
        return DEFAULT_TITLE
    return text[:max_length] + ("..." if len(text) > max_length else "")


class ConversationLocks:
    """Per-conversation mutexes, created on demand and dropped when idle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}  # conversation_id -> [lock, holders]

    @contextmanager
    def hold(self, conversation_id: str):
        with self._guard:
            entry = self._entries.setdefault(conversation_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._entries.pop(conversation_id, None)

    def __len__(self) -> int:
        return len(self._entries)


conversation_locks = ConversationLocks()


class TranscriptStore:

    def __init__(
        self,
        db: Session,
        locks: ConversationLocks | None = None,
        *,
        title_max_length: int = TITLE_MAX_LENGTH,
    ) -> None:
        self.db = db
        self.locks = locks or conversation_locks
        self.title_max_length = title_max_length

    # ── Reads ──────────────────────────────────────────────────────────────

    def get_active(self, owner_id: int, conversation_id: str) -> Conversation:
        """Return the caller's active conversation; anything else is not found."""
        conversation = (
            self.db.query(Conversation)
            .filter(
                Conversation.id == conversation_id,
                Conversation.user_profile_id == owner_id,
                Conversation.is_active.is_(True),
            )
            .first()
        )
        if not conversation:
            raise ConversationNotFound(conversation_id)
        return conversation

    @staticmethod
    def history(conversation: Conversation) -> list[dict]:
        return [{"role": m.role, "content": m.content} for m in conversation.messages]

    # ── Writes ─────────────────────────────────────────────────────────────

    def new_conversation(self, owner_id: int, first_text: str, backend: str) -> Conversation:
        """Build an unsaved conversation; it is persisted with its first exchange."""
        return Conversation(
            id=str(uuid.uuid4()),
            user_profile_id=owner_id,
            title=derive_title(first_text, self.title_max_length),
            total_tokens=0,
            is_active=True,
            preferred_backend=backend,
            messages=[],
        )

    def append_exchange(
        self,
        conversation: Conversation,
        user_text: str,
        assistant_text: str,
        backend_used: str,
        token_cost: int,
        now: datetime | None = None,
        *,
        received_at: datetime | None = None,
    ) -> tuple[Conversation, ConversationMessage, ConversationMessage]:
        now = now or datetime.now(timezone.utc)
        received_at = received_at or now
        is_new = inspect(conversation).transient
        last_error: Exception | None = None

        with self.locks.hold(conversation.id):
            for attempt in range(1, APPEND_ATTEMPTS + 1):
                try:
                    if is_new:
                        conversation.messages = []
                        self.db.add(conversation)
                    else:
                        self.db.refresh(conversation)
                        if not conversation.is_active:
                            raise PersistenceFailure(f"Conversation {conversation.id} was deleted mid-exchange")

                    position = len(conversation.messages)
                    user_msg = ConversationMessage(
                        position=position,
                        role=ROLE_USER,
                        content=user_text,
                        backend=None,
                        tokens=0,
                        created_at=received_at,
                    )
                    assistant_msg = ConversationMessage(
                        position=position + 1,
                        role=ROLE_ASSISTANT,
                        content=assistant_text,
                        backend=backend_used,
                        tokens=token_cost,
                        created_at=now,
                    )
                    conversation.messages.append(user_msg)
                    conversation.messages.append(assistant_msg)
                    conversation.total_tokens = (conversation.total_tokens or 0) + token_cost
                    conversation.updated_at = now  # always bumps version_id
                    self.db.commit()
                    return conversation, user_msg, assistant_msg
                except (StaleDataError, IntegrityError) as exc:
                    self.db.rollback()
                    last_error = exc
                    logger.warning(
                        "Concurrent write on conversation %s (attempt %d/%d), retrying",
                        conversation.id, attempt, APPEND_ATTEMPTS,
                    )
                except PersistenceFailure:
                    self.db.rollback()
                    raise
                except SQLAlchemyError as exc:
                    self.db.rollback()
                    raise PersistenceFailure(f"Failed to save conversation {conversation.id}: {exc}") from exc

        raise PersistenceFailure(
            f"Gave up saving conversation {conversation.id} after {APPEND_ATTEMPTS} attempts"
        ) from last_error

    def rename(self, owner_id: int, conversation_id: str, title: str) -> Conversation:
        conversation = self.get_active(owner_id, conversation_id)
        conversation.title = title
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def soft_delete(self, owner_id: int, conversation_id: str) -> None:
        """Mark the conversation inactive. Deleting twice reports not found."""
        with self.locks.hold(conversation_id):
            conversation = self.get_active(owner_id, conversation_id)
            conversation.is_active = False
            self.db.commit()
        logger.info("Conversation %s soft-deleted", conversation_id)
