"""Tests for services/transcript.py — titles, appends, locks, soft delete."""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from models.conversation import Conversation, ConversationMessage
from services.errors import ConversationNotFound, PersistenceFailure
from services.transcript import (
    APPEND_ATTEMPTS,
    ConversationLocks,
    TranscriptStore,
    derive_title,
)


@pytest.fixture
def store(db):
    return TranscriptStore(db, ConversationLocks())


class TestDeriveTitle:
    def test_short_text_kept(self):
        assert derive_title("Hello there") == "Hello there"

    def test_exactly_max_length_not_truncated(self):
        text = "x" * 50
        assert derive_title(text) == text

    def test_truncated_with_ellipsis(self):
        text = "y" * 51
        assert derive_title(text) == "y" * 50 + "..."

    def test_custom_length(self):
        assert derive_title("abcdef", 3) == "abc..."

    def test_blank_falls_back(self):
        assert derive_title("   ") == "New Conversation"
        assert derive_title("") == "New Conversation"


class TestGetActive:
    def test_returns_owned_conversation(self, store, conversation, user_profile):
        assert store.get_active(user_profile.id, conversation.id).id == conversation.id

    def test_other_owner_is_not_found(self, store, conversation, other_user):
        with pytest.raises(ConversationNotFound):
            store.get_active(other_user.id, conversation.id)

    def test_inactive_is_not_found(self, store, db, conversation, user_profile):
        conversation.is_active = False
        db.commit()
        with pytest.raises(ConversationNotFound):
            store.get_active(user_profile.id, conversation.id)

    def test_unknown_id(self, store, user_profile):
        with pytest.raises(ConversationNotFound) as exc_info:
            store.get_active(user_profile.id, "does-not-exist")
        assert exc_info.value.status_code == 404

    def test_history_in_order(self, store, conversation):
        assert store.history(conversation) == [
            {"role": "user", "content": "Earlier question"},
            {"role": "assistant", "content": "Earlier answer"},
        ]


class TestNewConversation:
    def test_is_not_saved(self, store, db, user_profile):
        conv = store.new_conversation(user_profile.id, "What is the weather like?", "openai")

        assert conv.id
        assert conv.title == "What is the weather like?"
        assert conv.preferred_backend == "openai"
        assert conv.messages == []
        assert db.query(Conversation).count() == 0

    def test_title_uses_configured_length(self, db, user_profile):
        store = TranscriptStore(db, ConversationLocks(), title_max_length=5)
        assert store.new_conversation(user_profile.id, "Hello world", "openai").title == "Hello..."


class TestAppendExchange:
    def test_first_exchange_creates_conversation(self, store, db, user_profile):
        conv = store.new_conversation(user_profile.id, "Hi", "openai")

        saved, user_msg, assistant_msg = store.append_exchange(conv, "Hi", "Hello!", "openai", 15)

        assert db.query(Conversation).count() == 1
        assert saved.total_tokens == 15
        assert (user_msg.position, user_msg.role, user_msg.tokens) == (0, "user", 0)
        assert user_msg.backend is None
        assert (assistant_msg.position, assistant_msg.role) == (1, "assistant")
        assert assistant_msg.backend == "openai"
        assert assistant_msg.tokens == 15

    def test_appends_after_existing_messages(self, store, db, conversation):
        store.append_exchange(conversation, "Next question", "Next answer", "anthropic", 5)

        db.expire_all()
        reloaded = db.get(Conversation, conversation.id)
        assert [m.position for m in reloaded.messages] == [0, 1, 2, 3]
        assert [m.content for m in reloaded.messages][2:] == ["Next question", "Next answer"]
        assert reloaded.total_tokens == 15

    def test_total_equals_sum_of_message_tokens(self, store, db, conversation):
        for cost in (3, 4, 5):
            store.append_exchange(conversation, "q", "a", "openai", cost)

        db.expire_all()
        reloaded = db.get(Conversation, conversation.id)
        assert reloaded.total_tokens == sum(m.tokens for m in reloaded.messages)

    def test_user_and_assistant_stay_adjacent(self, store, db, conversation):
        store.append_exchange(conversation, "q1", "a1", "openai", 1)
        store.append_exchange(conversation, "q2", "a2", "openai", 1)

        db.expire_all()
        roles = [m.role for m in db.get(Conversation, conversation.id).messages]
        assert roles == ["user", "assistant"] * 3

    def test_conversation_deleted_mid_exchange(self, store, db, conversation):
        db.query(Conversation).filter(Conversation.id == conversation.id).update({"is_active": False})
        db.commit()

        with pytest.raises(PersistenceFailure):
            store.append_exchange(conversation, "q", "a", "openai", 1)
        assert db.query(ConversationMessage).count() == 2

    def test_stale_write_is_retried(self, store, db, conversation):
        real_commit = db.commit
        calls = {"n": 0}

        def flaky_commit():
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDataError("version mismatch")
            return real_commit()

        with patch.object(db, "commit", side_effect=flaky_commit):
            _, user_msg, _ = store.append_exchange(conversation, "q", "a", "openai", 2)

        assert calls["n"] == 2
        assert user_msg.position == 2

    def test_gives_up_after_repeated_conflicts(self, store, db, conversation):
        with patch.object(db, "commit", side_effect=StaleDataError("conflict")) as mock_commit:
            with pytest.raises(PersistenceFailure, match="Gave up"):
                store.append_exchange(conversation, "q", "a", "openai", 2)
        assert mock_commit.call_count == APPEND_ATTEMPTS

    def test_database_error_becomes_persistence_failure(self, store, db, conversation):
        with patch.object(db, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
            with pytest.raises(PersistenceFailure) as exc_info:
                store.append_exchange(conversation, "q", "a", "openai", 2)
        assert exc_info.value.detail == "Reply generated but could not be saved"


class TestRenameAndDelete:
    def test_rename(self, store, conversation, user_profile):
        assert store.rename(user_profile.id, conversation.id, "Trip planning").title == "Trip planning"

    def test_rename_other_owner(self, store, conversation, other_user):
        with pytest.raises(ConversationNotFound):
            store.rename(other_user.id, conversation.id, "Mine now")

    def test_soft_delete_keeps_rows(self, store, db, conversation, user_profile):
        store.soft_delete(user_profile.id, conversation.id)

        db.expire_all()
        row = db.get(Conversation, conversation.id)
        assert row.is_active is False
        assert len(row.messages) == 2

    def test_second_delete_is_not_found(self, store, conversation, user_profile):
        store.soft_delete(user_profile.id, conversation.id)
        with pytest.raises(ConversationNotFound):
            store.soft_delete(user_profile.id, conversation.id)


class TestConversationLocks:
    def test_entry_dropped_when_released(self):
        locks = ConversationLocks()
        with locks.hold("c1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_same_conversation_is_serialised(self):
        locks = ConversationLocks()
        order = []
        entered = threading.Event()
        release = threading.Event()

        def first():
            with locks.hold("c1"):
                entered.set()
                release.wait(2)
                order.append("first")

        def second():
            entered.wait(2)
            with locks.hold("c1"):
                order.append("second")

        t1 = threading.Thread(target=first)
        t2 = threading.Thread(target=second)
        t1.start()
        t2.start()
        entered.wait(2)
        release.set()
        t1.join(2)
        t2.join(2)

        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_different_conversations_do_not_block(self):
        locks = ConversationLocks()
        with locks.hold("c1"):
            acquired = []

            def other():
                with locks.hold("c2"):
                    acquired.append(True)

            t = threading.Thread(target=other)
            t.start()
            t.join(2)
            assert acquired == [True]
