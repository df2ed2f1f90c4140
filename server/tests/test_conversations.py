"""Tests for services/conversations.py — threads, exchanges, primary responses."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from database import utcnow
from models.conversation import PLACEHOLDER_TITLE, Message, MessageResponse, Thread
from models.user import UserProfile
from services import conversations
from services.errors import ChatError, ErrorKind


@pytest.fixture
def thread(db, user_profile):
    return conversations.ensure_thread(db, "thread-1", user_profile.id)


@pytest.fixture
def other_user(db):
    profile = UserProfile(external_id="ext-user-2")
    db.add(profile)
    db.commit()
    return profile


def _messages(db, thread_id):
    return (
        db.query(Message)
        .filter(Message.thread_id == thread_id)
        .order_by(Message.created_at.asc())
        .all()
    )


# ── Threads ───────────────────────────────────────────────────────────────────

class TestThreads:
    def test_ensure_thread_creates_with_placeholder_title(self, thread, user_profile):
        assert thread.id == "thread-1"
        assert thread.user_profile_id == user_profile.id
        assert thread.title == PLACEHOLDER_TITLE

    def test_ensure_thread_is_idempotent(self, db, thread, user_profile):
        again = conversations.ensure_thread(db, "thread-1", user_profile.id)
        assert again.id == thread.id
        assert db.query(Thread).count() == 1

    def test_ensure_thread_rejects_other_owner(self, db, thread, other_user):
        with pytest.raises(ChatError) as exc_info:
            conversations.ensure_thread(db, "thread-1", other_user.id)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_list_threads_only_own(self, db, thread, other_user):
        conversations.ensure_thread(db, "thread-2", other_user.id)
        assert [t.id for t in conversations.list_threads(db, thread.user_profile_id)] == ["thread-1"]

    def test_delete_thread_removes_messages(self, db, thread):
        saved = conversations.save_exchange(db, thread.id, "Hello", "Hi there!", "openai/gpt-4o", 10)
        conversations.delete_thread(db, thread.id, thread.user_profile_id)
        assert db.query(Thread).count() == 0
        assert db.query(Message).count() == 0
        assert db.query(MessageResponse).filter_by(message_id=saved.assistant_message_id).count() == 0


# ── Titles ────────────────────────────────────────────────────────────────────

class TestDeriveTitle:
    @pytest.mark.parametrize("text,expected", [
        ("can you explain quantum tunneling?", "Explain quantum tunneling"),
        ("Please, how do I bake bread", "Bake bread"),
        ("what is rust", "What is rust"),
        ("hi", "New Conversation"),
        ("please", "New Conversation"),
    ])
    def test_prefixes_and_fallback(self, text, expected):
        assert conversations.derive_title(text) == expected

    def test_truncates_long_titles(self):
        title = conversations.derive_title("describe " + "the history of the roman empire " * 5)
        assert len(title) <= conversations.TITLE_MAX_LENGTH
        assert title.endswith("...")

    def test_prefix_must_be_whole_word(self):
        assert conversations.derive_title("pleasent weather today") == "Pleasent weather today"


# ── save_exchange ─────────────────────────────────────────────────────────────

class TestSaveExchange:
    def test_inserts_user_then_assistant(self, db, thread):
        saved = conversations.save_exchange(db, thread.id, "What is Python?", "A programming language.")
        rows = _messages(db, thread.id)
        assert [(m.role, m.content) for m in rows] == [
            ("user", "What is Python?"),
            ("assistant", "A programming language."),
        ]
        assert saved.user_message_id == rows[0].id
        assert saved.assistant_message_id == rows[1].id
        assert rows[0].created_at < rows[1].created_at

    def test_placeholder_updated_in_place(self, db, thread):
        db.add(Message(thread_id=thread.id, role="user", content="Tell me a joke", created_at=utcnow()))
        db.add(Message(
            thread_id=thread.id, role="assistant", content="",
            created_at=utcnow() + timedelta(milliseconds=5),
        ))
        db.commit()

        conversations.save_exchange(db, thread.id, "Tell me a joke", "Why did the chicken cross the road?")

        rows = _messages(db, thread.id)
        assistants = [m for m in rows if m.role == "assistant"]
        users = [m for m in rows if m.role == "user"]
        assert len(assistants) == 1
        assert len(users) == 1
        assert assistants[0].content == "Why did the chicken cross the road?"

    def test_repeated_question_after_answer_is_new_turn(self, db, thread):
        conversations.save_exchange(db, thread.id, "Hello", "Hi there!")
        conversations.save_exchange(db, thread.id, "Hello", "Hello again!")
        rows = _messages(db, thread.id)
        assert [m.role for m in rows] == ["user", "assistant", "user", "assistant"]

    def test_primary_response_written_with_model(self, db, thread):
        saved = conversations.save_exchange(db, thread.id, "Hello", "Hi!", "openai/gpt-4o", 42)
        responses = conversations.list_responses(db, saved.assistant_message_id)
        assert len(responses) == 1
        assert responses[0].is_primary is True
        assert responses[0].model == "openai/gpt-4o"
        assert responses[0].tokens_used == 42

    def test_no_response_row_without_model(self, db, thread):
        saved = conversations.save_exchange(db, thread.id, "Hello", "Hi!")
        assert conversations.list_responses(db, saved.assistant_message_id) == []

    def test_auto_title_on_first_exchange(self, db, thread):
        conversations.save_exchange(db, thread.id, "Can you summarize this article", "Sure.")
        db.refresh(thread)
        assert thread.title == "Summarize this article"

    def test_auto_title_does_not_clobber_rename(self, db, thread):
        thread.title = "My research"
        db.commit()
        conversations.save_exchange(db, thread.id, "Can you summarize this article", "Sure.")
        db.refresh(thread)
        assert thread.title == "My research"

    def test_auto_title_only_for_short_threads(self, db, thread):
        conversations.save_exchange(db, thread.id, "hi", "Hello!")
        db.refresh(thread)
        assert thread.title == "New Conversation"
        db.query(Thread).filter(Thread.id == thread.id).update({"title": PLACEHOLDER_TITLE})
        db.commit()

        conversations.save_exchange(db, thread.id, "Explain monads", "Monads are...")
        db.refresh(thread)
        assert thread.title == PLACEHOLDER_TITLE

    def test_failure_degrades_to_empty_ids(self, db, thread, caplog):
        with patch("services.conversations._recent_messages", side_effect=RuntimeError("db gone")):
            saved = conversations.save_exchange(db, thread.id, "Hello", "Hi!")
        assert saved.user_message_id is None
        assert saved.assistant_message_id is None
        assert "Failed to save exchange" in caplog.text


# ── Alternate responses ───────────────────────────────────────────────────────

@pytest.fixture
def answered(db, thread):
    saved = conversations.save_exchange(db, thread.id, "Name a color", "Red", "openai/gpt-4o", 5)
    message_id = saved.assistant_message_id
    b = conversations.add_response(db, message_id, "anthropic/claude-3-5-sonnet-20241022", "Blue", 7)
    c = conversations.add_response(db, message_id, "sarvam-m", "Green", 6)
    a = next(r for r in conversations.list_responses(db, message_id) if r.is_primary)
    return message_id, a, b, c


def _primaries(db, message_id):
    return [
        r.id for r in db.query(MessageResponse)
        .filter(MessageResponse.message_id == message_id, MessageResponse.is_primary.is_(True))
        .populate_existing()
        .all()
    ]


class TestResponses:
    def test_added_responses_are_not_primary(self, db, answered):
        message_id, a, b, c = answered
        assert _primaries(db, message_id) == [a.id]
        assert [r.content for r in conversations.list_responses(db, message_id)] == ["Red", "Blue", "Green"]

    def test_switch_primary(self, db, answered):
        message_id, a, b, c = answered
        conversations.switch_primary_response(db, message_id, b.id)

        assert _primaries(db, message_id) == [b.id]
        message = db.query(Message).filter(Message.id == message_id).populate_existing().one()
        assert message.content == "Blue"

    def test_repeated_switches_keep_one_primary(self, db, answered):
        message_id, a, b, c = answered
        for response in (c, a, b, b, c):
            conversations.switch_primary_response(db, message_id, response.id)
            assert _primaries(db, message_id) == [response.id]

    def test_crash_between_clear_and_set_leaves_zero_primaries(self, db, answered):
        message_id, a, b, c = answered
        real_commit = db.commit
        calls = {"n": 0}

        def crash_on_second_step():
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("process killed")
            real_commit()

        with patch.object(db, "commit", side_effect=crash_on_second_step):
            with pytest.raises(RuntimeError):
                conversations.switch_primary_response(db, message_id, b.id)
        db.rollback()

        assert _primaries(db, message_id) == []

    def test_switch_to_unknown_response(self, db, answered):
        message_id, *_ = answered
        with pytest.raises(ChatError) as exc_info:
            conversations.switch_primary_response(db, message_id, "missing")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_owned_message_hidden_from_other_users(self, db, answered, other_user):
        message_id, *_ = answered
        with pytest.raises(ChatError):
            conversations.get_owned_message(db, message_id, other_user.id)

    def test_list_messages_annotates_primary_model(self, db, answered, thread):
        message_id, a, b, c = answered
        conversations.switch_primary_response(db, message_id, c.id)
        messages = conversations.list_messages(db, thread.id, thread.user_profile_id)
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[1]["model"] == "sarvam-m"
        assert messages[1]["content"] == "Green"
