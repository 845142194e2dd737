from __future__ import annotations

import pytest

from kbchat.errors import ConversationForbidden, InvalidRequest, PersistenceFailure
from kbchat.evidence import sanitize_evidence
from kbchat.store import DEFAULT_TITLE, is_stream_task_id, resolve_active_indexes, stream_task_id

CONVERSATION_ID = "3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e"


def _generation(chat_store, user_id: str = "user_a"):
    chat_store.ensure_conversation_owned(user_id=user_id, conversation_id=CONVERSATION_ID)
    return chat_store.create_generation(user_id=user_id, conversation_id=CONVERSATION_ID)


def test_new_conversation_takes_title_from_first_question(chat_store):
    conversation = chat_store.ensure_conversation_owned(
        user_id="user_a",
        conversation_id=CONVERSATION_ID,
        title_seed="  " + "q" * 200,
    )

    assert conversation["user_id"] == "user_a"
    assert conversation["title"] == "q" * 120


def test_default_title_is_replaced_but_custom_title_is_kept(chat_store):
    chat_store.ensure_conversation_owned(user_id="user_a", conversation_id=CONVERSATION_ID)
    assert chat_store.conversations[CONVERSATION_ID]["title"] == DEFAULT_TITLE

    renamed = chat_store.ensure_conversation_owned(
        user_id="user_a",
        conversation_id=CONVERSATION_ID,
        title_seed="Quarterly revenue",
    )
    kept = chat_store.ensure_conversation_owned(
        user_id="user_a",
        conversation_id=CONVERSATION_ID,
        title_seed="Something else",
    )

    assert renamed["title"] == "Quarterly revenue"
    assert kept["title"] == "Quarterly revenue"


def test_foreign_conversation_is_forbidden(chat_store):
    chat_store.ensure_conversation_owned(user_id="user_b", conversation_id=CONVERSATION_ID)

    with pytest.raises(ConversationForbidden):
        chat_store.ensure_conversation_owned(user_id="user_a", conversation_id=CONVERSATION_ID)
    assert chat_store.get_owned_conversation(user_id="user_a", conversation_id=CONVERSATION_ID) is None


def test_conversation_id_must_be_uuid(chat_store):
    with pytest.raises(InvalidRequest):
        chat_store.ensure_conversation_owned(user_id="user_a", conversation_id="not-a-uuid")


def test_generation_starts_processing_with_ttl(chat_store, clock):
    generation = _generation(chat_store)

    assert generation["status"] == "processing"
    assert generation["task_id"] is None
    assert generation["created_at"] == "2026-03-01T12:00:00+00:00"
    assert generation["expires_at"] == "2026-03-01T12:20:00+00:00"


def test_terminal_status_never_changes(chat_store):
    generation = _generation(chat_store)
    evidence = sanitize_evidence("Done [a.md]", [{"source": "a.md", "score": 0.5}])

    completed = chat_store.persist_completed_generation(generation=generation, evidence=evidence)
    failed = chat_store.mark_generation_failed(
        user_id="user_a",
        generation_id=generation["id"],
        error_message="late failure",
    )

    assert completed is not None and completed["status"] == "completed"
    assert failed is None
    stored = chat_store.get_generation(user_id="user_a", generation_id=generation["id"])
    assert stored["status"] == "completed"
    assert stored["error_message"] is None


def test_completion_is_idempotent(chat_store):
    generation = _generation(chat_store)
    evidence = sanitize_evidence("Done [a.md]", [{"source": "a.md", "score": 0.5}])

    first = chat_store.persist_completed_generation(generation=generation, evidence=evidence)
    second = chat_store.persist_completed_generation(generation=generation, evidence=evidence)

    assistant_rows = [row for row in chat_store.messages.values() if row["role"] == "assistant"]
    assert len(assistant_rows) == 1
    assert first["assistant_message_id"] == assistant_rows[0]["id"]
    assert second is None
    assert assistant_rows[0]["content"] == "Done [Source #01]"
    assert assistant_rows[0]["citations"] == ["Source #01"]


def test_completion_reuses_message_written_by_other_path(chat_store):
    generation = _generation(chat_store)
    existing = chat_store.save_message(
        conversation_id=CONVERSATION_ID,
        user_id="user_a",
        role="assistant",
        content="Streamed answer",
        generation_id=generation["id"],
    )
    evidence = sanitize_evidence("Polled answer", [])

    completed = chat_store.persist_completed_generation(generation=generation, evidence=evidence)

    assert completed["assistant_message_id"] == existing["id"]
    assert len(chat_store.messages) == 1


def test_completion_fails_when_conflicting_message_cannot_be_found(chat_store, monkeypatch):
    generation = _generation(chat_store)
    chat_store.save_message(
        conversation_id=CONVERSATION_ID,
        user_id="user_a",
        role="assistant",
        content="x",
        generation_id=generation["id"],
    )
    monkeypatch.setattr(chat_store.messages_repository, "get_assistant_for_generation", lambda **kwargs: None)

    with pytest.raises(PersistenceFailure, match="resolve assistant message"):
        chat_store.persist_completed_generation(generation=generation, evidence=sanitize_evidence("y", []))
    assert chat_store.generations[generation["id"]]["status"] == "processing"


def test_failure_message_is_truncated(chat_store):
    generation = _generation(chat_store)

    failed = chat_store.mark_generation_failed(
        user_id="user_a",
        generation_id=generation["id"],
        error_message="x" * 900,
        status="expired",
    )

    assert failed["status"] == "expired"
    assert len(failed["error_message"]) == 500
    assert failed["completed_at"] is not None
    with pytest.raises(ValueError):
        chat_store.mark_generation_failed(
            user_id="user_a",
            generation_id=generation["id"],
            error_message="x",
            status="done",
        )


def test_set_task_id_only_while_processing(chat_store):
    generation = _generation(chat_store)

    assert chat_store.set_task_id(user_id="user_a", generation_id=generation["id"], task_id=42)["task_id"] == "42"
    chat_store.mark_generation_failed(user_id="user_a", generation_id=generation["id"], error_message="x")
    assert chat_store.set_task_id(user_id="user_a", generation_id=generation["id"], task_id="t-2") is None


def test_history_for_rag_excludes_current_message_and_limits_turns(chat_store):
    chat_store.ensure_conversation_owned(user_id="user_a", conversation_id=CONVERSATION_ID)
    for index in range(6):
        chat_store.save_message(
            conversation_id=CONVERSATION_ID,
            user_id="user_a",
            role="user" if index % 2 == 0 else "assistant",
            content=f"turn {index}",
        )
    current = chat_store.save_message(
        conversation_id=CONVERSATION_ID,
        user_id="user_a",
        role="user",
        content="current",
    )

    history = chat_store.history_for_rag(
        user_id="user_a",
        conversation_id=CONVERSATION_ID,
        exclude_message_id=current["id"],
        limit=4,
    )

    assert history == [
        {"role": "user", "content": "turn 2"},
        {"role": "assistant", "content": "turn 3"},
        {"role": "user", "content": "turn 4"},
        {"role": "assistant", "content": "turn 5"},
    ]
    assert chat_store.history_for_rag(user_id="user_a", conversation_id=CONVERSATION_ID, limit=0) == []
    assert chat_store.history_for_rag(user_id="user_b", conversation_id=CONVERSATION_ID) == []


def test_quota_resets_on_the_next_utc_day(chat_store, clock):
    chat_store.quota_limits["user_a"] = 1

    first = chat_store.consume_quota(user_id="user_a")
    blocked = chat_store.consume_quota(user_id="user_a")
    clock.advance(12 * 3600)
    next_day = chat_store.consume_quota(user_id="user_a")

    assert first.allowed and not blocked.allowed
    assert blocked.used == 1
    assert blocked.reset_at == "2026-03-02T00:00:00+00:00"
    assert next_day.allowed
    assert next_day.reset_at == "2026-03-03T00:00:00+00:00"


def test_resolve_active_indexes():
    assert resolve_active_indexes(requested=["a", "b"], allowed=[]) == ["a", "b"]
    assert resolve_active_indexes(requested=None, allowed=["x", " y ", "x"]) == ["x", "y"]
    assert resolve_active_indexes(requested=["b", "z"], allowed=["a", "b"]) == ["b"]


def test_stream_task_marker():
    assert stream_task_id("g-1") == "stream-g-1"
    assert is_stream_task_id("stream-g-1")
    assert not is_stream_task_id("task-1")
    assert not is_stream_task_id(None)


def test_allowed_indexes_come_from_grants(chat_store):
    chat_store.index_access["user_a"] = ["finance", "finance", " hr "]

    assert chat_store.allowed_indexes(user_id="user_a") == ["finance", "hr"]
    assert chat_store.allowed_indexes(user_id="user_b") == []
