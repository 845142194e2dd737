from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from kbchat.monitor import MonitorRegistry
from kbchat.relay import StreamingRelay

CONVERSATION_ID = "3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e"

DONE_STREAM = (
    b'data: {"type": "token", "token": "Revenue grew "}\n\n'
    b'data: {"type": "token", "token": "12%"}\n\n'
    b'data: {"type": "done", "answer": "Revenue grew 12% [report.md].", '
    b'"matches": [{"source": "report.md", "score": 0.91}]}\n\n'
)


@pytest.fixture
def generation(chat_store):
    chat_store.ensure_conversation_owned(user_id="user_a", conversation_id=CONVERSATION_ID)
    return chat_store.create_generation(user_id="user_a", conversation_id=CONVERSATION_ID)


def _relay_output(chat_store, recording_monitor, make_backend, generation, content):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=content, headers={"content-type": "text/event-stream"})

    async def _drain():
        upstream = await make_backend(handler).open_stream({"question": "q"})
        relay = StreamingRelay(store=chat_store, monitor=recording_monitor, generation=generation, upstream=upstream)
        chunks = [chunk async for chunk in relay.iter_bytes()]
        return relay, chunks

    return asyncio.run(_drain())


def _stored(chat_store, generation):
    return chat_store.get_generation(user_id="user_a", generation_id=generation["id"])


def test_stream_is_forwarded_and_answer_persisted(chat_store, recording_monitor, make_backend, generation):
    relay, chunks = _relay_output(chat_store, recording_monitor, make_backend, generation, DONE_STREAM)

    meta = json.loads(chunks[0][len(b"data: ") :])
    message = chat_store.get_assistant_message(user_id="user_a", generation_id=generation["id"])
    assert meta == {"type": "meta", "generation_id": generation["id"]}
    assert b"".join(chunks[1:]) == DONE_STREAM
    assert relay.upstream.closed
    assert _stored(chat_store, generation)["status"] == "completed"
    assert message["content"] == "Revenue grew 12% [Source #01]."
    assert message["citations"] == ["Source #01"]
    assert message["matches"] == [{"id": "m-1", "score": 0.91, "source": "Source #01"}]
    assert recording_monitor.started == []


def test_chunked_stream_with_split_frames(chat_store, recording_monitor, make_backend, generation):
    async def pieces():
        for index in range(0, len(DONE_STREAM), 7):
            yield DONE_STREAM[index : index + 7]

    _relay_output(chat_store, recording_monitor, make_backend, generation, pieces())

    assert _stored(chat_store, generation)["status"] == "completed"


def test_error_event_without_answer_fails_generation(chat_store, recording_monitor, make_backend, generation):
    content = b'data: {"type": "token", "token": "par"}\n\ndata: {"type": "error", "detail": "model overloaded"}\n\n'

    relay, _ = _relay_output(chat_store, recording_monitor, make_backend, generation, content)

    stored = _stored(chat_store, generation)
    assert stored["status"] == "failed"
    assert stored["error_message"] == "model overloaded"
    assert chat_store.get_assistant_message(user_id="user_a", generation_id=generation["id"]) is None
    assert relay.upstream.closed


def test_stream_without_done_leaves_generation_processing(chat_store, recording_monitor, make_backend, generation):
    content = b'data: {"type": "token", "token": "partial"}\n\n'

    _relay_output(chat_store, recording_monitor, make_backend, generation, content)

    assert _stored(chat_store, generation)["status"] == "processing"
    assert recording_monitor.started == []


def test_read_failure_hands_off_to_monitor(chat_store, recording_monitor, make_backend, generation):
    async def broken():
        yield b'data: {"type": "token", "token": "Rev"}\n\n'
        raise httpx.ReadError("connection reset")

    relay, chunks = _relay_output(chat_store, recording_monitor, make_backend, generation, broken())

    assert relay.read_failed
    assert relay.upstream.closed
    assert chunks[-1] == b'data: {"type": "token", "token": "Rev"}\n\n'
    assert recording_monitor.started == [(generation["id"], "user_a")]
    assert _stored(chat_store, generation)["status"] == "processing"


def test_persist_errors_never_reach_the_client(chat_store, recording_monitor, make_backend, generation, monkeypatch):
    def explode(**kwargs):
        raise RuntimeError("database down")

    monkeypatch.setattr(chat_store, "persist_completed_generation", explode)

    relay, chunks = _relay_output(chat_store, recording_monitor, make_backend, generation, DONE_STREAM)

    assert b"".join(chunks[1:]) == DONE_STREAM
    assert relay.persist() is False
    assert _stored(chat_store, generation)["status"] == "processing"


def test_meta_event_includes_quota(chat_store, recording_monitor, generation):
    quota = chat_store.consume_quota(user_id="user_a")
    relay = StreamingRelay(
        store=chat_store,
        monitor=recording_monitor,
        generation=generation,
        upstream=None,
        quota=quota,
    )

    meta = json.loads(relay.meta_event()[len(b"data: ") :])

    assert meta["quota"] == {"limit": 10, "used": 1, "remaining": 9, "reset_at": "2026-03-02T00:00:00+00:00"}


def _disconnect_after_first_chunk(chat_store, recording_monitor, make_backend, generation):
    async def frames():
        for frame in DONE_STREAM.split(b"\n\n"):
            if frame:
                yield frame + b"\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=frames(), headers={"content-type": "text/event-stream"})

    async def _scenario():
        upstream = await make_backend(handler).open_stream({"question": "q"})
        relay = StreamingRelay(store=chat_store, monitor=recording_monitor, generation=generation, upstream=upstream)
        stream = relay.iter_bytes()
        await stream.__anext__()
        first = await stream.__anext__()
        await stream.aclose()
        await recording_monitor.registry.drain()
        return relay, first

    return asyncio.run(_scenario())


def test_client_disconnect_still_persists_answer(chat_store, recording_monitor, make_backend, generation):
    relay, first = _disconnect_after_first_chunk(chat_store, recording_monitor, make_backend, generation)

    message = chat_store.get_assistant_message(user_id="user_a", generation_id=generation["id"])
    assert first == b'data: {"type": "token", "token": "Revenue grew "}\n\n'
    assert _stored(chat_store, generation)["status"] == "completed"
    assert message["content"] == "Revenue grew 12% [Source #01]."
    assert relay.upstream.closed
    assert recording_monitor.started == []


def test_client_disconnect_with_full_registry_closes_upstream(
    chat_store, recording_monitor, make_backend, generation
):
    recording_monitor.registry = MonitorRegistry(capacity=0)

    relay, _ = _disconnect_after_first_chunk(chat_store, recording_monitor, make_backend, generation)

    assert relay.upstream.closed
    assert _stored(chat_store, generation)["status"] == "processing"
