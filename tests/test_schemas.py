from __future__ import annotations

import pytest
from pydantic import ValidationError

from kbchat.schemas import ChatRequest, error_envelope

CONVERSATION_ID = "3f2b8c1e-4d5a-4b6c-8d7e-9f0a1b2c3d4e"


def test_session_id_is_accepted_as_conversation_id():
    request = ChatRequest.model_validate({"question": "  hi  ", "session_id": CONVERSATION_ID})

    assert request.conversation_id == CONVERSATION_ID
    assert request.question == "hi"
    assert request.response_mode == "auto"


def test_unknown_response_mode_falls_back_to_auto():
    request = ChatRequest.model_validate(
        {"question": "q", "conversation_id": CONVERSATION_ID, "response_mode": "turbo"}
    )

    assert request.response_mode == "auto"


@pytest.mark.parametrize(
    "overrides",
    [
        {"question": ""},
        {"question": "x" * 4001},
        {"conversation_id": "not-a-uuid"},
        {"top_k": 7},
        {"top_k": 13},
        {"temperature": 2.5},
    ],
)
def test_out_of_range_fields_are_rejected(overrides):
    payload = {"question": "q", "conversation_id": CONVERSATION_ID, **overrides}

    with pytest.raises(ValidationError):
        ChatRequest.model_validate(payload)


def test_upstream_payload_omits_unset_options():
    request = ChatRequest.model_validate({"question": "q", "conversation_id": CONVERSATION_ID, "top_k": 10})

    payload = request.upstream_payload(chat_history=[{"role": "user", "content": "before"}], active_index_names=[])

    assert payload == {
        "question": "q",
        "session_id": CONVERSATION_ID,
        "response_mode": "auto",
        "chat_history": [{"role": "user", "content": "before"}],
        "top_k": 10,
    }


def test_error_envelope_includes_optional_sections():
    body = error_envelope(
        code="GENERATION_STALLED",
        message="stalled",
        error_class="business_rule",
        retryable=False,
        trace_id="t-1",
        details={"can_retry": True},
    )

    assert body == {
        "error": "stalled",
        "code": "GENERATION_STALLED",
        "class": "business_rule",
        "retryable": False,
        "trace_id": "t-1",
        "details": {"can_retry": True},
    }
