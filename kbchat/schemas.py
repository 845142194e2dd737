from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from kbchat.normalize import normalize_response_mode
from kbchat.store import is_valid_conversation_id

MAX_QUESTION_CHARS = 4000


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    conversation_id: str = Field(validation_alias=AliasChoices("conversation_id", "session_id"))
    response_mode: str = "auto"
    top_k: int | None = Field(default=None, ge=8, le=12)
    temperature: float | None = Field(default=None, ge=0, le=2)

    @field_validator("question")
    @classmethod
    def _question_bounds(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed or len(trimmed) > MAX_QUESTION_CHARS:
            raise ValueError(f"question must be 1..{MAX_QUESTION_CHARS} characters")
        return trimmed

    @field_validator("conversation_id")
    @classmethod
    def _conversation_uuid(cls, value: str) -> str:
        trimmed = value.strip()
        if not is_valid_conversation_id(trimmed):
            raise ValueError("conversation_id must be a valid UUID")
        return trimmed

    @field_validator("response_mode", mode="before")
    @classmethod
    def _response_mode(cls, value: Any) -> str:
        return normalize_response_mode(value) or "auto"

    def upstream_payload(
        self,
        *,
        chat_history: list[dict[str, str]],
        active_index_names: list[str],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "question": self.question,
            "session_id": self.conversation_id,
            "response_mode": self.response_mode,
            "chat_history": chat_history,
        }
        if self.top_k is not None:
            payload["top_k"] = self.top_k
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if active_index_names:
            payload["active_index_names"] = active_index_names
        return payload


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
    quota: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": message,
        "code": code,
        "class": error_class,
        "retryable": retryable,
        "trace_id": trace_id,
    }
    if details is not None:
        body["details"] = details
    if quota is not None:
        body["quota"] = quota
    return body
