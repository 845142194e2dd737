from __future__ import annotations

import asyncio
import logging
from typing import Any

from kbchat.backend_client import BackendClient
from kbchat.citations import extract_citation_mentions
from kbchat.config import GenerationConfig
from kbchat.errors import (
    GenerationExpired,
    GenerationFailed,
    GenerationNotFound,
    GenerationStalled,
    InvalidRequest,
    MissingAssistantMessage,
    UpstreamUnavailable,
)
from kbchat.monitor import EXPIRED_MESSAGE, GenerationMonitor
from kbchat.normalize import (
    normalize_citations,
    normalize_matches,
    normalize_response_mode,
    normalize_thinking_steps,
)
from kbchat.store import ChatStore, is_stream_task_id, is_valid_conversation_id, parse_iso

logger = logging.getLogger(__name__)


def _clean_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class StatusReconciler:
    """Answer status polls from durable state, repairing it where it went stale."""

    def __init__(
        self,
        *,
        store: ChatStore,
        backend: BackendClient,
        monitor: GenerationMonitor,
        config: GenerationConfig | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.monitor = monitor
        self.config = config or store.config

    async def resolve(
        self,
        *,
        user_id: str,
        generation_id: str | None = None,
        conversation_id: str | None = None,
    ) -> dict[str, Any]:
        generation_id = (generation_id or "").strip()
        conversation_id = (conversation_id or "").strip()
        if not generation_id and not conversation_id:
            raise InvalidRequest("Missing generation_id or conversation_id.")
        if conversation_id and not is_valid_conversation_id(conversation_id):
            raise InvalidRequest("Conversation id must be a valid UUID.")

        if generation_id:
            generation = await asyncio.to_thread(
                self.store.get_generation,
                user_id=user_id,
                generation_id=generation_id,
            )
            if generation is None:
                raise GenerationNotFound()
        else:
            generation = await asyncio.to_thread(
                self.store.get_latest_processing_generation,
                user_id=user_id,
                conversation_id=conversation_id,
            )
            if generation is None:
                return {"status": "idle"}

        status = generation.get("status")
        if status == "completed":
            return await asyncio.to_thread(self._completed_response, user_id=user_id, generation=generation)
        if status in ("failed", "expired"):
            raise GenerationFailed(generation.get("error_message") or "Generation failed.")

        now = self.store.now()
        expires_at = parse_iso(generation.get("expires_at"))
        if expires_at is not None and (now - expires_at).total_seconds() > self.config.expiry_grace_s:
            await self._mark(generation, EXPIRED_MESSAGE, status="expired")
            raise GenerationExpired(EXPIRED_MESSAGE)

        self.monitor.start(generation_id=str(generation["id"]), user_id=user_id)

        response: dict[str, Any] = {
            "status": "processing",
            "generation_id": str(generation["id"]),
            "thinking_steps": [],
        }
        task_id = generation.get("task_id")
        if not task_id:
            return response

        progress = None if is_stream_task_id(task_id) else await self._fetch_progress(str(task_id))
        if progress is None:
            created_at = parse_iso(generation.get("created_at"))
            if created_at is not None and (now - created_at).total_seconds() > self.config.stall_threshold_s:
                stalled = GenerationStalled()
                await self._mark(generation, stalled.message, status="expired")
                raise stalled
            return response

        if progress["status"] == "failed":
            message = progress.get("error") or "Generation failed."
            await self._mark(generation, message)
            raise GenerationFailed(message)

        response["thinking_steps"] = progress["thinking_steps"]
        for key in ("thinking_status", "mode", "routing_reason"):
            if progress.get(key):
                response[key] = progress[key]
        return response

    async def _mark(self, generation: dict[str, Any], message: str, *, status: str = "failed") -> None:
        await asyncio.to_thread(
            self.store.mark_generation_failed,
            user_id=str(generation["user_id"]),
            generation_id=str(generation["id"]),
            error_message=message,
            status=status,
        )

    def _completed_response(self, *, user_id: str, generation: dict[str, Any]) -> dict[str, Any]:
        message = self.store.get_assistant_message(user_id=user_id, generation_id=str(generation["id"]))
        if message is None:
            raise MissingAssistantMessage()
        answer = message.get("markdown_content") or message.get("content") or ""
        sources = normalize_citations(message.get("citations"))
        return {
            "status": "completed",
            "generation_id": str(generation["id"]),
            "answer": answer,
            "sources": sources,
            "matches": normalize_matches(message.get("matches")),
            "citation_mentions": extract_citation_mentions(answer, sources),
        }

    async def _fetch_progress(self, task_id: str) -> dict[str, Any] | None:
        """One-shot upstream poll; None when the task cannot be reached or read."""
        try:
            reply = await self.backend.get_task_status(task_id)
        except UpstreamUnavailable:
            logger.info("chat_status_upstream_unreachable task_id=%s", task_id)
            return None
        if not reply.ok or not isinstance(reply.payload, dict):
            return None
        record = reply.payload
        return {
            "status": record.get("status") if isinstance(record.get("status"), str) else "processing",
            "thinking_status": _clean_text(record.get("thinking_status")),
            "thinking_steps": normalize_thinking_steps(record.get("thinking_steps")),
            "mode": normalize_response_mode(record.get("mode")) or normalize_response_mode(record.get("mode_hint")),
            "routing_reason": _clean_text(record.get("routing_reason")),
            "error": _clean_text(record.get("detail")),
        }
