"""Entry point of a chat turn.

A turn is admitted (ownership, quota), recorded (user message, generation
row) and then handed to the backend: first as a live token stream, and when
the stream endpoint refuses or is unreachable, as a background task that a
monitor reconciles. Both routes finish through the same idempotent
completion path in the store.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from kbchat.backend_client import BackendClient, extract_upstream_error_message
from kbchat.errors import (
    ApiError,
    BackendFault,
    PersistenceFailure,
    QuotaExceeded,
    UpstreamRejected,
    UpstreamUnavailable,
)
from kbchat.monitor import GenerationMonitor
from kbchat.relay import StreamingRelay
from kbchat.repositories.quota import QuotaSnapshot
from kbchat.schemas import ChatRequest
from kbchat.security import AuthContext
from kbchat.store import ChatStore, resolve_active_indexes, stream_task_id

logger = logging.getLogger(__name__)


@contextmanager
def persistence_guard(message: str) -> Iterator[None]:
    try:
        yield
    except ApiError:
        raise
    except Exception as exc:
        raise PersistenceFailure(f"{message}: {exc}") from exc


@dataclass
class ChatStart:
    generation_id: str
    quota: QuotaSnapshot
    relay: StreamingRelay | None = None

    @property
    def streaming(self) -> bool:
        return self.relay is not None

    def body(self) -> dict[str, Any]:
        return {
            "status": "processing",
            "generation_id": self.generation_id,
            "quota": self.quota.as_dict(),
        }


class ChatOrchestrator:
    def __init__(
        self,
        *,
        store: ChatStore,
        backend: BackendClient,
        monitor: GenerationMonitor,
    ) -> None:
        self.store = store
        self.backend = backend
        self.monitor = monitor

    async def create_generation(self, *, auth: AuthContext, request: ChatRequest) -> ChatStart:
        generation, quota, payload = await asyncio.to_thread(self._admit, auth.user_id, request)

        upstream = await self.backend.open_stream(payload)
        if upstream is None:
            logger.info("chat_polling_path generation_id=%s", generation["id"])
            return await self._start_polling(generation=generation, payload=payload, quota=quota)

        await asyncio.to_thread(self._stamp_stream_marker, generation)
        logger.info("chat_streaming_path generation_id=%s", generation["id"])
        relay = StreamingRelay(
            store=self.store,
            monitor=self.monitor,
            generation=generation,
            upstream=upstream,
            quota=quota,
        )
        return ChatStart(generation_id=str(generation["id"]), quota=quota, relay=relay)

    def _admit(
        self, user_id: str, request: ChatRequest
    ) -> tuple[dict[str, Any], QuotaSnapshot, dict[str, Any]]:
        """Ownership, quota, user turn and generation row; returns the upstream payload."""
        conversation_id = request.conversation_id

        with persistence_guard("Failed to create or access conversation"):
            self.store.ensure_conversation_owned(
                user_id=user_id,
                conversation_id=conversation_id,
                title_seed=request.question,
            )
            allowed = self.store.allowed_indexes(user_id=user_id)
        active_indexes = resolve_active_indexes(requested=None, allowed=allowed)

        with persistence_guard("Failed to evaluate daily quota"):
            quota = self.store.consume_quota(user_id=user_id)
        if not quota.allowed:
            raise QuotaExceeded(quota)

        try:
            with persistence_guard("Failed to persist user message"):
                user_message = self.store.save_message(
                    conversation_id=conversation_id,
                    user_id=user_id,
                    role="user",
                    content=request.question,
                )
            with persistence_guard("Failed to initialize chat generation"):
                generation = self.store.create_generation(user_id=user_id, conversation_id=conversation_id)
        except ApiError as exc:
            exc.quota = quota
            raise

        try:
            chat_history = self.store.history_for_rag(
                user_id=user_id,
                conversation_id=conversation_id,
                exclude_message_id=str(user_message["id"]),
            )
        except Exception:
            logger.warning("chat_history_unavailable conversation_id=%s", conversation_id, exc_info=True)
            chat_history = []

        payload = request.upstream_payload(chat_history=chat_history, active_index_names=active_indexes)
        return generation, quota, payload

    def _stamp_stream_marker(self, generation: dict[str, Any]) -> None:
        try:
            self.store.set_task_id(
                user_id=str(generation["user_id"]),
                generation_id=str(generation["id"]),
                task_id=stream_task_id(str(generation["id"])),
            )
        except Exception:
            logger.warning("chat_stream_marker_not_stored generation_id=%s", generation["id"], exc_info=True)

    async def _start_polling(
        self,
        *,
        generation: dict[str, Any],
        payload: dict[str, Any],
        quota: QuotaSnapshot,
    ) -> ChatStart:
        async def fail(error: ApiError) -> ApiError:
            await asyncio.to_thread(self._mark_failed, generation, error.message)
            error.quota = quota
            return error

        try:
            reply = await self.backend.create_task(payload)
        except UpstreamUnavailable as exc:
            raise await fail(UpstreamUnavailable()) from exc

        if not reply.ok:
            if reply.status_code >= 500:
                message = extract_upstream_error_message(reply.payload, "Backend failed to process request.")
                raise await fail(BackendFault(message))
            message = extract_upstream_error_message(reply.payload, "Request was rejected by backend.")
            raise await fail(UpstreamRejected(message, status_code=reply.status_code))

        if not isinstance(reply.payload, dict) or "task_id" not in reply.payload:
            raise await fail(BackendFault("Unexpected backend response format."))
        task_id = reply.payload["task_id"]
        if isinstance(task_id, bool) or not isinstance(task_id, (str, int, float)):
            raise await fail(BackendFault("Backend response is missing task id."))

        try:
            with persistence_guard("Failed to store chat task id"):
                await asyncio.to_thread(
                    self.store.set_task_id,
                    user_id=str(generation["user_id"]),
                    generation_id=str(generation["id"]),
                    task_id=str(task_id),
                )
        except PersistenceFailure as exc:
            raise await fail(exc)

        self.monitor.start(generation_id=str(generation["id"]), user_id=str(generation["user_id"]))
        return ChatStart(generation_id=str(generation["id"]), quota=quota)

    def _mark_failed(self, generation: dict[str, Any], message: str) -> None:
        try:
            self.store.mark_generation_failed(
                user_id=str(generation["user_id"]),
                generation_id=str(generation["id"]),
                error_message=message,
            )
        except Exception:
            logger.warning("chat_generation_fail_mark_failed generation_id=%s", generation["id"], exc_info=True)
