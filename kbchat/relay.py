from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from kbchat.backend_client import UpstreamStream
from kbchat.evidence import sanitize_evidence
from kbchat.monitor import GenerationMonitor
from kbchat.repositories.quota import QuotaSnapshot
from kbchat.sse import SseTranscript, format_sse_event
from kbchat.store import ChatStore

logger = logging.getLogger(__name__)


class StreamingRelay:
    """Forward an upstream token stream to the client and persist its final answer.

    When the client goes away mid-stream the remaining upstream bytes are
    drained by a task in the monitor registry so the answer is still stored.
    """

    def __init__(
        self,
        *,
        store: ChatStore,
        monitor: GenerationMonitor,
        generation: dict[str, Any],
        upstream: UpstreamStream,
        quota: QuotaSnapshot | None = None,
    ) -> None:
        self.store = store
        self.monitor = monitor
        self.generation = generation
        self.upstream = upstream
        self.quota = quota
        self.transcript = SseTranscript()
        self.read_failed = False

    @property
    def generation_id(self) -> str:
        return str(self.generation["id"])

    @property
    def user_id(self) -> str:
        return str(self.generation["user_id"])

    def meta_event(self) -> bytes:
        meta: dict[str, Any] = {"type": "meta", "generation_id": self.generation_id}
        if self.quota is not None:
            meta["quota"] = self.quota.as_dict()
        return format_sse_event(meta)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        yield self.meta_event()
        chunks = self.upstream.aiter_bytes()
        detached = False
        try:
            try:
                async for chunk in chunks:
                    try:
                        yield chunk
                    finally:
                        self.transcript.feed(chunk)
            except httpx.HTTPError as exc:
                self._read_failed(exc)
                return
            except (GeneratorExit, asyncio.CancelledError):
                detached = self._detach(chunks)
                raise
            await asyncio.to_thread(self.persist)
        finally:
            if not detached:
                await self.upstream.aclose()

    def _read_failed(self, exc: Exception) -> None:
        self.read_failed = True
        logger.warning(
            "chat_stream_read_failed generation_id=%s error=%s",
            self.generation_id,
            type(exc).__name__,
        )
        # The monitor settles the generation through the stall and expiry rules.
        self.monitor.start(generation_id=self.generation_id, user_id=self.user_id)

    def _detach(self, chunks: AsyncIterator[bytes]) -> bool:
        started = self.monitor.registry.start(self.generation_id, lambda: self._drain_detached(chunks))
        if started:
            logger.info("chat_stream_client_disconnected generation_id=%s", self.generation_id)
        else:
            logger.warning("chat_stream_drain_not_started generation_id=%s", self.generation_id)
        return started

    async def _drain_detached(self, chunks: AsyncIterator[bytes]) -> bool:
        try:
            async for chunk in chunks:
                self.transcript.feed(chunk)
        except httpx.HTTPError as exc:
            self.read_failed = True
            logger.warning(
                "chat_stream_drain_failed generation_id=%s error=%s",
                self.generation_id,
                type(exc).__name__,
            )
            return False
        finally:
            await self.upstream.aclose()
        return await asyncio.to_thread(self.persist)

    def persist(self) -> bool:
        """Store the streamed answer; never raises into the client stream."""
        transcript = self.transcript
        evidence = None
        if transcript.has_answer:
            evidence = sanitize_evidence(transcript.accumulated_answer, transcript.raw_matches())
        try:
            if evidence is None:
                if transcript.last_error:
                    self.store.mark_generation_failed(
                        user_id=self.user_id,
                        generation_id=self.generation_id,
                        error_message=transcript.last_error,
                    )
                else:
                    logger.info("chat_stream_ended_without_answer generation_id=%s", self.generation_id)
                return False
            self.store.persist_completed_generation(generation=self.generation, evidence=evidence)
        except Exception:
            logger.exception("chat_stream_persist_failed generation_id=%s", self.generation_id)
            return False
        logger.info("chat_stream_persisted generation_id=%s", self.generation_id)
        return True
