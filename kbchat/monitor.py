"""Background reconciliation of chat generations against the upstream task API.

A monitor polls ``/chat/status/{task_id}`` with multiplicative backoff until
the generation reaches a terminal state or an absolute deadline passes. At
most one monitor runs per generation id; the registry enforces that and a
hard capacity, dropping (not queueing) starts beyond it. Generations owned by a
live stream carry a marker task id that is never polled; for those the monitor
only applies the stall and expiry rules.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from kbchat.backend_client import BackendClient, extract_upstream_error_message
from kbchat.config import GenerationConfig
from kbchat.errors import GenerationStalled, UpstreamUnavailable
from kbchat.evidence import sanitize_payload
from kbchat.repositories.generations import TERMINAL_STATUSES
from kbchat.store import ChatStore, is_stream_task_id, parse_iso

logger = logging.getLogger(__name__)

TASK_NOT_FOUND_MESSAGE = "Task not found."
BACKGROUND_FAILURE_MESSAGE = "RAG generation failed in background."
MISSING_ANSWER_MESSAGE = "Backend response is missing answer."
EXPIRED_MESSAGE = "Generation expired before completion."
MONITOR_TIMEOUT_MESSAGE = "Generation monitor timeout."


@dataclass(frozen=True)
class BackoffPolicy:
    initial_s: float = 0.5
    factor: float = 1.5
    max_s: float = 5.0

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "BackoffPolicy":
        return cls(
            initial_s=config.monitor_initial_interval_s,
            factor=config.monitor_backoff_factor,
            max_s=config.monitor_max_interval_s,
        )

    def next_interval(self, current: float) -> float:
        return min(current * self.factor, self.max_s)


class MonitorRegistry:
    """Bounded set of running monitor tasks keyed by generation id."""

    def __init__(self, capacity: int = 50) -> None:
        self.capacity = max(0, int(capacity))
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def is_active(self, generation_id: str) -> bool:
        with self._lock:
            return generation_id in self._tasks

    def start(self, generation_id: str, run: Callable[[], Awaitable[Any]]) -> bool:
        """Schedule ``run`` unless a monitor for this id is active or the registry is full."""
        with self._lock:
            if generation_id in self._tasks:
                return False
            if len(self._tasks) >= self.capacity:
                logger.warning(
                    "chat_generation_monitor_limit_reached capacity=%s generation_id=%s",
                    self.capacity,
                    generation_id,
                )
                return False
            task = asyncio.get_running_loop().create_task(self._supervise(generation_id, run))
            self._tasks[generation_id] = task
        return True

    async def _supervise(self, generation_id: str, run: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await run()
        except Exception:
            logger.exception("chat_generation_monitor_failed generation_id=%s", generation_id)
            return None
        finally:
            with self._lock:
                self._tasks.pop(generation_id, None)

    async def drain(self, *, cancel: bool = False) -> None:
        """Wait for every running task, cancelling them first when asked."""
        with self._lock:
            tasks = list(self._tasks.values())
        if cancel:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class GenerationMonitor:
    def __init__(
        self,
        *,
        store: ChatStore,
        backend: BackendClient,
        registry: MonitorRegistry,
        config: GenerationConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.backend = backend
        self.registry = registry
        self.config = config or store.config
        self.policy = BackoffPolicy.from_config(self.config)
        self._sleep = sleep
        self._monotonic = monotonic

    def start(
        self,
        *,
        generation_id: str,
        user_id: str,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        started = self.registry.start(
            generation_id,
            lambda: self.run(generation_id=generation_id, user_id=user_id, cancel=cancel),
        )
        if started:
            logger.info("chat_generation_monitor_started generation_id=%s", generation_id)
        return started

    async def _backoff(self, interval: float, deadline: float) -> float:
        remaining = deadline - self._monotonic()
        if remaining > 0:
            await self._sleep(min(interval, remaining))
        return self.policy.next_interval(interval)

    async def _fail(self, generation: dict[str, Any], message: str, *, status: str = "failed") -> str:
        await asyncio.to_thread(
            self.store.mark_generation_failed,
            user_id=str(generation["user_id"]),
            generation_id=str(generation["id"]),
            error_message=message,
            status=status,
        )
        return status

    def _stream_stalled(self, generation: dict[str, Any]) -> bool:
        created_at = parse_iso(generation.get("created_at"))
        if created_at is None:
            return False
        return (self.store.now() - created_at).total_seconds() > self.config.stall_threshold_s

    async def run(
        self,
        *,
        generation_id: str,
        user_id: str,
        cancel: asyncio.Event | None = None,
    ) -> str:
        """Drive one generation to a terminal state; returns the outcome."""
        interval = self.policy.initial_s
        deadline = self._monotonic() + self.config.monitor_max_duration_s

        while self._monotonic() < deadline:
            if cancel is not None and cancel.is_set():
                return "cancelled"

            generation = await asyncio.to_thread(
                self.store.get_generation, user_id=user_id, generation_id=generation_id
            )
            if generation is None or generation.get("status") in TERMINAL_STATUSES:
                return "stopped"

            expires_at = parse_iso(generation.get("expires_at"))
            if expires_at is not None and self.store.now() > expires_at:
                return await self._fail(generation, EXPIRED_MESSAGE, status="expired")

            task_id = generation.get("task_id")
            if task_id and is_stream_task_id(task_id):
                # Marker ids have no upstream task; only the stall rule applies.
                if self._stream_stalled(generation):
                    logger.info("chat_generation_monitor_stream_stalled generation_id=%s", generation_id)
                    return await self._fail(generation, GenerationStalled().message, status="expired")
                interval = await self._backoff(interval, deadline)
                continue
            if not task_id:
                interval = await self._backoff(interval, deadline)
                continue

            try:
                reply = await self.backend.get_task_status(str(task_id))
            except UpstreamUnavailable:
                interval = await self._backoff(interval, deadline)
                continue

            if not reply.ok:
                if reply.status_code == 404:
                    return await self._fail(generation, TASK_NOT_FOUND_MESSAGE)
                if reply.retryable:
                    interval = await self._backoff(interval, deadline)
                    continue
                fallback = (
                    "Backend failed to process status request."
                    if reply.status_code >= 500
                    else "Status request was rejected by backend."
                )
                return await self._fail(generation, extract_upstream_error_message(reply.payload, fallback))

            payload = reply.payload
            if not isinstance(payload, dict):
                interval = await self._backoff(interval, deadline)
                continue

            status = payload.get("status") if isinstance(payload.get("status"), str) else ""
            if status in ("pending", "processing"):
                interval = await self._backoff(interval, deadline)
                continue
            if status == "failed":
                detail = payload.get("detail")
                message = detail.strip() if isinstance(detail, str) and detail.strip() else BACKGROUND_FAILURE_MESSAGE
                return await self._fail(generation, message)

            evidence = sanitize_payload(payload)
            if evidence is None:
                return await self._fail(generation, MISSING_ANSWER_MESSAGE)
            await asyncio.to_thread(self.store.persist_completed_generation, generation=generation, evidence=evidence)
            return "completed"

        await asyncio.to_thread(
            self.store.mark_generation_failed,
            user_id=user_id,
            generation_id=generation_id,
            error_message=MONITOR_TIMEOUT_MESSAGE,
            status="expired",
        )
        return "expired"
