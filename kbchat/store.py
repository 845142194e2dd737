from __future__ import annotations

import logging
import os
import re
import threading
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any

from kbchat.config import GenerationConfig
from kbchat.db.postgres import PostgresTxRunner, import_psycopg
from kbchat.db.schema import PostgresSchemaManager
from kbchat.errors import (
    AssistantMessageConflict,
    ConversationForbidden,
    InvalidRequest,
    PersistenceFailure,
)
from kbchat.evidence import SanitizedEvidence
from kbchat.repositories import (
    InMemoryChatGenerationsRepository,
    InMemoryConversationsRepository,
    InMemoryMessagesRepository,
    InMemoryQuotaRepository,
    PostgresChatGenerationsRepository,
    PostgresConversationsRepository,
    PostgresMessagesRepository,
    PostgresQuotaRepository,
    QuotaSnapshot,
)

logger = logging.getLogger(__name__)

CONVERSATION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
DEFAULT_TITLE = "New Session"
MAX_TITLE_CHARS = 120
STREAM_TASK_PREFIX = "stream-"


def is_valid_conversation_id(value: str) -> bool:
    return bool(CONVERSATION_ID_RE.match(value.strip()))


def stream_task_id(generation_id: str) -> str:
    return f"{STREAM_TASK_PREFIX}{generation_id}"


def is_stream_task_id(task_id: Any) -> bool:
    return isinstance(task_id, str) and task_id.startswith(STREAM_TASK_PREFIX)


def parse_iso(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _normalize_index_names(names: Any) -> list[str]:
    if not isinstance(names, list):
        return []
    out: list[str] = []
    for item in names:
        if not isinstance(item, str):
            continue
        trimmed = item.strip()
        if trimmed and trimmed not in out:
            out.append(trimmed)
    return out


def resolve_active_indexes(*, requested: Any, allowed: Any) -> list[str]:
    """Intersect requested index names with the user's grants.

    No grants means no restriction; no request means every granted index.
    """
    requested_names = _normalize_index_names(requested)
    allowed_names = _normalize_index_names(allowed)
    if not allowed_names:
        return requested_names
    if not requested_names:
        return allowed_names
    allowed_set = set(allowed_names)
    return [name for name in requested_names if name in allowed_set]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChatStore:
    """Conversations, messages, generations and quota behind one facade."""

    def __init__(
        self,
        *,
        config: GenerationConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or GenerationConfig.from_env()
        self.clock = clock or _utcnow
        self.conversations: dict[str, dict[str, Any]] = {}
        self.index_access: dict[str, list[str]] = {}
        self.generations: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, dict[str, Any]] = {}
        self.quota_limits: dict[str, int] = {}
        self.quota_usage: dict[tuple[str, date], int] = {}
        self._lock = threading.RLock()
        self._bind_repositories()

    def _bind_repositories(self) -> None:
        self.conversations_repository = InMemoryConversationsRepository(self.conversations, self.index_access)
        self.generations_repository = InMemoryChatGenerationsRepository(self.generations)
        self.messages_repository = InMemoryMessagesRepository(self.messages)
        self.quota_repository = InMemoryQuotaRepository(self.quota_limits, self.quota_usage)

    def reset(self) -> None:
        with self._lock:
            self.conversations.clear()
            self.index_access.clear()
            self.generations.clear()
            self.messages.clear()
            self.quota_limits.clear()
            self.quota_usage.clear()

    def now(self) -> datetime:
        return self.clock()

    def _now_iso(self) -> str:
        return self.now().astimezone(UTC).isoformat()

    # conversations

    def ensure_conversation_owned(
        self,
        *,
        user_id: str,
        conversation_id: str,
        title_seed: str | None = None,
    ) -> dict[str, Any]:
        if not is_valid_conversation_id(conversation_id):
            raise InvalidRequest("Conversation id must be a valid UUID.")
        conversation_id = conversation_id.strip()
        existing = self.conversations_repository.get(conversation_id=conversation_id)
        if existing is not None and existing.get("user_id") != user_id:
            raise ConversationForbidden()

        now_iso = self._now_iso()
        if existing is None:
            title = (title_seed or DEFAULT_TITLE).strip()[:MAX_TITLE_CHARS] or DEFAULT_TITLE
            return self.conversations_repository.create(
                conversation={
                    "id": conversation_id,
                    "user_id": user_id,
                    "title": title,
                    "active_index_names": [],
                    "created_at": now_iso,
                    "updated_at": now_iso,
                }
            )

        changes: dict[str, Any] = {"updated_at": now_iso}
        next_title = (title_seed or "").strip()[:MAX_TITLE_CHARS]
        current_title = existing.get("title")
        if next_title and (
            not isinstance(current_title, str) or not current_title.strip() or current_title == DEFAULT_TITLE
        ):
            changes["title"] = next_title
        updated = self.conversations_repository.update(
            user_id=user_id,
            conversation_id=conversation_id,
            changes=changes,
        )
        return updated or existing

    def get_owned_conversation(self, *, user_id: str, conversation_id: str) -> dict[str, Any] | None:
        if not is_valid_conversation_id(conversation_id):
            raise InvalidRequest("Conversation id must be a valid UUID.")
        conversation = self.conversations_repository.get(conversation_id=conversation_id.strip())
        if conversation is None or conversation.get("user_id") != user_id:
            return None
        return conversation

    def allowed_indexes(self, *, user_id: str) -> list[str]:
        return _normalize_index_names(self.conversations_repository.list_allowed_indexes(user_id=user_id))

    # quota

    def consume_quota(self, *, user_id: str) -> QuotaSnapshot:
        return self.quota_repository.consume(
            user_id=user_id,
            default_limit=self.config.daily_limit,
            now=self.now(),
        )

    def peek_quota(self, *, user_id: str) -> QuotaSnapshot:
        return self.quota_repository.peek(
            user_id=user_id,
            default_limit=self.config.daily_limit,
            now=self.now(),
        )

    # messages

    def save_message(
        self,
        *,
        conversation_id: str,
        user_id: str,
        role: str,
        content: str,
        markdown_content: str | None = None,
        citations: list[str] | None = None,
        matches: list[dict[str, Any]] | None = None,
        generation_id: str | None = None,
    ) -> dict[str, Any]:
        message = {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "user_id": user_id,
            "role": role,
            "content": content,
            "markdown_content": markdown_content if markdown_content is not None else content,
            "citations": list(citations or []),
            "matches": list(matches or []),
            "generation_id": generation_id,
            "created_at": self._now_iso(),
        }
        return self.messages_repository.create(message=message)

    def list_messages(self, *, user_id: str, conversation_id: str) -> list[dict[str, Any]]:
        return self.messages_repository.list_for_conversation(user_id=user_id, conversation_id=conversation_id)

    def history_for_rag(
        self,
        *,
        user_id: str,
        conversation_id: str,
        exclude_message_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, str]]:
        """Most recent turns, oldest first, in the ``{role, content}`` shape sent upstream."""
        max_turns = self.config.history_limit if limit is None else limit
        if max_turns <= 0:
            return []
        rows = [
            row
            for row in self.list_messages(user_id=user_id, conversation_id=conversation_id)
            if row.get("id") != exclude_message_id and isinstance(row.get("content"), str)
        ]
        return [{"role": str(row["role"]), "content": str(row["content"])} for row in rows[-max_turns:]]

    def get_assistant_message(self, *, user_id: str, generation_id: str) -> dict[str, Any] | None:
        return self.messages_repository.get_assistant_for_generation(user_id=user_id, generation_id=generation_id)

    # generations

    def create_generation(self, *, user_id: str, conversation_id: str) -> dict[str, Any]:
        now = self.now().astimezone(UTC)
        generation = {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "user_id": user_id,
            "task_id": None,
            "status": "processing",
            "error_message": None,
            "assistant_message_id": None,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "completed_at": None,
            "expires_at": (now + timedelta(seconds=self.config.generation_ttl_s)).isoformat(),
        }
        return self.generations_repository.create(generation=generation)

    def get_generation(self, *, user_id: str, generation_id: str) -> dict[str, Any] | None:
        return self.generations_repository.get(user_id=user_id, generation_id=generation_id)

    def get_latest_processing_generation(self, *, user_id: str, conversation_id: str) -> dict[str, Any] | None:
        return self.generations_repository.get_latest_processing(user_id=user_id, conversation_id=conversation_id)

    def set_task_id(self, *, user_id: str, generation_id: str, task_id: str) -> dict[str, Any] | None:
        return self.generations_repository.update_if_processing(
            user_id=user_id,
            generation_id=generation_id,
            changes={"task_id": str(task_id), "updated_at": self._now_iso()},
        )

    def mark_generation_failed(
        self,
        *,
        user_id: str,
        generation_id: str,
        error_message: str,
        status: str = "failed",
    ) -> dict[str, Any] | None:
        if status not in {"failed", "expired"}:
            raise ValueError(f"not a failure status: {status}")
        now_iso = self._now_iso()
        updated = self.generations_repository.update_if_processing(
            user_id=user_id,
            generation_id=generation_id,
            changes={
                "status": status,
                "error_message": (error_message or "Generation failed.")[: self.config.error_message_max_chars],
                "updated_at": now_iso,
                "completed_at": now_iso,
            },
        )
        if updated is not None:
            logger.info("chat_generation_%s generation_id=%s", status, generation_id)
        return updated

    def mark_generation_completed(
        self,
        *,
        user_id: str,
        generation_id: str,
        assistant_message_id: str,
    ) -> dict[str, Any] | None:
        now_iso = self._now_iso()
        updated = self.generations_repository.update_if_processing(
            user_id=user_id,
            generation_id=generation_id,
            changes={
                "status": "completed",
                "assistant_message_id": assistant_message_id,
                "error_message": None,
                "updated_at": now_iso,
                "completed_at": now_iso,
            },
        )
        if updated is not None:
            logger.info("chat_generation_completed generation_id=%s", generation_id)
        return updated

    def persist_completed_generation(
        self,
        *,
        generation: dict[str, Any],
        evidence: SanitizedEvidence,
    ) -> dict[str, Any] | None:
        """Store the assistant answer once per generation and mark it completed.

        Losing the insert race to another writer is not an error: the
        existing message is looked up and used instead.
        """
        user_id = str(generation["user_id"])
        generation_id = str(generation["id"])
        try:
            message = self.save_message(
                conversation_id=str(generation["conversation_id"]),
                user_id=user_id,
                role="assistant",
                content=evidence.answer,
                markdown_content=evidence.answer,
                citations=evidence.sources,
                matches=evidence.matches,
                generation_id=generation_id,
            )
        except AssistantMessageConflict:
            logger.info("assistant_message_already_stored generation_id=%s", generation_id)
            message = self.get_assistant_message(user_id=user_id, generation_id=generation_id)
        if not message or not message.get("id"):
            raise PersistenceFailure("Failed to resolve assistant message for completed generation.")
        return self.mark_generation_completed(
            user_id=user_id,
            generation_id=generation_id,
            assistant_message_id=str(message["id"]),
        )


class PostgresChatStore(ChatStore):
    """Store whose repositories live in PostgreSQL."""

    TABLES = ("messages", "chat_generations", "conversations", "daily_usage", "user_limits", "user_index_access")

    def __init__(
        self,
        *,
        dsn: str,
        config: GenerationConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        apply_schema: bool = False,
    ) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must be provided for postgres store backend")
        self._dsn = dsn.strip()
        self._tx_runner = PostgresTxRunner(self._dsn)
        if apply_schema:
            PostgresSchemaManager(self._dsn).apply()
        super().__init__(config=config, clock=clock)

    def _bind_repositories(self) -> None:
        self.conversations_repository = PostgresConversationsRepository(tx_runner=self._tx_runner)
        self.generations_repository = PostgresChatGenerationsRepository(tx_runner=self._tx_runner)
        self.messages_repository = PostgresMessagesRepository(tx_runner=self._tx_runner)
        self.quota_repository = PostgresQuotaRepository(tx_runner=self._tx_runner)

    def reset(self) -> None:
        psycopg = import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"TRUNCATE TABLE {', '.join(self.TABLES)}")
            conn.commit()
        super().reset()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> ChatStore:
    env = os.environ if environ is None else environ
    config = GenerationConfig.from_env(env)
    backend = env.get("KBCHAT_STORE_BACKEND", "memory").strip().lower()
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when KBCHAT_STORE_BACKEND=postgres")
        apply_schema = env.get("POSTGRES_APPLY_SCHEMA", "false").strip().lower() in {"1", "true", "yes", "on"}
        return PostgresChatStore(dsn=dsn, config=config, apply_schema=apply_schema)
    return ChatStore(config=config)


store = create_store_from_env()
