from __future__ import annotations

import json
import threading
from typing import Any

from kbchat.db.postgres import PostgresTxRunner, is_unique_violation, validate_identifier
from kbchat.errors import AssistantMessageConflict

_COLUMNS = (
    "id",
    "conversation_id",
    "user_id",
    "role",
    "content",
    "markdown_content",
    "citations",
    "matches",
    "generation_id",
    "created_at",
)


class InMemoryMessagesRepository:
    """Message rows keyed by id, with one assistant message per generation."""

    def __init__(self, messages: dict[str, dict[str, Any]]) -> None:
        self._messages = messages
        self._lock = threading.RLock()

    def create(self, *, message: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            generation_id = message.get("generation_id")
            if generation_id and message.get("role") == "assistant":
                for row in self._messages.values():
                    if row.get("generation_id") == generation_id and row.get("role") == "assistant":
                        raise AssistantMessageConflict(str(generation_id))
            self._messages[str(message["id"])] = dict(message)
            return dict(message)

    def get_assistant_for_generation(self, *, user_id: str, generation_id: str) -> dict[str, Any] | None:
        with self._lock:
            for row in self._messages.values():
                if (
                    row.get("generation_id") == generation_id
                    and row.get("role") == "assistant"
                    and row.get("user_id") == user_id
                ):
                    return dict(row)
            return None

    def list_for_conversation(self, *, user_id: str, conversation_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._messages.values()
                if row.get("user_id") == user_id and row.get("conversation_id") == conversation_id
            ]
        return sorted(rows, key=lambda row: str(row.get("created_at", "")))


class PostgresMessagesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "messages") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
        out = dict(zip(_COLUMNS, row))
        for key in ("citations", "matches"):
            if not isinstance(out.get(key), list):
                out[key] = []
        out["conversation_id"] = str(out["conversation_id"])
        created_at = out.get("created_at")
        if created_at is not None and not isinstance(created_at, str):
            out["created_at"] = created_at.isoformat()
        return out

    def create(self, *, message: dict[str, Any]) -> dict[str, Any]:
        payload = dict(message)
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s)
        """
        params = (
            payload["id"],
            payload["conversation_id"],
            payload["user_id"],
            payload["role"],
            payload["content"],
            payload.get("markdown_content") or payload["content"],
            json.dumps(payload.get("citations") or [], ensure_ascii=True),
            json.dumps(payload.get("matches") or [], ensure_ascii=True),
            payload.get("generation_id"),
            payload["created_at"],
        )

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return payload

        try:
            return self._tx_runner.run_in_tx(user_id=str(payload["user_id"]), fn=_op)
        except Exception as exc:
            if is_unique_violation(exc) and payload.get("generation_id"):
                raise AssistantMessageConflict(str(payload["generation_id"])) from exc
            raise

    def get_assistant_for_generation(self, *, user_id: str, generation_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE user_id = %s AND generation_id = %s AND role = 'assistant'
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, generation_id))
                row = cur.fetchone()
            return None if row is None else self._row_to_dict(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def list_for_conversation(self, *, user_id: str, conversation_id: str) -> list[dict[str, Any]]:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE user_id = %s AND conversation_id = %s
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, conversation_id))
                rows = cur.fetchall()
            return [self._row_to_dict(row) for row in rows]

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)
