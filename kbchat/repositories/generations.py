from __future__ import annotations

import threading
from typing import Any

from kbchat.db.postgres import PostgresTxRunner, validate_identifier

GENERATION_STATUSES = ("processing", "completed", "failed", "expired")
TERMINAL_STATUSES = frozenset({"completed", "failed", "expired"})

_COLUMNS = (
    "id",
    "conversation_id",
    "user_id",
    "task_id",
    "status",
    "error_message",
    "assistant_message_id",
    "created_at",
    "updated_at",
    "completed_at",
    "expires_at",
)
_MUTABLE_COLUMNS = frozenset(
    {"task_id", "status", "error_message", "assistant_message_id", "updated_at", "completed_at"}
)


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - _MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"immutable generation fields: {sorted(unknown)}")
    status = changes.get("status")
    if status is not None and status not in GENERATION_STATUSES:
        raise ValueError(f"unknown generation status: {status}")


class InMemoryChatGenerationsRepository:
    def __init__(self, generations: dict[str, dict[str, Any]]) -> None:
        self._generations = generations
        self._lock = threading.RLock()

    def create(self, *, generation: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            generation_id = str(generation["id"])
            if generation_id in self._generations:
                raise ValueError(f"generation id already used: {generation_id}")
            self._generations[generation_id] = dict(generation)
            return dict(generation)

    def get(self, *, user_id: str, generation_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._generations.get(generation_id)
            if row is None or row.get("user_id") != user_id:
                return None
            return dict(row)

    def get_latest_processing(self, *, user_id: str, conversation_id: str) -> dict[str, Any] | None:
        with self._lock:
            rows = [
                row
                for row in self._generations.values()
                if row.get("user_id") == user_id
                and row.get("conversation_id") == conversation_id
                and row.get("status") == "processing"
            ]
            if not rows:
                return None
            newest = max(rows, key=lambda row: (str(row.get("updated_at", "")), str(row.get("created_at", ""))))
            return dict(newest)

    def update_if_processing(
        self,
        *,
        user_id: str,
        generation_id: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Apply ``changes`` only while the row is still ``processing``."""
        _check_changes(changes)
        with self._lock:
            row = self._generations.get(generation_id)
            if row is None or row.get("user_id") != user_id:
                return None
            if row.get("status") != "processing":
                return None
            row.update(changes)
            return dict(row)


class PostgresChatGenerationsRepository:
    """Generation rows in PostgreSQL; every query is scoped by user_id."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "chat_generations") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
        out = dict(zip(_COLUMNS, row))
        for key in ("created_at", "updated_at", "completed_at", "expires_at"):
            value = out.get(key)
            if value is not None and not isinstance(value, str):
                out[key] = value.isoformat()
        for key in ("id", "conversation_id"):
            if out.get(key) is not None:
                out[key] = str(out[key])
        return out

    def create(self, *, generation: dict[str, Any]) -> dict[str, Any]:
        payload = dict(generation)
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(_COLUMNS))})
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(payload.get(column) for column in _COLUMNS))
            return payload

        return self._tx_runner.run_in_tx(user_id=str(payload["user_id"]), fn=_op)

    def get(self, *, user_id: str, generation_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE user_id = %s AND id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, generation_id))
                row = cur.fetchone()
            return None if row is None else self._row_to_dict(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def get_latest_processing(self, *, user_id: str, conversation_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE user_id = %s AND conversation_id = %s AND status = 'processing'
            ORDER BY updated_at DESC, created_at DESC
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id, conversation_id))
                row = cur.fetchone()
            return None if row is None else self._row_to_dict(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def update_if_processing(
        self,
        *,
        user_id: str,
        generation_id: str,
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        _check_changes(changes)
        if not changes:
            return self.get(user_id=user_id, generation_id=generation_id)
        columns = sorted(changes)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        sql = f"""
            UPDATE {self._table_name}
            SET {assignments}
            WHERE user_id = %s AND id = %s AND status = 'processing'
            RETURNING {", ".join(_COLUMNS)}
        """
        params = tuple(changes[column] for column in columns) + (user_id, generation_id)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return None if row is None else self._row_to_dict(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)
