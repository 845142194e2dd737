from __future__ import annotations

import json
import threading
from typing import Any

from kbchat.db.postgres import PostgresTxRunner, validate_identifier

_COLUMNS = ("id", "user_id", "title", "active_index_names", "created_at", "updated_at")


class InMemoryConversationsRepository:
    def __init__(
        self,
        conversations: dict[str, dict[str, Any]],
        index_access: dict[str, list[str]],
    ) -> None:
        self._conversations = conversations
        self._index_access = index_access
        self._lock = threading.RLock()

    def get(self, *, conversation_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conversations.get(conversation_id)
            return None if row is None else dict(row)

    def create(self, *, conversation: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._conversations.setdefault(str(conversation["id"]), dict(conversation))
            return dict(self._conversations[str(conversation["id"])])

    def update(self, *, user_id: str, conversation_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            row = self._conversations.get(conversation_id)
            if row is None or row.get("user_id") != user_id:
                return None
            row.update(changes)
            return dict(row)

    def list_allowed_indexes(self, *, user_id: str) -> list[str]:
        with self._lock:
            return list(self._index_access.get(user_id, []))


class PostgresConversationsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "conversations",
        index_access_table: str = "user_index_access",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)
        self._index_access_table = validate_identifier(index_access_table)

    @staticmethod
    def _row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
        out = dict(zip(_COLUMNS, row))
        out["id"] = str(out["id"])
        if not isinstance(out.get("active_index_names"), list):
            out["active_index_names"] = []
        for key in ("created_at", "updated_at"):
            value = out.get(key)
            if value is not None and not isinstance(value, str):
                out[key] = value.isoformat()
        return out

    def get(self, *, conversation_id: str) -> dict[str, Any] | None:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (conversation_id,))
                row = cur.fetchone()
            return None if row is None else self._row_to_dict(row)

        # Unscoped lookup; callers compare user_id themselves.
        return self._tx_runner.run_in_tx(user_id="system", fn=_op)

    def create(self, *, conversation: dict[str, Any]) -> dict[str, Any]:
        payload = dict(conversation)
        sql = f"""
            INSERT INTO {self._table_name} ({", ".join(_COLUMNS)})
            VALUES (%s, %s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (id) DO NOTHING
        """
        params = (
            payload["id"],
            payload["user_id"],
            payload.get("title", "New Session"),
            json.dumps(payload.get("active_index_names") or [], ensure_ascii=True),
            payload["created_at"],
            payload["updated_at"],
        )

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return payload

        return self._tx_runner.run_in_tx(user_id=str(payload["user_id"]), fn=_op)

    def update(self, *, user_id: str, conversation_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        allowed = {key: value for key, value in changes.items() if key in {"title", "updated_at"}}
        if not allowed:
            return self.get(conversation_id=conversation_id)
        columns = sorted(allowed)
        sql = f"""
            UPDATE {self._table_name}
            SET {", ".join(f"{column} = %s" for column in columns)}
            WHERE id = %s AND user_id = %s
            RETURNING {", ".join(_COLUMNS)}
        """
        params = tuple(allowed[column] for column in columns) + (conversation_id, user_id)

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return None if row is None else self._row_to_dict(row)

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)

    def list_allowed_indexes(self, *, user_id: str) -> list[str]:
        sql = f"SELECT index_name FROM {self._index_access_table} WHERE user_id = %s"

        def _op(conn: Any) -> list[str]:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id,))
                rows = cur.fetchall()
            return [str(row[0]) for row in rows if row and row[0]]

        return self._tx_runner.run_in_tx(user_id=user_id, fn=_op)
