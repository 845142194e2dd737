from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any


def import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def is_unique_violation(exc: BaseException) -> bool:
    """True for a PostgreSQL unique_violation (SQLSTATE 23505)."""
    return getattr(exc, "sqlstate", None) == "23505"


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction scoped to the acting user."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        user_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not user_id.strip():
            raise ValueError("user_id must not be empty")

        psycopg = import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_user', %s, true)", (user_id,))
            result = fn(conn)
            conn.commit()
            return result
