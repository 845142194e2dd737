from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from kbchat.db.postgres import PostgresTxRunner

MAX_DAILY_LIMIT = 10000


@dataclass(frozen=True)
class QuotaSnapshot:
    allowed: bool
    limit: int
    used: int
    remaining: int
    reset_at: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
        }

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Used": str(self.used),
            "X-RateLimit-Reset": self.reset_at,
        }


def clamp_limit(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        value = default
    return max(1, min(MAX_DAILY_LIMIT, int(value)))


def next_utc_midnight_iso(now: datetime) -> str:
    today = now.astimezone(UTC).date()
    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=UTC).isoformat()


class InMemoryQuotaRepository:
    def __init__(self, limits: dict[str, int], usage: dict[tuple[str, date], int]) -> None:
        self._limits = limits
        self._usage = usage
        self._lock = threading.RLock()

    def _snapshot(self, *, user_id: str, default_limit: int, now: datetime, allowed: bool) -> QuotaSnapshot:
        limit = clamp_limit(self._limits.get(user_id), default_limit)
        used = self._usage.get((user_id, now.astimezone(UTC).date()), 0)
        return QuotaSnapshot(
            allowed=allowed,
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            reset_at=next_utc_midnight_iso(now),
        )

    def consume(self, *, user_id: str, default_limit: int, now: datetime) -> QuotaSnapshot:
        with self._lock:
            limit = clamp_limit(self._limits.get(user_id), default_limit)
            key = (user_id, now.astimezone(UTC).date())
            used = self._usage.get(key, 0)
            if used >= limit:
                return self._snapshot(user_id=user_id, default_limit=default_limit, now=now, allowed=False)
            self._usage[key] = used + 1
            return self._snapshot(user_id=user_id, default_limit=default_limit, now=now, allowed=True)

    def peek(self, *, user_id: str, default_limit: int, now: datetime) -> QuotaSnapshot:
        with self._lock:
            snapshot = self._snapshot(user_id=user_id, default_limit=default_limit, now=now, allowed=True)
            return QuotaSnapshot(
                allowed=snapshot.remaining > 0,
                limit=snapshot.limit,
                used=snapshot.used,
                remaining=snapshot.remaining,
                reset_at=snapshot.reset_at,
            )


class PostgresQuotaRepository:
    """Daily quota backed by the ``consume_daily_quota`` SQL function."""

    def __init__(self, *, tx_runner: PostgresTxRunner) -> None:
        self._tx_runner = tx_runner

    @staticmethod
    def _parse_row(row: tuple[Any, ...] | None, *, default_limit: int, now: datetime) -> QuotaSnapshot:
        if row is None:
            raise RuntimeError("Invalid response from `consume_daily_quota`.")
        allowed, limit, used, remaining, reset_at = row
        if isinstance(reset_at, datetime):
            reset_at = reset_at.astimezone(UTC).isoformat()
        return QuotaSnapshot(
            allowed=bool(allowed),
            limit=clamp_limit(limit, default_limit),
            used=max(0, int(used or 0)),
            remaining=max(0, int(remaining or 0)),
            reset_at=str(reset_at or next_utc_midnight_iso(now)),
        )

    def consume(self, *, user_id: str, default_limit: int, now: datetime) -> QuotaSnapshot:
        def _op(conn: Any) -> tuple[Any, ...] | None:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT allowed, daily_limit, used, remaining, reset_at FROM consume_daily_quota(%s, %s)",
                    (user_id, default_limit),
                )
                return cur.fetchone()

        row = self._tx_runner.run_in_tx(user_id=user_id, fn=_op)
        return self._parse_row(row, default_limit=default_limit, now=now)

    def peek(self, *, user_id: str, default_limit: int, now: datetime) -> QuotaSnapshot:
        usage_date = now.astimezone(UTC).date()

        def _op(conn: Any) -> tuple[Any, Any]:
            with conn.cursor() as cur:
                cur.execute("SELECT daily_limit FROM user_limits WHERE user_id = %s", (user_id,))
                limit_row = cur.fetchone()
                cur.execute(
                    "SELECT request_count FROM daily_usage WHERE user_id = %s AND usage_date = %s",
                    (user_id, usage_date),
                )
                usage_row = cur.fetchone()
            return limit_row, usage_row

        limit_row, usage_row = self._tx_runner.run_in_tx(user_id=user_id, fn=_op)
        limit = clamp_limit(limit_row[0] if limit_row else None, default_limit)
        used = max(0, int(usage_row[0])) if usage_row else 0
        remaining = max(0, limit - used)
        return QuotaSnapshot(
            allowed=remaining > 0,
            limit=limit,
            used=used,
            remaining=remaining,
            reset_at=next_utc_midnight_iso(now),
        )
