from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_BACKEND_API_URL = "http://localhost:8000"


def _env_str(env: Mapping[str, str], *names: str, default: str = "") -> str:
    for name in names:
        raw = str(env.get(name, "")).strip()
        if raw:
            return raw
    return default


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class BackendConfig:
    base_url: str
    internal_secret: str
    timeout_s: float
    stream_connect_timeout_s: float

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BackendConfig":
        env = os.environ if environ is None else environ
        return cls(
            base_url=_env_str(env, "BACKEND_API_URL", "API_URL", default=DEFAULT_BACKEND_API_URL).rstrip("/"),
            internal_secret=_env_str(env, "BACKEND_INTERNAL_SECRET", "SERVER_INTERNAL_SECRET"),
            timeout_s=_env_float(env, "BACKEND_TIMEOUT_S", default=30.0, minimum=0.1),
            stream_connect_timeout_s=_env_float(env, "BACKEND_STREAM_CONNECT_TIMEOUT_S", default=10.0, minimum=0.1),
        )


@dataclass(frozen=True)
class GenerationConfig:
    """Timing parameters of the generation lifecycle, in seconds."""

    generation_ttl_s: float = 1200.0
    monitor_initial_interval_s: float = 0.5
    monitor_backoff_factor: float = 1.5
    monitor_max_interval_s: float = 5.0
    monitor_max_duration_s: float = 600.0
    monitor_max_concurrent: int = 50
    expiry_grace_s: float = 1200.0
    stall_threshold_s: float = 300.0
    history_limit: int = 10
    daily_limit: int = 10
    error_message_max_chars: int = 500

    def __post_init__(self) -> None:
        if self.monitor_backoff_factor < 1:
            raise ValueError("monitor backoff factor must be >= 1")
        if self.monitor_max_interval_s < self.monitor_initial_interval_s:
            raise ValueError("monitor max interval must be >= initial interval")
        if self.expiry_grace_s <= self.monitor_max_duration_s:
            raise ValueError("expiry grace window must exceed the monitor max duration")
        if self.stall_threshold_s > self.monitor_max_duration_s:
            raise ValueError("stall threshold must not exceed the monitor max duration")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GenerationConfig":
        env = os.environ if environ is None else environ
        return cls(
            generation_ttl_s=float(_env_int(env, "CHAT_GENERATION_TTL_S", default=1200, minimum=1)),
            monitor_initial_interval_s=_env_int(env, "CHAT_MONITOR_INITIAL_INTERVAL_MS", default=500, minimum=1)
            / 1000.0,
            monitor_backoff_factor=_env_float(env, "CHAT_MONITOR_BACKOFF_FACTOR", default=1.5, minimum=1.0),
            monitor_max_interval_s=_env_int(env, "CHAT_MONITOR_MAX_INTERVAL_MS", default=5000, minimum=1) / 1000.0,
            monitor_max_duration_s=float(_env_int(env, "CHAT_MONITOR_MAX_DURATION_S", default=600, minimum=1)),
            monitor_max_concurrent=_env_int(env, "CHAT_MONITOR_MAX_CONCURRENT", default=50, minimum=1),
            expiry_grace_s=float(_env_int(env, "CHAT_EXPIRY_GRACE_S", default=1200, minimum=1)),
            stall_threshold_s=float(_env_int(env, "CHAT_STALL_THRESHOLD_S", default=300, minimum=1)),
            history_limit=_env_int(env, "CHAT_HISTORY_LIMIT", default=10, minimum=0),
            daily_limit=max(1, min(10000, _env_int(env, "CHAT_DAILY_LIMIT", default=10, minimum=1))),
        )
