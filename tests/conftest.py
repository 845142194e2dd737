from __future__ import annotations

import pathlib
import sys
from datetime import UTC, datetime, timedelta

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kbchat.backend_client import BackendClient
from kbchat.config import BackendConfig, GenerationConfig
from kbchat.main import create_app
from kbchat.monitor import MonitorRegistry
from kbchat.store import ChatStore, store

JWT_SECRET = "jwt_test_secret"
BACKEND_URL = "http://backend.test"


def _issue_token(*, secret: str, user_id: str) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "kbchat.test",
        "aud": "kbchat.api",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class FakeClock:
    """Wall clock, monotonic clock and sleep that only move when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class RecordingMonitor:
    def __init__(self) -> None:
        self.started: list[tuple[str, str]] = []
        self.registry = MonitorRegistry()

    def start(self, *, generation_id: str, user_id: str, cancel=None) -> bool:
        self.started.append((generation_id, user_id))
        return True


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str, user_id: str = "user_a"):
        self.raw = client
        self._jwt_secret = jwt_secret
        self.user_id = user_id

    def as_user(self, user_id: str) -> "AuthenticatedClient":
        return AuthenticatedClient(self.raw, jwt_secret=self._jwt_secret, user_id=user_id)

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/") and "Authorization" not in headers:
            token = _issue_token(secret=self._jwt_secret, user_id=self.user_id)
            headers["Authorization"] = f"Bearer {token}"
        return self.raw.request(method, url, headers=headers, **kwargs)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "kbchat.test")
    monkeypatch.setenv("JWT_AUDIENCE", "kbchat.api")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    store.reset()
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chat_store(clock: FakeClock) -> ChatStore:
    return ChatStore(config=GenerationConfig(), clock=clock.now)


@pytest.fixture
def recording_monitor() -> RecordingMonitor:
    return RecordingMonitor()


@pytest.fixture
def make_backend():
    def _make(handler, *, secret: str = "s3cret") -> BackendClient:
        config = BackendConfig(
            base_url=BACKEND_URL,
            internal_secret=secret,
            timeout_s=5.0,
            stream_connect_timeout_s=5.0,
        )
        return BackendClient(config, transport=httpx.MockTransport(handler))

    return _make


@pytest.fixture
def make_client(chat_store: ChatStore, recording_monitor: RecordingMonitor, make_backend):
    def _make(handler, *, user_id: str = "user_a", monitor=None) -> AuthenticatedClient:
        app = create_app(chat_store=chat_store, backend=make_backend(handler), monitor=monitor or recording_monitor)
        return AuthenticatedClient(TestClient(app), jwt_secret=JWT_SECRET, user_id=user_id)

    return _make
