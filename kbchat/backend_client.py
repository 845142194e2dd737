from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from kbchat.config import BackendConfig
from kbchat.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def read_upstream_payload(body: bytes | str) -> Any:
    """Decode a response body as JSON, falling back to the raw text."""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def extract_upstream_error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("detail", "error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return fallback


@dataclass
class UpstreamReply:
    status_code: int
    payload: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


class UpstreamStream:
    """An open ``/chat/stream`` response; the caller must ``aclose`` it."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self.closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class BackendClient:
    def __init__(
        self,
        config: BackendConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport

    def build_url(self, path: str) -> str:
        normalized = path if path.startswith("/") else f"/{path}"
        return f"{self.config.base_url}{normalized}"

    def build_headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(extra or {})
        if self.config.internal_secret:
            headers["X-Internal-Secret"] = self.config.internal_secret
        return headers

    def _client(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def open_stream(self, payload: dict[str, Any]) -> UpstreamStream | None:
        """Start the token stream; None when the backend refuses or is unreachable."""
        client = self._client(httpx.Timeout(None, connect=self.config.stream_connect_timeout_s))
        request = client.build_request(
            "POST",
            self.build_url("/chat/stream"),
            json=payload,
            headers=self.build_headers({"Accept": "text/event-stream"}),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.warning("backend_stream_unreachable error=%s", type(exc).__name__)
            await client.aclose()
            return None
        if not response.is_success:
            logger.warning("backend_stream_refused status=%s", response.status_code)
            await response.aclose()
            await client.aclose()
            return None
        return UpstreamStream(client, response)

    async def _request(self, method: str, path: str, *, json_body: Any = None) -> UpstreamReply:
        async with self._client(httpx.Timeout(self.config.timeout_s)) as client:
            try:
                response = await client.request(
                    method,
                    self.build_url(path),
                    json=json_body,
                    headers=self.build_headers(),
                )
            except httpx.HTTPError as exc:
                raise UpstreamUnavailable() from exc
        return UpstreamReply(status_code=response.status_code, payload=read_upstream_payload(response.content))

    async def create_task(self, payload: dict[str, Any]) -> UpstreamReply:
        return await self._request("POST", "/chat", json_body=payload)

    async def get_task_status(self, task_id: str) -> UpstreamReply:
        return await self._request("GET", f"/chat/status/{quote(str(task_id), safe='')}")
