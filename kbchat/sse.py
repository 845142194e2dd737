from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from typing import Any

DATA_PREFIX = "data: "


def format_sse_event(payload: dict[str, Any]) -> bytes:
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def decode_sse_line(line: str) -> dict[str, Any] | None:
    """Decode one ``data: <json>`` line; anything else yields None."""
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :].strip()
    if not data or data == "[DONE]":
        return None
    try:
        event = json.loads(data)
    except ValueError:
        return None
    if not isinstance(event, dict):
        return None
    return event


@dataclass
class SseTranscript:
    """Incremental decoder that recovers the final answer from a token stream."""

    buffer: str = ""
    accumulated_answer: str = ""
    saw_done_event: bool = False
    sources: list[Any] = field(default_factory=list)
    matches: list[Any] = field(default_factory=list)
    last_error: str | None = None

    def __post_init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self.buffer += self._decoder.decode(chunk)
        lines = self.buffer.split("\n")
        self.buffer = lines.pop()
        events: list[dict[str, Any]] = []
        for line in lines:
            event = decode_sse_line(line.rstrip("\r"))
            if event is None:
                continue
            self._apply(event)
            events.append(event)
        return events

    def _apply(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "token":
            token = event.get("token")
            if isinstance(token, str):
                self.accumulated_answer += token
        elif event_type == "done":
            self.saw_done_event = True
            answer = event.get("answer")
            if isinstance(answer, str):
                self.accumulated_answer = answer
            if isinstance(event.get("sources"), list):
                self.sources = list(event["sources"])
            if isinstance(event.get("matches"), list):
                self.matches = list(event["matches"])
        elif event_type == "error":
            detail = event.get("detail")
            if isinstance(detail, str) and detail.strip():
                self.last_error = detail.strip()

    def raw_matches(self) -> list[Any]:
        """Matches from the ``done`` event, or bare sources when none were sent."""
        if self.matches:
            return list(self.matches)
        return [{"source": source, "score": 0} for source in self.sources if isinstance(source, str)]

    @property
    def has_answer(self) -> bool:
        return self.saw_done_event and bool(self.accumulated_answer.strip())
