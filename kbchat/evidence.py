"""Evidence sanitization for generated answers.

The upstream backend cites its retrieval hits inline with raw identifiers
(``[report.md]``, ``[source=kb/analysis.md]``). Before anything is persisted
or shown, those identifiers are replaced by stable display aliases
(``Source #01``, ``Source #02`` ...) assigned in first-appearance order of the
raw match list, so the stored answer, its citation list and its matches all
agree on the same labels.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

BRACKET_TOKEN_RE = re.compile(r"\[([^\]\n]+)\](?!\()")
SOURCE_ALIAS_RE = re.compile(r"^source\s*#\s*\d{1,3}$", re.IGNORECASE)


@dataclass
class SanitizedEvidence:
    answer: str
    sources: list[str] = field(default_factory=list)
    matches: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": list(self.sources),
            "matches": [dict(item) for item in self.matches],
        }


def source_alias(index: int) -> str:
    return f"Source #{index + 1:02d}"


def is_source_alias(value: str) -> bool:
    return bool(SOURCE_ALIAS_RE.match(value.strip()))


def normalize_source_token(raw: str) -> str:
    trimmed = raw.strip()
    if not trimmed:
        return ""
    if trimmed.lower().startswith("source="):
        return trimmed[7:].strip()
    return trimmed


def _as_score(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return float(value)


def _raw_source(item: Any) -> str:
    if not isinstance(item, dict):
        return ""
    source = item.get("source")
    if not isinstance(source, str):
        return ""
    return source.strip()


def build_alias_map(raw_matches: list[Any]) -> dict[str, str]:
    """Map raw backend source ids to aliases in first-appearance order."""
    sources: list[str] = []
    for item in raw_matches:
        source = _raw_source(item)
        if source and source not in sources:
            sources.append(source)
    return {source: source_alias(index) for index, source in enumerate(sources)}


def rewrite_citations(answer: str, alias_map: dict[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        alias = alias_map.get(normalize_source_token(match.group(1)))
        if alias is None:
            return match.group(0)
        return f"[{alias}]"

    return BRACKET_TOKEN_RE.sub(_replace, answer)


def sanitize_evidence(raw_answer: Any, raw_matches: Any) -> SanitizedEvidence | None:
    """Return the aliased answer, sources and matches, or None without an answer."""
    answer = raw_answer if isinstance(raw_answer, str) else ""
    if not answer.strip():
        return None
    upstream_matches = list(raw_matches) if isinstance(raw_matches, list) else []

    alias_map = build_alias_map(upstream_matches)
    matches: list[dict[str, Any]] = []
    for index, item in enumerate(upstream_matches):
        alias = alias_map.get(_raw_source(item))
        if alias is None:
            continue
        matches.append(
            {
                "id": f"m-{index + 1}",
                "score": _as_score(item.get("score")),
                "source": alias,
            }
        )

    return SanitizedEvidence(
        answer=rewrite_citations(answer, alias_map),
        sources=list(alias_map.values()),
        matches=matches,
    )


def sanitize_payload(payload: Any) -> SanitizedEvidence | None:
    """Sanitize an upstream ``{answer, matches}`` object (task status or ``done`` event)."""
    if not isinstance(payload, dict):
        return None
    return sanitize_evidence(payload.get("answer"), payload.get("matches"))
