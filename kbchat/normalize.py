from __future__ import annotations

import math
import re
import unicodedata
from typing import Any

from kbchat.evidence import is_source_alias

RESPONSE_MODES = ("auto", "light", "heavy")
RELIABILITY_LABELS = ("KB", "Inference", "Suggested baseline (inference)")

_DASHES_RE = re.compile(r"[\u2010-\u2015]")
_WHITESPACE_RE = re.compile(r"\s+")


def source_label_key(value: str) -> str:
    normalized = unicodedata.normalize("NFKC", value)
    normalized = _DASHES_RE.sub("-", normalized)
    return _WHITESPACE_RE.sub(" ", normalized).strip().lower()


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_matches(raw: Any) -> list[dict[str, Any]]:
    """Keep only matches whose source is a display alias."""
    if not isinstance(raw, list):
        return []
    out: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            continue
        source = _clean_str(item.get("source"))
        if not source or not is_source_alias(source):
            continue
        score = _finite_number(item.get("score"))
        match: dict[str, Any] = {
            "id": _clean_str(item.get("id")) or f"m-{index + 1}",
            "score": 0.0 if score is None else score,
            "source": source,
        }
        metadata = item.get("metadata")
        if isinstance(metadata, dict):
            match["metadata"] = dict(metadata)
        out.append(match)
    return out


def normalize_citations(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    out: list[str] = []
    seen: set[str] = set()
    for item in raw:
        value = _clean_str(item)
        if not value or not is_source_alias(value):
            continue
        key = source_label_key(value)
        if key in seen:
            continue
        seen.add(key)
        out.append(value)
    return out


def normalize_thinking_steps(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    out: list[dict[str, Any]] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            continue
        state = _clean_str(item.get("state")).lower()
        step: dict[str, Any] = {
            "id": _clean_str(item.get("id")) or f"step-{index + 1}",
            "label": _clean_str(item.get("label")) or "Working...",
            "state": state if state in {"pending", "done"} else "active",
        }
        detail = _clean_str(item.get("detail"))
        if detail:
            step["detail"] = detail
        updated_at_ms = _finite_number(item.get("updated_at_ms"))
        if updated_at_ms is not None:
            step["updated_at_ms"] = updated_at_ms
        out.append(step)
    return out


def normalize_response_mode(raw: Any) -> str | None:
    value = _clean_str(raw).lower()
    if value in RESPONSE_MODES:
        return value
    return None
