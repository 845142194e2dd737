"""Citation mentions: highlightable snippets for aliased answers.

Works on text that already carries display aliases (``[Source #01]``), either
a freshly sanitized answer or a message reloaded from storage, and on the
citation alias list stored next to it. Mentions are recomputed on every load
and never persisted on their own.
"""

from __future__ import annotations

import re
from typing import Any

from kbchat.evidence import BRACKET_TOKEN_RE, normalize_source_token
from kbchat.normalize import RELIABILITY_LABELS, normalize_citations, normalize_matches, source_label_key

NON_SOURCE_TAGS = frozenset(RELIABILITY_LABELS)

RELIABILITY_TAG_RE = re.compile(r"\[(KB|Inference|Suggested baseline \(inference\))\]")

LOOKBACK_CHARS = 320
MIN_LAST_SENTENCE_CHARS = 35
MAX_SNIPPET_CHARS = 220

_INFERENCE_HINT_RE = re.compile(
    r"\b(infer|inference|implies|suggest|likely|probably|assume|recommend|interpret|could|may|might)\b"
)
_BASELINE_HINT_RE = re.compile(r"\b(target|baseline|threshold|kpi|cutoff|minimum|maximum)\b")
_DIGIT_RE = re.compile(r"\d")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE_RE = re.compile(r"\s+")
_ALIAS_TOKEN_RE = re.compile(r"^source\s*#", re.IGNORECASE)
_RAW_SOURCE_TOKEN_RE = re.compile(r"^source\s*=", re.IGNORECASE)
_MARKDOWN_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"\*\*([^*]+)\*\*"), r"\1"),
    (re.compile(r"__([^_]+)__"), r"\1"),
    (re.compile(r"\*([^*]+)\*"), r"\1"),
    (re.compile(r"_([^_]+)_"), r"\1"),
    (re.compile(r"^[\s>*-]+"), ""),
    (re.compile(r"^\d+\.\s+"), ""),
    (re.compile(r"^#+\s+"), ""),
)


def strip_markdown_decorators(text: str) -> str:
    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return text


def clean_answer_whitespace(text: str) -> str:
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"\s+([,.;:!?])", r"\1", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()


def strip_reliability_tags(text: str) -> str:
    return RELIABILITY_TAG_RE.sub("", text)


def strip_stored_tokens(text: str) -> str:
    """Drop alias, raw ``source=`` and reliability tokens from stored content."""

    def _replace(match: re.Match[str]) -> str:
        token = match.group(1).strip()
        if token in NON_SOURCE_TAGS or _ALIAS_TOKEN_RE.match(token) or _RAW_SOURCE_TOKEN_RE.match(token):
            return ""
        return match.group(0)

    return clean_answer_whitespace(strip_reliability_tags(BRACKET_TOKEN_RE.sub(_replace, text)))


def _line_bounds(text: str, index: int) -> tuple[int, int]:
    start = text.rfind("\n", 0, index + 1) + 1
    end = text.find("\n", index)
    return start, len(text) if end == -1 else end


def _snippet_candidate(raw: str) -> str:
    without_tokens = strip_reliability_tags(BRACKET_TOKEN_RE.sub("", raw))
    return strip_markdown_decorators(_WHITESPACE_RE.sub(" ", without_tokens).strip())


def extract_citation_snippet(answer: str, token_index: int) -> str:
    line_start, _ = _line_bounds(answer, token_index)
    candidate = _snippet_candidate(answer[line_start:token_index])

    if not candidate:
        window = answer[max(0, token_index - LOOKBACK_CHARS) : token_index]
        lines = [line for line in window.split("\n") if line.strip()]
        candidate = _snippet_candidate(lines[-1] if lines else window)

    if not candidate:
        return ""

    sentences = [part.strip() for part in _SENTENCE_SPLIT_RE.split(candidate) if part.strip()]
    if len(sentences) > 1 and len(sentences[-1]) >= MIN_LAST_SENTENCE_CHARS:
        candidate = sentences[-1]

    if len(candidate) > MAX_SNIPPET_CHARS:
        candidate = candidate[:MAX_SNIPPET_CHARS].strip()
    return candidate


def detect_reliability_near_token(answer: str, token_index: int) -> str:
    line_start, line_end = _line_bounds(answer, token_index)
    line = answer[line_start:line_end]

    if "[Suggested baseline (inference)]" in line:
        return "Suggested baseline (inference)"
    if "[Inference]" in line:
        return "Inference"
    if "[KB]" in line:
        return "KB"

    nearby = answer[max(0, token_index - LOOKBACK_CHARS) : token_index + 1]
    markers = RELIABILITY_TAG_RE.findall(nearby)
    if markers:
        return markers[-1]

    lowered = nearby.lower()
    if _INFERENCE_HINT_RE.search(lowered):
        return "Inference"
    if _BASELINE_HINT_RE.search(lowered) and _DIGIT_RE.search(lowered):
        return "Suggested baseline (inference)"
    return "KB"


def extract_citation_mentions(text: str, citations: list[str]) -> list[dict[str, str]]:
    """Snippets for every token that names a known citation alias.

    Tokens that do not resolve to an entry of ``citations`` are skipped, and
    repeated ``(source, reliability, snippet)`` triples collapse to one.
    """
    if not text or not citations:
        return []

    lookup: dict[str, str] = {}
    for source in citations:
        label = source.strip()
        if label:
            lookup[source_label_key(label)] = label

    mentions: list[dict[str, str]] = []
    seen: set[tuple[str, str, str]] = set()
    for match in BRACKET_TOKEN_RE.finditer(text):
        token = normalize_source_token(match.group(1))
        if not token or token in NON_SOURCE_TAGS:
            continue
        source = lookup.get(source_label_key(token))
        if source is None:
            continue
        snippet = extract_citation_snippet(text, match.start())
        if not snippet:
            continue
        reliability = detect_reliability_near_token(text, match.start())
        key = (source, reliability, snippet)
        if key in seen:
            continue
        seen.add(key)
        mentions.append({"source": source, "snippet": snippet, "reliability": reliability})
    return mentions


def extract_reliability_tags(answer: str) -> list[str]:
    found = set(RELIABILITY_TAG_RE.findall(answer))
    return [label for label in RELIABILITY_LABELS if label in found]


_WEAK_EVIDENCE_SIGNALS = (
    "no relevant context",
    "context is insufficient",
    "what is missing",
    "could not find",
    "no results",
)


def assess_evidence_strength(matches: list[dict[str, Any]], answer: str) -> str:
    if not matches:
        return "none"
    top_score = max(float(item.get("score", 0.0)) for item in matches)
    unique_sources = len({item.get("source") for item in matches})
    lowered = answer.lower()
    if any(signal in lowered for signal in _WEAK_EVIDENCE_SIGNALS):
        return "weak"
    if top_score >= 0.8 and unique_sources >= 2:
        return "strong"
    if top_score >= 0.5:
        return "moderate"
    return "weak"


_STRENGTH_LABELS = {
    "strong": "Strong evidence",
    "moderate": "Moderate evidence",
    "weak": "Weak evidence, verify independently",
    "none": "No evidence found",
}


def reliability_summary(tags: list[str], strength: str) -> str:
    parts: list[str] = []
    if "KB" in tags:
        parts.append("Knowledge-base grounded")
    if "Inference" in tags:
        parts.append("Contains inferences")
    if "Suggested baseline (inference)" in tags:
        parts.append("Includes suggested baselines")
    parts.append(_STRENGTH_LABELS.get(strength, _STRENGTH_LABELS["none"]))
    return " · ".join(parts)


def evidence_overview(answer: str, matches: list[dict[str, Any]]) -> dict[str, Any]:
    tags = extract_reliability_tags(answer)
    strength = assess_evidence_strength(matches, answer)
    return {"tags": tags, "strength": strength, "summary": reliability_summary(tags, strength)}


def map_stored_message(record: dict[str, Any]) -> dict[str, Any]:
    """Shape a stored message row for display, recomputing citation mentions."""
    content = record.get("markdown_content") or record.get("content") or ""
    message: dict[str, Any] = {
        "id": record.get("id"),
        "role": record.get("role"),
        "content": content,
        "markdown_content": content,
        "created_at": record.get("created_at"),
    }
    if record.get("role") != "assistant":
        return message

    citations = normalize_citations(record.get("citations"))
    matches = normalize_matches(record.get("matches"))
    cleaned = strip_stored_tokens(content)
    message.update(
        {
            "content": cleaned,
            "markdown_content": cleaned,
            "citations": citations,
            "matches": matches,
            "citation_mentions": extract_citation_mentions(content, citations),
            "evidence": evidence_overview(content, matches),
        }
    )
    return message
