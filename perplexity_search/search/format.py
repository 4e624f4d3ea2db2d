from __future__ import annotations

import math
import re
from datetime import datetime, timezone

from perplexity_search.models.events import WebResult
from perplexity_search.models.results import SearchResult

MAX_SNIPPET_LENGTH = 240


def _truncate_snippet(snippet: str) -> str:
    normalized = re.sub(r"\s+", " ", snippet).strip()
    if len(normalized) <= MAX_SNIPPET_LENGTH:
        return normalized
    return f"{normalized[:MAX_SNIPPET_LENGTH - 1]}…"


def _parse_timestamp(timestamp: str) -> datetime | None:
    raw = timestamp.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def humanize_age(timestamp: str | None, now: datetime | None = None) -> str:
    if not timestamp:
        return "unknown"

    parsed = _parse_timestamp(timestamp)
    if parsed is None:
        return "unknown"

    now = now or datetime.now(timezone.utc)
    diff_seconds = max(0, math.floor((now - parsed).total_seconds()))

    if diff_seconds < 60:
        return "just now"

    diff_minutes = diff_seconds // 60
    if diff_minutes < 60:
        return f"{diff_minutes}m ago"

    diff_hours = diff_minutes // 60
    if diff_hours < 24:
        return f"{diff_hours}h ago"

    return f"{diff_hours // 24}d ago"


def _format_source(source: WebResult, index: int, now: datetime | None) -> str:
    title = (source.name or "").strip() or "Untitled source"
    lines = [f"[{index + 1}] {title} ({humanize_age(source.timestamp, now)})"]

    url = (source.url or "").strip()
    if url:
        lines.append(f"    {url}")

    if source.snippet and source.snippet.strip():
        lines.append(f"    {_truncate_snippet(source.snippet)}")

    return "\n".join(lines)


def format_for_llm(
    result: SearchResult,
    limit: int | float | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Render a SearchResult as ## Answer / ## Sources / ## Meta text for an agent."""
    if isinstance(limit, (int, float)) and math.isfinite(limit):
        source_limit = max(0, math.floor(limit))
    else:
        source_limit = len(result.sources)

    limited_sources = result.sources[:source_limit]

    if not limited_sources:
        source_section = "0 sources\n(no sources returned)"
    else:
        rendered = "\n\n".join(
            _format_source(source, index, now) for index, source in enumerate(limited_sources)
        )
        source_section = f"{len(limited_sources)} sources\n{rendered}"

    meta_lines = [
        "Provider: perplexity (oauth)",
        f"Model: {result.display_model or 'unknown'}",
    ]
    if result.uuid:
        meta_lines.append(f"Request ID: {result.uuid}")

    return "\n".join(
        [
            "## Answer",
            result.answer.strip() or "No answer returned.",
            "",
            "## Sources",
            source_section,
            "",
            "## Meta",
            *meta_lines,
        ]
    )
