from __future__ import annotations

from datetime import datetime, timedelta, timezone

from perplexity_search.models.events import WebResult
from perplexity_search.models.results import SearchResult
from perplexity_search.search.format import format_for_llm, humanize_age

NOW = datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _ago(**delta) -> str:
    return (NOW - timedelta(**delta)).isoformat().replace("+00:00", "Z")


def test_renders_sections_in_order():
    output = format_for_llm(
        SearchResult(
            answer="Answer body",
            sources=[
                WebResult(name="Source 1", url="https://example.com/1", snippet="Snippet 1", timestamp=_ago(hours=3)),
                WebResult(name="Source 2", url="https://example.com/2", snippet="Snippet 2", timestamp=_ago(days=2)),
            ],
            display_model="pplx_pro_upgraded",
            uuid="req-123",
        ),
        now=NOW,
    )

    assert output.index("## Answer") < output.index("## Sources") < output.index("## Meta")
    assert output.index("[1] Source 1 (3h ago)") < output.index("[2] Source 2 (2d ago)")
    assert "2 sources" in output
    assert "Provider: perplexity (oauth)" in output
    assert "Model: pplx_pro_upgraded" in output
    assert "Request ID: req-123" in output


def test_humanizes_ages():
    assert humanize_age(_ago(seconds=30), NOW) == "just now"
    assert humanize_age(_ago(minutes=12), NOW) == "12m ago"
    assert humanize_age(_ago(hours=5), NOW) == "5h ago"
    assert humanize_age(_ago(days=3), NOW) == "3d ago"
    assert humanize_age((NOW + timedelta(hours=1)).isoformat(), NOW) == "just now"
    assert humanize_age("not a date", NOW) == "unknown"
    assert humanize_age(None, NOW) == "unknown"


def test_truncates_and_collapses_snippets():
    snippet = "word \n\t " * 100

    output = format_for_llm(SearchResult(answer="a", sources=[WebResult(name="S", snippet=snippet)]), now=NOW)

    snippet_line = output.splitlines()[6]
    assert snippet_line.startswith("    word word")
    assert snippet_line.endswith("…")
    assert len(snippet_line.strip()) == 240


def test_limit_and_empty_sources():
    result = SearchResult(answer="a", sources=[WebResult(name="one"), WebResult(name="two")])

    limited = format_for_llm(result, 1, now=NOW)
    none = format_for_llm(result, 0, now=NOW)

    assert "1 sources" in limited
    assert "[2]" not in limited
    assert "0 sources\n(no sources returned)" in none


def test_defaults_for_missing_fields():
    output = format_for_llm(SearchResult(answer="  ", sources=[WebResult(url="https://u")]), now=NOW)

    assert "No answer returned." in output
    assert "[1] Untitled source (unknown)" in output
    assert "Model: unknown" in output
    assert "Request ID" not in output
