from __future__ import annotations

from typing import Callable

from perplexity_search.models.events import StreamEvent, WebResult

ASK_TEXT_USAGE = "ask_text"
WEB_RESULTS_USAGE = "web_results"


def normalize_url(url: str) -> str:
    url = url.strip()
    if url.endswith("/"):
        url = url[:-1]
    return url.lower()


def dedupe_sources_by_url(sources: list[WebResult]) -> list[WebResult]:
    """Keep the first source per normalized URL. Sources without a URL are always kept."""
    seen: set[str] = set()
    deduped: list[WebResult] = []

    for source in sources:
        url = (source.url or "").strip()
        if not url:
            deduped.append(source)
            continue

        key = normalize_url(url)
        if key in seen:
            continue

        seen.add(key)
        deduped.append(source)

    return deduped


def _extract_text_from_blocks(event: StreamEvent, match: Callable[[str], bool]) -> str | None:
    for block in event.blocks or []:
        if not match(block.intended_usage or ""):
            continue

        markdown = block.markdown_block
        if markdown is None:
            continue

        if markdown.answer and markdown.answer.strip():
            return markdown.answer.strip()

        if markdown.chunks:
            chunk_text = "".join(markdown.chunks).strip()
            if chunk_text:
                return chunk_text

    return None


def extract_answer(event: StreamEvent) -> str:
    """Pick the answer text: markdown blocks, then ask_text blocks, then top-level text."""
    markdown_answer = _extract_text_from_blocks(event, lambda usage: "markdown" in usage)
    if markdown_answer:
        return markdown_answer

    ask_text_answer = _extract_text_from_blocks(event, lambda usage: usage == ASK_TEXT_USAGE)
    if ask_text_answer:
        return ask_text_answer

    return (event.text or "").strip()


def extract_sources(event: StreamEvent) -> list[WebResult]:
    """Sources from the web_results block, else the legacy sources_list, deduplicated."""
    web_results_block = next(
        (block for block in event.blocks or [] if block.intended_usage == WEB_RESULTS_USAGE),
        None,
    )

    block_sources: list[WebResult] = []
    if web_results_block is not None and web_results_block.web_result_block is not None:
        block_sources = web_results_block.web_result_block.web_results or []
    if block_sources:
        return dedupe_sources_by_url(block_sources)

    fallback_sources = [source.to_web_result() for source in event.sources_list or []]
    return dedupe_sources_by_url(fallback_sources)
