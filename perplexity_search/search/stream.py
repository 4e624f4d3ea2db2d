"""SSE decoding and snapshot merging for the Perplexity ask stream.

Each frame is a bigger partial picture of the answer rather than a delta, so the
caller folds frames into a running snapshot with ``merge_event``.
"""
from __future__ import annotations

import asyncio
import codecs
import json
from functools import reduce
from typing import Any, AsyncIterable, AsyncIterator, Iterable, TypeVar

from loguru import logger
from pydantic import ValidationError

from perplexity_search.models.events import (
    MarkdownBlock,
    StreamBlock,
    StreamEvent,
    WebResultBlock,
    WireModel,
)

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"

_DONE = object()
_EXHAUSTED = object()
_CANCELLED = object()

M = TypeVar("M", bound=WireModel)


def _parse_event_payload(payload: str) -> StreamEvent | None:
    trimmed = payload.strip()
    if not trimmed or trimmed == DONE_SENTINEL:
        return None

    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        logger.debug("Dropping malformed SSE frame ({} chars)", len(trimmed))
        return None

    if not isinstance(parsed, dict):
        logger.debug("Dropping non-object SSE frame")
        return None

    try:
        return StreamEvent.model_validate(parsed)
    except ValidationError as e:
        logger.debug("Dropping SSE frame with unexpected shape ({} errors)", e.error_count())
        return None


async def _next_chunk(iterator: AsyncIterator[bytes], cancel: asyncio.Event | None) -> Any:
    """Await the next body chunk, giving up as soon as ``cancel`` is set."""
    if cancel is None:
        try:
            return await iterator.__anext__()
        except StopAsyncIteration:
            return _EXHAUSTED

    read = asyncio.ensure_future(iterator.__anext__())
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not read.done():
            read.cancel()

    if cancel.is_set() or read.cancelled():
        if read.done() and not read.cancelled():
            # Retrieve so a late I/O error is not reported as unhandled.
            read.exception()
        return _CANCELLED

    try:
        return read.result()
    except StopAsyncIteration:
        return _EXHAUSTED


async def read_sse_events(
    body: AsyncIterable[bytes],
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[StreamEvent]:
    """Parse ``data:`` frames from a byte stream, yielding StreamEvents in order.

    Consecutive ``data:`` lines form one payload and a blank line flushes it.
    Decoding stops at the ``[DONE]`` sentinel or at end of stream. Malformed
    frames are dropped. Setting ``cancel`` stops decoding without an error.
    I/O errors from ``body`` propagate unchanged.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    iterator = body.__aiter__()
    buffered_text = ""
    data_lines: list[str] = []

    def flush_event() -> Any:
        nonlocal data_lines
        if not data_lines:
            return None

        payload = "\n".join(data_lines)
        data_lines = []

        if payload.strip() == DONE_SENTINEL:
            return _DONE
        return _parse_event_payload(payload)

    while True:
        if cancel is not None and cancel.is_set():
            return

        chunk = await _next_chunk(iterator, cancel)
        if chunk is _CANCELLED:
            return
        if chunk is _EXHAUSTED:
            break

        buffered_text += decoder.decode(chunk)

        while True:
            newline_index = buffered_text.find("\n")
            if newline_index < 0:
                break

            line = buffered_text[:newline_index]
            buffered_text = buffered_text[newline_index + 1:]
            if line.endswith("\r"):
                line = line[:-1]

            if line == "":
                parsed = flush_event()
                if parsed is _DONE:
                    return
                if parsed is not None:
                    if cancel is not None and cancel.is_set():
                        return
                    yield parsed
                continue

            if line.startswith(DATA_PREFIX):
                data_lines.append(line[len(DATA_PREFIX):].lstrip())

    buffered_text += decoder.decode(b"", final=True)
    tail = buffered_text.strip()
    if tail.startswith(DATA_PREFIX):
        data_lines.append(tail[len(DATA_PREFIX):].lstrip())

    parsed = flush_event()
    if parsed is not None and parsed is not _DONE:
        yield parsed


# --- Merging ---


def _overlay(existing: M, incoming: M, **overrides: Any) -> M:
    """Shallow merge: fields present on ``incoming`` win, then ``overrides``."""
    values = existing.present()
    values.update(incoming.present())
    values.update(overrides)
    return type(existing).model_construct(_fields_set=set(values), **values)


def merge_markdown_block(existing: MarkdownBlock, incoming: MarkdownBlock) -> MarkdownBlock:
    """Merge a markdown block's chunks, respecting chunk_starting_offset for splice."""
    current_chunks = list(existing.chunks or [])
    merged_chunks = current_chunks

    if incoming.chunks is not None:
        offset = incoming.chunk_starting_offset
        if offset is None or offset <= 0:
            merged_chunks = list(incoming.chunks)
        else:
            merged_chunks = current_chunks[:offset] + list(incoming.chunks)

    if incoming.answer is not None:
        answer = incoming.answer
    elif merged_chunks:
        answer = "".join(merged_chunks)
    else:
        answer = existing.answer

    return _overlay(existing, incoming, answer=answer, chunks=merged_chunks)


def _merge_single_block(existing: StreamBlock, incoming: StreamBlock) -> StreamBlock:
    overrides: dict[str, Any] = {}

    if existing.markdown_block is not None or incoming.markdown_block is not None:
        overrides["markdown_block"] = merge_markdown_block(
            existing.markdown_block or MarkdownBlock(),
            incoming.markdown_block or MarkdownBlock(),
        )

    if existing.web_result_block is not None or incoming.web_result_block is not None:
        incoming_results = incoming.web_result_block.web_results if incoming.web_result_block else None
        existing_results = existing.web_result_block.web_results if existing.web_result_block else None
        # An empty incoming list never wipes citations we already have.
        results = incoming_results if incoming_results else (existing_results or [])
        overrides["web_result_block"] = WebResultBlock(web_results=list(results))

    return _overlay(existing, incoming, **overrides)


def merge_blocks(existing: list[StreamBlock], incoming: list[StreamBlock]) -> list[StreamBlock]:
    """Merge block lists keyed by intended_usage.

    Known keys merge in place, new keys and unkeyed blocks append in arrival order.
    """
    merged = list(existing)
    positions: dict[str, int] = {}
    for index, block in enumerate(merged):
        if block.intended_usage:
            positions.setdefault(block.intended_usage, index)

    for block in incoming:
        key = block.intended_usage
        if not key:
            merged.append(block)
            continue

        index = positions.get(key)
        if index is None:
            positions[key] = len(merged)
            merged.append(block)
            continue

        merged[index] = _merge_single_block(merged[index], block)

    return merged


def merge_event(existing: StreamEvent, incoming: StreamEvent) -> StreamEvent:
    """Fold one decoded frame into the accumulated snapshot.

    Scalars present on ``incoming`` override, blocks merge by intended_usage,
    and the legacy sources_list only ever grows.
    """
    overrides: dict[str, Any] = {}

    if existing.blocks is not None or incoming.blocks is not None:
        overrides["blocks"] = merge_blocks(existing.blocks or [], incoming.blocks or [])

    existing_sources = existing.sources_list or []
    incoming_sources = incoming.sources_list or []
    if existing_sources or incoming_sources:
        overrides["sources_list"] = [*existing_sources, *incoming_sources]

    return _overlay(existing, incoming, **overrides)


def merge_events(events: Iterable[StreamEvent]) -> StreamEvent:
    return reduce(merge_event, events, StreamEvent())
