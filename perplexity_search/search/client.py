from __future__ import annotations

import asyncio
import os
import time
from contextlib import aclosing
from typing import Any
from uuid import uuid4

import httpx

from perplexity_search.config import settings
from perplexity_search.errors import SearchError, SearchErrorCode, error_message
from perplexity_search.models.events import StreamEvent
from perplexity_search.models.results import SearchParams, SearchResult
from perplexity_search.search.extract import extract_answer, extract_sources
from perplexity_search.search.stream import merge_event, read_sse_events
from perplexity_search.services.http import build_client
from perplexity_search.services.logger import log_search_call

EMPTY_ANSWER_PLACEHOLDER = "No answer text returned by Perplexity."


def _resolve_timezone() -> str:
    return settings.perplexity_timezone.strip() or os.environ.get("TZ", "").strip() or "UTC"


def build_request_body(params: SearchParams) -> dict[str, Any]:
    query = params.query
    return {
        "query_str": query,
        "params": {
            "query_str": query,
            "search_focus": "internet",
            "mode": settings.perplexity_search_mode,
            "model_preference": settings.perplexity_model_preference,
            "sources": ["web"],
            "attachments": [],
            "frontend_uuid": str(uuid4()),
            "frontend_context_uuid": str(uuid4()),
            "version": settings.perplexity_api_version,
            "language": settings.perplexity_language,
            "timezone": _resolve_timezone(),
            "search_recency_filter": params.recency,
            "is_incognito": True,
            "use_schematized_api": True,
            "skip_search_enabled": True,
        },
    }


def build_request_headers(jwt: str, request_id: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {jwt}",
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
        "Origin": "https://www.perplexity.ai",
        "Referer": "https://www.perplexity.ai/",
        "User-Agent": settings.perplexity_user_agent,
        "X-App-ApiClient": "default",
        "X-App-ApiVersion": settings.perplexity_api_version,
        "X-Perplexity-Request-Reason": "submit",
        "X-Request-ID": request_id,
    }


def map_http_error(status: int) -> SearchError:
    if status in (401, 403):
        return SearchError(
            SearchErrorCode.AUTH,
            "Perplexity rejected authentication (401/403). Sign in to Perplexity desktop app and retry.",
        )

    if status == 429:
        return SearchError(
            SearchErrorCode.RATE_LIMIT,
            "Perplexity rate limited this request (429). Wait a bit, then retry.",
        )

    return SearchError(
        SearchErrorCode.NETWORK,
        f"Perplexity request failed with HTTP {status}. Check connectivity and retry.",
    )


def _cancelled() -> SearchError:
    return SearchError(SearchErrorCode.CANCELLED, "Perplexity request was cancelled.")


async def _send(
    client: httpx.AsyncClient,
    request: httpx.Request,
    cancel: asyncio.Event | None,
) -> httpx.Response | None:
    """Send with a streamed body. Returns None when ``cancel`` wins the race."""
    if cancel is None:
        return await client.send(request, stream=True)
    if cancel.is_set():
        return None

    send = asyncio.ensure_future(client.send(request, stream=True))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({send, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not send.done():
            send.cancel()

    if cancel.is_set():
        if send.done() and not send.cancelled() and send.exception() is None:
            await send.result().aclose()
        return None

    return send.result()


async def _consume_stream(
    response: httpx.Response,
    cancel: asyncio.Event | None,
) -> tuple[StreamEvent, int]:
    snapshot = StreamEvent()
    event_count = 0

    try:
        async with aclosing(read_sse_events(response.aiter_bytes(), cancel)) as events:
            async for event in events:
                snapshot = merge_event(snapshot, event)
                event_count += 1
                if event.is_terminal:
                    break
    except (httpx.HTTPError, httpx.StreamError) as e:
        if cancel is not None and cancel.is_set():
            raise _cancelled() from e
        raise SearchError(
            SearchErrorCode.STREAM,
            f"Failed to parse Perplexity stream: {error_message(e)}",
        ) from e

    if cancel is not None and cancel.is_set():
        raise _cancelled()

    return snapshot, event_count


async def search_perplexity(
    params: SearchParams,
    jwt: str,
    cancel: asyncio.Event | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> SearchResult:
    """Execute a Perplexity search: POST, stream and merge events, extract answer + sources.

    Makes exactly one request attempt. Raises SearchError on any failure.
    """
    request_id = str(uuid4())
    request_body = build_request_body(params)
    request_headers = build_request_headers(jwt, request_id)
    started = time.monotonic()
    event_count = 0

    async def _do_request(client: httpx.AsyncClient) -> StreamEvent:
        nonlocal event_count
        request = client.build_request(
            "POST",
            settings.perplexity_endpoint,
            json=request_body,
            headers=request_headers,
        )

        try:
            response = await _send(client, request, cancel)
        except httpx.HTTPError as e:
            if cancel is not None and cancel.is_set():
                raise _cancelled() from e
            raise SearchError(
                SearchErrorCode.NETWORK,
                f"Could not connect to Perplexity. {error_message(e)}",
            ) from e

        if response is None:
            raise _cancelled()

        try:
            if not response.is_success:
                raise map_http_error(response.status_code)
            snapshot, event_count = await _consume_stream(response, cancel)
        finally:
            await response.aclose()

        return snapshot

    try:
        if http_client is None:
            async with build_client() as client:
                snapshot = await _do_request(client)
        else:
            snapshot = await _do_request(http_client)

        if snapshot.has_error:
            raise SearchError(
                SearchErrorCode.STREAM,
                snapshot.error_message or f"Perplexity stream error: {snapshot.error_code}",
            )

        answer = extract_answer(snapshot)
        sources = extract_sources(snapshot)

        if not answer and not sources:
            raise SearchError(
                SearchErrorCode.EMPTY,
                "Perplexity returned no answer and no sources for this query.",
            )
    except SearchError as e:
        log_search_call(
            query_chars=len(params.query),
            status="failed",
            duration_ms=int((time.monotonic() - started) * 1000),
            event_count=event_count,
            error_code=e.code.value,
            error=e.message,
        )
        raise

    log_search_call(
        query_chars=len(params.query),
        status="completed",
        duration_ms=int((time.monotonic() - started) * 1000),
        event_count=event_count,
        source_count=len(sources),
    )

    return SearchResult(
        answer=answer or EMPTY_ANSWER_PLACEHOLDER,
        sources=sources,
        display_model=snapshot.display_model,
        uuid=snapshot.uuid,
    )
