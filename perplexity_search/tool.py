"""Agent-facing surface: the perplexity_search tool and the perplexity-login command."""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from perplexity_search.auth import storage
from perplexity_search.auth.login import EmailPrompt, OtpPrompt, authenticate
from perplexity_search.errors import AuthError, AuthErrorCode, SearchError, SearchErrorCode, error_message
from perplexity_search.models.results import RECENCY_VALUES, SearchParams
from perplexity_search.search.client import search_perplexity
from perplexity_search.search.format import format_for_llm
from perplexity_search.services.logger import log_event

TOOL_NAME = "perplexity_search"
LOGIN_COMMAND_NAME = "perplexity-login"

TOOL_DEFINITION: dict[str, Any] = {
    "name": TOOL_NAME,
    "description": "Search the web with your Perplexity subscription.",
    "input_schema": {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query",
            },
            "recency": {
                "type": "string",
                "enum": list(RECENCY_VALUES),
                "description": "Filter results by recency",
            },
            "limit": {
                "type": "integer",
                "minimum": 1,
                "maximum": 50,
                "description": "Max sources to return",
            },
        },
        "required": ["query"],
    },
}


@dataclass
class ToolResult:
    text: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return bool(self.details.get("is_error"))


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def execute_tool(
    tool_input: dict[str, Any],
    *,
    cancel: asyncio.Event | None = None,
    prompt_for_email: EmailPrompt | None = None,
    prompt_for_otp: OtpPrompt | None = None,
) -> ToolResult:
    """Authenticate, search and format. Failures come back as error results, never raised."""
    start = time.monotonic()
    source_count = 0

    query = str(tool_input.get("query") or "").strip()
    if not query:
        return ToolResult(
            "Perplexity search failed: query must not be empty.",
            {"source_count": 0, "query_ms": 0, "is_error": True},
        )

    recency = tool_input.get("recency")
    if recency not in RECENCY_VALUES:
        recency = None
    limit = tool_input.get("limit")
    if isinstance(limit, bool) or not isinstance(limit, (int, float)) or not math.isfinite(limit):
        limit = None

    try:
        jwt = await authenticate(prompt_for_email, prompt_for_otp)

        if cancel is not None and cancel.is_set():
            return ToolResult(
                "Perplexity search was cancelled.",
                {"source_count": 0, "query_ms": _elapsed_ms(start)},
            )

        result = await search_perplexity(
            SearchParams(query=query, recency=recency, limit=limit),
            jwt,
            cancel,
        )

        formatted = format_for_llm(result, limit)
        source_count = len(result.sources) if limit is None else min(max(0, int(limit)), len(result.sources))

        return ToolResult(
            formatted,
            {
                "model": result.display_model,
                "source_count": source_count,
                "query_ms": _elapsed_ms(start),
                "uuid": result.uuid,
            },
        )
    except AuthError as e:
        return ToolResult(
            f"Authentication failed: {e.message}",
            {"source_count": source_count, "query_ms": _elapsed_ms(start), "is_error": True},
        )
    except SearchError as e:
        details = {
            "source_count": source_count,
            "query_ms": _elapsed_ms(start),
            "is_error": True,
            "error_code": e.code.value,
        }
        if e.code == SearchErrorCode.AUTH:
            # The cached token is left in place; a 401 can be transient.
            return ToolResult(
                f"Perplexity authentication failed. Run /{LOGIN_COMMAND_NAME} --force to re-authenticate.",
                details,
            )
        return ToolResult(f"Perplexity search failed: {e.message}", details)


# --- Login command ---


@dataclass
class ParsedCommandArgs:
    force_refresh: bool = False
    show_help: bool = False
    unknown: list[str] = field(default_factory=list)


def parse_command_args(args: str) -> ParsedCommandArgs:
    parsed = ParsedCommandArgs()
    for token in args.split():
        if token in ("--force", "--refresh", "-f"):
            parsed.force_refresh = True
        elif token in ("--help", "-h"):
            parsed.show_help = True
        else:
            parsed.unknown.append(token)
    return parsed


def usage_text() -> str:
    return (
        f"Usage: /{LOGIN_COMMAND_NAME} [--force]\n\n"
        "Flags:\n"
        "  --force, --refresh, -f   Clear cached token before login\n"
        "  --help, -h               Show this help"
    )


async def run_login_command(
    args: str,
    *,
    prompt_for_email: EmailPrompt | None = None,
    prompt_for_otp: OtpPrompt | None = None,
) -> tuple[str, str]:
    """Run the login command. Returns (message, level) with level info/warning/error."""
    parsed = parse_command_args(args)

    if parsed.show_help:
        return usage_text(), "info"

    if parsed.unknown:
        return f"Unknown arguments: {' '.join(parsed.unknown)}\n\n{usage_text()}", "warning"

    if parsed.force_refresh:
        try:
            storage.clear_token()
            log_event("token_cleared", "Cleared cached Perplexity token before login")
        except OSError as e:
            logger.warning(f"Could not clear cached token: {e}")

    try:
        await authenticate(prompt_for_email, prompt_for_otp)
    except AuthError as e:
        if e.code == AuthErrorCode.NO_TOKEN:
            return (
                f"Perplexity login canceled. Re-run /{LOGIN_COMMAND_NAME} and provide email + OTP, "
                "or set PI_PERPLEXITY_EMAIL and PI_PERPLEXITY_OTP.",
                "warning",
            )
        return f"Perplexity login failed: {error_message(e)}", "error"

    return "Perplexity login successful. Token saved.", "info"
