"""perplexity-search - Perplexity web search for agents

Simple CLI for running searches and managing the cached login.
"""

import argparse
import asyncio
import signal
import sys

from perplexity_search.models.results import RECENCY_VALUES
from perplexity_search.tool import execute_tool, run_login_command


async def _prompt(label: str) -> str | None:
    try:
        value = await asyncio.to_thread(input, f"{label}: ")
    except EOFError:
        return None
    return value.strip() or None


async def prompt_for_email() -> str | None:
    return await _prompt("Perplexity email")


async def prompt_for_otp(email: str) -> str | None:
    return await _prompt(f"Enter OTP sent to {email}")


async def run_search(query: str, recency: str | None, limit: int | None) -> int:
    """Run one search and print the formatted result."""
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
    except (NotImplementedError, RuntimeError):
        pass  # Windows event loops do not support signal handlers

    tool_input: dict = {"query": query}
    if recency:
        tool_input["recency"] = recency
    if limit is not None:
        tool_input["limit"] = limit

    result = await execute_tool(
        tool_input,
        cancel=cancel,
        prompt_for_email=prompt_for_email,
        prompt_for_otp=prompt_for_otp,
    )

    print(result.text)
    if result.is_error:
        return 1
    print(f"\n[*] {result.details.get('source_count', 0)} sources in {result.details.get('query_ms')}ms")
    return 0


async def run_login(force: bool) -> int:
    message, level = await run_login_command(
        "--force" if force else "",
        prompt_for_email=prompt_for_email,
        prompt_for_otp=prompt_for_otp,
    )
    prefix = {"info": "[+]", "warning": "[~]", "error": "[!]"}.get(level, "[*]")
    print(f"{prefix} {message}")
    return 0 if level == "info" else 1


def main():
    parser = argparse.ArgumentParser(description="Perplexity web search for agents")
    subparsers = parser.add_subparsers(dest="command", required=True)

    search_parser = subparsers.add_parser("search", help="Run a web search")
    search_parser.add_argument("--query", "-q", required=True, help="Search query")
    search_parser.add_argument("--recency", "-r", choices=RECENCY_VALUES, help="Filter results by recency")
    search_parser.add_argument("--limit", "-n", type=int, help="Max sources to show")

    login_parser = subparsers.add_parser("login", help="Authenticate and cache a token")
    login_parser.add_argument("--force", "-f", action="store_true", help="Clear cached token before login")

    args = parser.parse_args()

    if args.command == "search":
        sys.exit(asyncio.run(run_search(args.query, args.recency, args.limit)))
    sys.exit(asyncio.run(run_login(args.force)))


if __name__ == "__main__":
    main()
