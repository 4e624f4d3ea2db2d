from __future__ import annotations

import json


def sse(*events: dict, done: bool = True) -> bytes:
    """Encode events as a Perplexity SSE body."""
    frames = [f"data: {json.dumps(event)}\n\n" for event in events]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


async def byte_stream(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def markdown_block(usage: str = "markdown_block", **fields) -> dict:
    return {"intended_usage": usage, "markdown_block": fields}


def web_results_block(*results: dict) -> dict:
    return {"intended_usage": "web_results", "web_result_block": {"web_results": list(results)}}
