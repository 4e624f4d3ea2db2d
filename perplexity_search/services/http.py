from __future__ import annotations

import os
from pathlib import Path

import httpx

from perplexity_search.config import settings


def sanitize_ssl_keylogfile() -> None:
    """Drop SSLKEYLOGFILE when it points somewhere we cannot write.

    httpx builds its SSL context eagerly and fails hard on an unusable
    keylog path, which some shells export globally for TLS debugging.
    """
    keylog_path = os.getenv("SSLKEYLOGFILE", "").strip()
    if not keylog_path:
        return

    try:
        path = Path(keylog_path)
        if not path.parent.exists():
            os.environ.pop("SSLKEYLOGFILE", None)
            return

        with open(path, "a", encoding="utf-8"):
            pass
    except OSError:
        os.environ.pop("SSLKEYLOGFILE", None)


def build_client(**kwargs) -> httpx.AsyncClient:
    """Create the AsyncClient used for Perplexity requests."""
    sanitize_ssl_keylogfile()
    kwargs.setdefault("timeout", httpx.Timeout(settings.request_timeout_seconds))
    kwargs.setdefault("follow_redirects", False)
    return httpx.AsyncClient(**kwargs)
