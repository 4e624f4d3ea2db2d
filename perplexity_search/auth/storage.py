"""File-backed cache for the Perplexity bearer token."""
from __future__ import annotations

import json
import os
from pathlib import Path

from perplexity_search.config import settings
from perplexity_search.models.results import StoredToken


def token_path() -> Path:
    return settings.resolved_token_path


def load_token() -> StoredToken | None:
    """Load the persisted token. Returns None if missing, unreadable or malformed."""
    path = token_path()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return StoredToken.from_dict(payload)


def save_token(token: StoredToken) -> None:
    """Persist the token with 0600 permissions, creating the directory if needed."""
    path = token_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(token.to_dict(), indent=2) + "\n", encoding="utf-8")
    os.chmod(path, 0o600)


def clear_token() -> None:
    token_path().unlink(missing_ok=True)
