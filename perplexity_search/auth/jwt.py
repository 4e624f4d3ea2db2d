from __future__ import annotations

import base64
import binascii
import json
import math
import time

FIVE_MINUTES_MS = 5 * 60 * 1000
ONE_HOUR_MS = 60 * 60 * 1000


def now_ms() -> float:
    return time.time() * 1000


def _decode_base64url(segment: str) -> str:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


def decode_jwt_expiry(token: str) -> float:
    """Expiry of a JWT as epoch ms, minus a 5 minute safety margin.

    Opaque or undecodable tokens (e.g. JWE) are assumed valid for one more hour.
    """
    fallback = now_ms() + ONE_HOUR_MS

    parts = token.split(".")
    if len(parts) < 2 or not parts[1]:
        return fallback

    try:
        payload = json.loads(_decode_base64url(parts[1]))
    except (ValueError, UnicodeError, binascii.Error):
        return fallback

    exp = payload.get("exp") if isinstance(payload, dict) else None
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not math.isfinite(exp):
        return fallback

    return exp * 1000 - FIVE_MINUTES_MS


def is_jwt_expired(token: str, buffer_ms: float = 0) -> bool:
    return decode_jwt_expiry(token) <= now_ms() + buffer_ms
