from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal

from perplexity_search.models.events import WebResult

Recency = Literal["hour", "day", "week", "month", "year"]
RECENCY_VALUES: tuple[str, ...] = ("hour", "day", "week", "month", "year")


@dataclass
class SearchParams:
    query: str
    recency: Recency | None = None
    limit: int | None = None


@dataclass
class SearchResult:
    """Final output of one search, handed to the formatter."""
    answer: str
    sources: list[WebResult] = field(default_factory=list)
    display_model: str | None = None
    uuid: str | None = None


@dataclass
class StoredToken:
    access: str
    type: str = "oauth"
    expires: float | None = None  # epoch ms
    email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "access": self.access}
        if self.expires is not None:
            data["expires"] = self.expires
        if self.email is not None:
            data["email"] = self.email
        return data

    @classmethod
    def from_dict(cls, payload: Any) -> StoredToken | None:
        if not isinstance(payload, dict):
            return None
        if payload.get("type") != "oauth":
            return None
        access = payload.get("access")
        if not isinstance(access, str) or not access:
            return None

        expires = payload.get("expires")
        if isinstance(expires, bool) or not isinstance(expires, (int, float)) or not math.isfinite(expires):
            expires = None
        email = payload.get("email")
        if not isinstance(email, str) or not email:
            email = None
        return cls(access=access, expires=expires, email=email)
