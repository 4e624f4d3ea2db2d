"""Shared fixtures: keep tests away from the real token cache and environment."""
from __future__ import annotations

import pytest

from perplexity_search.config import settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "token_path", str(tmp_path / "auth.json"))
    monkeypatch.setattr(settings, "pi_auth_no_borrow", True)
    monkeypatch.setattr(settings, "pi_perplexity_email", "")
    monkeypatch.setattr(settings, "pi_perplexity_otp", "")
    monkeypatch.setattr(settings, "perplexity_timezone", "UTC")
    monkeypatch.delenv("SSLKEYLOGFILE", raising=False)
    yield settings
