from __future__ import annotations

import base64
import json
import os
import stat
import sys
import time
from unittest.mock import AsyncMock

import httpx
import pytest

from perplexity_search.auth import jwt as jwt_module
from perplexity_search.auth import login, storage
from perplexity_search.auth.jwt import FIVE_MINUTES_MS, ONE_HOUR_MS, decode_jwt_expiry, is_jwt_expired
from perplexity_search.auth.login import SESSION_COOKIE_NAME, authenticate, login_with_otp
from perplexity_search.config import settings
from perplexity_search.errors import AuthError, AuthErrorCode
from perplexity_search.models.results import StoredToken

AUTH_BASE = "https://www.perplexity.ai/api/auth"


def make_jwt(exp: float | None) -> str:
    def encode(payload: dict) -> str:
        raw = json.dumps(payload).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    claims = {"sub": "user"} if exp is None else {"sub": "user", "exp": exp}
    return f"{encode({'alg': 'HS256'})}.{encode(claims)}.signature"


def valid_jwt() -> str:
    return make_jwt(time.time() + 3600)


def expired_jwt() -> str:
    return make_jwt(time.time() - 3600)


async def _fail_prompt(*args):
    raise AssertionError("prompt should not be called")


# --- JWT ---


def test_decode_jwt_expiry_subtracts_safety_margin():
    assert decode_jwt_expiry(make_jwt(2_000_000_000)) == 2_000_000_000 * 1000 - FIVE_MINUTES_MS


@pytest.mark.parametrize(
    "token",
    ["opaque-token", "a.b.c.d.e", "header.%%%.sig", make_jwt(None), make_jwt("soon")],
)
def test_decode_jwt_expiry_falls_back_to_one_hour(monkeypatch, token):
    monkeypatch.setattr(jwt_module, "now_ms", lambda: 1_000.0)

    assert decode_jwt_expiry(token) == 1_000.0 + ONE_HOUR_MS


def test_is_jwt_expired():
    assert is_jwt_expired(expired_jwt())
    assert not is_jwt_expired(valid_jwt())
    # Inside the five minute margin counts as expired.
    assert is_jwt_expired(make_jwt(time.time() + 120))
    assert is_jwt_expired(valid_jwt(), buffer_ms=2 * ONE_HOUR_MS)


# --- Storage ---


def test_save_and_load_token(tmp_path):
    token = StoredToken(access="abc", expires=1234.0, email="me@example.com")

    storage.save_token(token)

    assert storage.load_token() == token
    stored = json.loads(storage.token_path().read_text(encoding="utf-8"))
    assert stored == {"type": "oauth", "access": "abc", "expires": 1234.0, "email": "me@example.com"}


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_saved_token_is_owner_only():
    storage.save_token(StoredToken(access="abc"))

    mode = stat.S_IMODE(os.stat(storage.token_path()).st_mode)
    assert mode == 0o600


def test_save_token_creates_parent_directory(monkeypatch, tmp_path):
    nested = tmp_path / "a" / "b" / "auth.json"
    monkeypatch.setattr(settings, "token_path", str(nested))

    storage.save_token(StoredToken(access="abc"))

    assert nested.exists()


@pytest.mark.parametrize(
    "content",
    [
        "not json",
        "[]",
        json.dumps({"type": "apikey", "access": "abc"}),
        json.dumps({"type": "oauth", "access": ""}),
        json.dumps({"type": "oauth"}),
    ],
)
def test_load_token_rejects_invalid_content(content):
    storage.token_path().write_text(content, encoding="utf-8")

    assert storage.load_token() is None


def test_load_token_ignores_non_numeric_expiry():
    storage.token_path().write_text(
        json.dumps({"type": "oauth", "access": "abc", "expires": "tomorrow"}),
        encoding="utf-8",
    )

    token = storage.load_token()

    assert token is not None
    assert token.expires is None


def test_load_token_missing_file_returns_none():
    assert storage.load_token() is None


def test_clear_token_is_idempotent():
    storage.save_token(StoredToken(access="abc"))

    storage.clear_token()
    storage.clear_token()

    assert not storage.token_path().exists()


# --- OTP login ---


class OtpServer:
    """MockTransport handler emulating the csrf -> signin-email -> signin-otp flow."""

    def __init__(self, otp_response: httpx.Response | None = None, csrf_status: int = 200):
        self.requests: list[httpx.Request] = []
        self.otp_response = otp_response or httpx.Response(200, json={"token": "session-token"})
        self.csrf_status = csrf_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/csrf"):
            return httpx.Response(self.csrf_status, json={"csrfToken": "csrf-123"})
        if path.endswith("/signin-email"):
            return httpx.Response(200, json={"ok": True})
        if path.endswith("/signin-otp"):
            return self.otp_response
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    @property
    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.mark.asyncio
async def test_login_with_otp_runs_full_flow():
    server = OtpServer()
    prompt_for_otp = AsyncMock(return_value=" 123456 ")

    async with server.client() as client:
        token = await login_with_otp(
            AsyncMock(return_value="me@example.com"),
            prompt_for_otp,
            http_client=client,
        )

    assert server.paths == ["/api/auth/csrf", "/api/auth/signin-email", "/api/auth/signin-otp"]
    assert str(server.requests[0].url) == f"{AUTH_BASE}/csrf"
    assert json.loads(server.requests[1].content) == {"email": "me@example.com", "csrfToken": "csrf-123"}
    assert json.loads(server.requests[2].content) == {
        "email": "me@example.com",
        "otp": "123456",
        "csrfToken": "csrf-123",
    }
    prompt_for_otp.assert_awaited_once_with("me@example.com")
    assert token.access == "session-token"
    assert token.email == "me@example.com"
    assert token.expires is not None


@pytest.mark.asyncio
async def test_login_with_otp_prefers_environment_values(monkeypatch):
    monkeypatch.setattr(settings, "pi_perplexity_email", "env@example.com")
    monkeypatch.setattr(settings, "pi_perplexity_otp", "654321")
    server = OtpServer()

    async with server.client() as client:
        token = await login_with_otp(_fail_prompt, _fail_prompt, http_client=client)

    assert json.loads(server.requests[2].content)["otp"] == "654321"
    assert token.email == "env@example.com"


@pytest.mark.asyncio
async def test_login_with_otp_reads_session_cookie_when_body_has_no_token():
    server = OtpServer(
        otp_response=httpx.Response(
            200,
            json={},
            headers={"set-cookie": f"{SESSION_COOKIE_NAME}=cookie-token; Path=/; Secure; HttpOnly"},
        )
    )

    async with server.client() as client:
        token = await login_with_otp(
            AsyncMock(return_value="me@example.com"),
            AsyncMock(return_value="123456"),
            http_client=client,
        )

    assert token.access == "cookie-token"


@pytest.mark.asyncio
async def test_login_with_otp_without_email_is_no_token():
    with pytest.raises(AuthError) as exc_info:
        await login_with_otp(AsyncMock(return_value="   "), _fail_prompt)

    assert exc_info.value.code == AuthErrorCode.NO_TOKEN


@pytest.mark.asyncio
async def test_login_with_otp_without_code_is_no_token():
    server = OtpServer()

    async with server.client() as client:
        with pytest.raises(AuthError) as exc_info:
            await login_with_otp(
                AsyncMock(return_value="me@example.com"),
                AsyncMock(return_value=None),
                http_client=client,
            )

    assert exc_info.value.code == AuthErrorCode.NO_TOKEN
    assert "/api/auth/signin-otp" not in server.paths


@pytest.mark.asyncio
async def test_login_with_otp_rejected_code():
    server = OtpServer(otp_response=httpx.Response(400, json={"error": "bad code"}))

    async with server.client() as client:
        with pytest.raises(AuthError) as exc_info:
            await login_with_otp(
                AsyncMock(return_value="me@example.com"),
                AsyncMock(return_value="000000"),
                http_client=client,
            )

    assert exc_info.value.code == AuthErrorCode.EXTRACTION_FAILED
    assert exc_info.value.message == "OTP verification failed (HTTP 400)."


@pytest.mark.asyncio
async def test_login_with_otp_csrf_failure():
    server = OtpServer(csrf_status=503)

    async with server.client() as client:
        with pytest.raises(AuthError) as exc_info:
            await login_with_otp(AsyncMock(return_value="me@example.com"), _fail_prompt, http_client=client)

    assert exc_info.value.code == AuthErrorCode.EXTRACTION_FAILED
    assert server.paths == ["/api/auth/csrf"]


@pytest.mark.asyncio
async def test_login_with_otp_missing_token_fails():
    server = OtpServer(otp_response=httpx.Response(200, json={"ok": True}))

    async with server.client() as client:
        with pytest.raises(AuthError) as exc_info:
            await login_with_otp(
                AsyncMock(return_value="me@example.com"),
                AsyncMock(return_value="123456"),
                http_client=client,
            )

    assert exc_info.value.code == AuthErrorCode.EXTRACTION_FAILED


# --- authenticate ---


@pytest.mark.asyncio
async def test_authenticate_returns_cached_token_without_network():
    token = valid_jwt()
    storage.save_token(StoredToken(access=token, expires=decode_jwt_expiry(token)))

    assert await authenticate(_fail_prompt, _fail_prompt) == token


@pytest.mark.asyncio
async def test_authenticate_uses_jwt_when_cached_expiry_missing():
    token = valid_jwt()
    storage.save_token(StoredToken(access=token))

    assert await authenticate(_fail_prompt, _fail_prompt) == token


@pytest.mark.asyncio
async def test_authenticate_replaces_expired_cached_token():
    storage.save_token(StoredToken(access="old", expires=time.time() * 1000 - 1))
    server = OtpServer()

    async with server.client() as client:
        access = await authenticate(
            AsyncMock(return_value="me@example.com"),
            AsyncMock(return_value="123456"),
            http_client=client,
        )

    assert access == "session-token"
    saved = storage.load_token()
    assert saved is not None
    assert saved.access == "session-token"
    assert saved.email == "me@example.com"


@pytest.mark.asyncio
async def test_authenticate_clears_expired_token_even_when_login_fails():
    storage.save_token(StoredToken(access="old", expires=time.time() * 1000 - 1))

    with pytest.raises(AuthError) as exc_info:
        await authenticate(AsyncMock(return_value=None), _fail_prompt)

    assert exc_info.value.code == AuthErrorCode.NO_TOKEN
    assert storage.load_token() is None


@pytest.mark.asyncio
async def test_authenticate_borrows_desktop_token(monkeypatch):
    monkeypatch.setattr(settings, "pi_auth_no_borrow", False)
    desktop = valid_jwt()
    monkeypatch.setattr(login, "extract_from_desktop_app", AsyncMock(return_value=desktop))

    assert await authenticate(_fail_prompt, _fail_prompt) == desktop

    saved = storage.load_token()
    assert saved is not None
    assert saved.access == desktop
    assert saved.email is None


@pytest.mark.asyncio
async def test_authenticate_skips_expired_desktop_token(monkeypatch):
    monkeypatch.setattr(settings, "pi_auth_no_borrow", False)
    monkeypatch.setattr(login, "extract_from_desktop_app", AsyncMock(return_value=expired_jwt()))
    server = OtpServer()

    async with server.client() as client:
        access = await authenticate(
            AsyncMock(return_value="me@example.com"),
            AsyncMock(return_value="123456"),
            http_client=client,
        )

    assert access == "session-token"


@pytest.mark.asyncio
async def test_authenticate_respects_no_borrow(monkeypatch):
    desktop = AsyncMock(return_value=valid_jwt())
    monkeypatch.setattr(login, "extract_from_desktop_app", desktop)

    with pytest.raises(AuthError):
        await authenticate(AsyncMock(return_value=None), _fail_prompt)

    desktop.assert_not_awaited()


@pytest.mark.asyncio
async def test_authenticate_wraps_desktop_failures(monkeypatch):
    monkeypatch.setattr(settings, "pi_auth_no_borrow", False)
    monkeypatch.setattr(login, "extract_from_desktop_app", AsyncMock(side_effect=RuntimeError("boom")))

    with pytest.raises(AuthError) as exc_info:
        await authenticate(_fail_prompt, _fail_prompt)

    assert exc_info.value.code == AuthErrorCode.EXTRACTION_FAILED


@pytest.mark.asyncio
async def test_desktop_extraction_is_macos_only(monkeypatch):
    monkeypatch.setattr(login.sys, "platform", "linux")

    assert await login.extract_from_desktop_app() is None


@pytest.mark.asyncio
async def test_authenticate_reports_unwritable_token_cache(monkeypatch):
    monkeypatch.setattr(settings, "pi_auth_no_borrow", False)
    monkeypatch.setattr(login, "extract_from_desktop_app", AsyncMock(return_value=valid_jwt()))

    def read_only(token):
        raise PermissionError("read-only file system")

    monkeypatch.setattr(storage, "save_token", read_only)

    with pytest.raises(AuthError) as exc_info:
        await authenticate(_fail_prompt, _fail_prompt)

    assert exc_info.value.code == AuthErrorCode.EXTRACTION_FAILED
    assert "Could not save the Perplexity token" in exc_info.value.message
