from __future__ import annotations

import asyncio
import sys
from typing import Awaitable, Callable

import httpx

from perplexity_search.auth import storage
from perplexity_search.auth.jwt import decode_jwt_expiry, is_jwt_expired, now_ms
from perplexity_search.config import settings
from perplexity_search.errors import AuthError, AuthErrorCode, error_message
from perplexity_search.models.results import StoredToken
from perplexity_search.services.http import build_client
from perplexity_search.services.logger import log_auth_step

SESSION_COOKIE_NAME = "__Secure-next-auth.session-token"

DESKTOP_AUTH_HELP = (
    "Install the Perplexity desktop app and sign in, or set PI_AUTH_NO_BORROW=1 "
    "to skip desktop token borrowing."
)

EmailPrompt = Callable[[], Awaitable[str | None]]
OtpPrompt = Callable[[str], Awaitable[str | None]]


async def extract_from_desktop_app() -> str | None:
    """Read the token the macOS desktop app keeps in its defaults domain.

    Returns None off macOS, when the app is not installed or not signed in.
    """
    if sys.platform != "darwin":
        return None

    try:
        proc = await asyncio.create_subprocess_exec(
            "defaults",
            "read",
            settings.desktop_app_domain,
            "authToken",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await proc.communicate()
    except OSError:
        return None

    if proc.returncode != 0:
        return None

    token = stdout.decode("utf-8", errors="replace").strip()
    # JWT has 3 segments, the newer JWE tokens have 5.
    if not token or len(token.split(".")) not in (3, 5):
        return None
    return token


async def _resolve_input(env_value: str, prompt: Callable[[], Awaitable[str | None]] | None) -> str | None:
    if env_value.strip():
        return env_value.strip()
    if prompt is None:
        return None
    value = await prompt()
    return value.strip() if value and value.strip() else None


def _otp_failure(message: str) -> AuthError:
    return AuthError(AuthErrorCode.EXTRACTION_FAILED, message)


async def login_with_otp(
    prompt_for_email: EmailPrompt | None = None,
    prompt_for_otp: OtpPrompt | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> StoredToken:
    """Email one-time-code sign-in: csrf -> signin-email -> signin-otp."""
    email = await _resolve_input(settings.pi_perplexity_email, prompt_for_email)
    if not email:
        raise AuthError(
            AuthErrorCode.NO_TOKEN,
            f"No valid cached token found and no email was provided for OTP login. {DESKTOP_AUTH_HELP}",
        )

    base_url = settings.perplexity_auth_base_url.rstrip("/")
    headers = {
        "User-Agent": settings.perplexity_user_agent,
        "Accept": "application/json",
    }

    async def _do_flow(client: httpx.AsyncClient) -> str:
        try:
            csrf_response = await client.get(f"{base_url}/csrf", headers=headers)
        except httpx.HTTPError as e:
            raise _otp_failure(f"Could not reach Perplexity sign-in. {error_message(e)}") from e
        if not csrf_response.is_success:
            raise _otp_failure(f"CSRF request failed (HTTP {csrf_response.status_code}).")
        csrf_token = _json_field(csrf_response, "csrfToken")
        if not csrf_token:
            raise _otp_failure("CSRF response did not contain a csrfToken.")
        log_auth_step("csrf", "ok")

        try:
            email_response = await client.post(
                f"{base_url}/signin-email",
                json={"email": email, "csrfToken": csrf_token},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise _otp_failure(f"Could not request OTP email. {error_message(e)}") from e
        if not email_response.is_success:
            raise _otp_failure(f"OTP email request failed (HTTP {email_response.status_code}).")
        log_auth_step("signin_email", "ok")

        otp = await _resolve_input(
            settings.pi_perplexity_otp,
            (lambda: prompt_for_otp(email)) if prompt_for_otp is not None else None,
        )
        if not otp:
            raise AuthError(AuthErrorCode.NO_TOKEN, "No OTP code was provided for Perplexity login.")

        try:
            otp_response = await client.post(
                f"{base_url}/signin-otp",
                json={"email": email, "otp": otp, "csrfToken": csrf_token},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise _otp_failure(f"OTP verification failed. {error_message(e)}") from e
        if not otp_response.is_success:
            raise _otp_failure(f"OTP verification failed (HTTP {otp_response.status_code}).")

        token = _json_field(otp_response, "token") or client.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            raise _otp_failure("OTP verification succeeded but no session token was returned.")
        log_auth_step("signin_otp", "ok")
        return token

    if http_client is None:
        async with build_client() as client:
            access = await _do_flow(client)
    else:
        access = await _do_flow(http_client)

    return StoredToken(access=access, expires=decode_jwt_expiry(access), email=email)


def _json_field(response: httpx.Response, name: str) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    value = payload.get(name) if isinstance(payload, dict) else None
    return value if isinstance(value, str) and value else None


def _is_expired(token: StoredToken) -> bool:
    if token.expires is not None:
        return token.expires <= now_ms()
    return is_jwt_expired(token.access)


def _persist(token: StoredToken) -> None:
    try:
        storage.save_token(token)
    except OSError as e:
        log_auth_step("save", "failed", type(e).__name__)
        raise AuthError(
            AuthErrorCode.EXTRACTION_FAILED,
            f"Could not save the Perplexity token to {storage.token_path()}. {error_message(e)}",
        ) from e


async def authenticate(
    prompt_for_email: EmailPrompt | None = None,
    prompt_for_otp: OtpPrompt | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> str:
    """Return a bearer token: cached -> desktop app -> OTP login. Raises AuthError."""
    cached = storage.load_token()
    if cached is not None:
        if not _is_expired(cached):
            return cached.access
        log_auth_step("cache", "expired")
        try:
            storage.clear_token()
        except OSError as e:
            log_auth_step("cache", "failed", f"could not clear expired token: {type(e).__name__}")

    if not settings.pi_auth_no_borrow:
        try:
            desktop_token = await extract_from_desktop_app()
        except Exception as e:
            raise AuthError(
                AuthErrorCode.EXTRACTION_FAILED,
                f"Failed to read token from the Perplexity desktop app. {DESKTOP_AUTH_HELP}",
            ) from e

        if desktop_token and not is_jwt_expired(desktop_token):
            _persist(StoredToken(access=desktop_token, expires=decode_jwt_expiry(desktop_token)))
            log_auth_step("desktop", "ok")
            return desktop_token
        log_auth_step("desktop", "failed", "no usable desktop token")

    token = await login_with_otp(prompt_for_email, prompt_for_otp, http_client=http_client)
    _persist(token)
    log_auth_step("otp", "ok")
    return token.access
