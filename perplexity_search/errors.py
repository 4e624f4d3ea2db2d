from __future__ import annotations

from enum import Enum


class SearchErrorCode(str, Enum):
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    STREAM = "STREAM"
    EMPTY = "EMPTY"
    CANCELLED = "CANCELLED"


class AuthErrorCode(str, Enum):
    NO_TOKEN = "NO_TOKEN"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"


class PerplexityError(Exception):
    """Base class for classified failures surfaced to the caller."""

    def __init__(self, code: Enum, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value!r}, {self.message!r})"


class SearchError(PerplexityError):
    code: SearchErrorCode

    def __init__(self, code: SearchErrorCode, message: str):
        super().__init__(code, message)


class AuthError(PerplexityError):
    code: AuthErrorCode

    def __init__(self, code: AuthErrorCode, message: str):
        super().__init__(code, message)


def error_message(error: BaseException | str | None) -> str:
    """Safely extract a message from a caught value."""
    if isinstance(error, PerplexityError):
        return error.message
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    return "Unknown error"
