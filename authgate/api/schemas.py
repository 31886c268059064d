from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authgate.logging import get_correlation_id

# zero-width characters plus the bidi embedding/override/isolate controls
_INVISIBLE = dict.fromkeys(
    [0x200B, 0x200C, 0x200D, 0xFEFF, *range(0x202A, 0x202F), *range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    """Drop invisible characters and NFKC-fold.

    Keeps visually identical usernames and emails from registering as
    distinct accounts.
    """
    return unicodedata.normalize("NFKC", value.translate(_INVISIBLE))


ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
        "unavailable",
        "timeout",
    }
)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Response wrapper shared by every HTTP route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}$")
_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_USERNAME = re.compile(r"^[a-z0-9_.-]{1,64}$")


def _validate_email(value: str) -> str:
    email = _normalize_unicode(value.strip().lower())
    if not 3 <= len(email) <= 254:
        raise ValueError("email must be between 3 and 254 characters")
    local, _, domain = email.rpartition("@")
    labels = domain.split(".")
    if (
        not _LOCAL_PART.match(local)
        or len(labels) < 2
        or not all(_DOMAIN_LABEL.match(label) for label in labels)
    ):
        raise ValueError("invalid email address")
    return email


def _validate_username(value: str) -> str:
    """Alphanumeric plus ``_.-``, 1 to 64 characters, case-folded."""
    username = _normalize_unicode(value.strip()).lower()
    if not _USERNAME.match(username):
        raise ValueError(
            "username must be 1-64 characters of letters, digits, dots, underscores or hyphens"
        )
    return username


def _validate_password_length(value: str) -> str:
    if not 1 <= len(value) <= 128:
        raise ValueError("password must be between 1 and 128 characters")
    return value


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_length(value)


class RegisterResponse(BaseModel):
    user_id: str


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=254, description="username or email")
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("login")
    @classmethod
    def _normalize_login(cls, value: str) -> str:
        return _normalize_unicode(value.strip()).lower()


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: int
    refresh_token: Optional[str] = None
    session_expires_at: datetime


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    user_id: Optional[str] = Field(default=None, max_length=128)


class LogoutRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=128)


class LogoutAllResponse(BaseModel):
    revoked: int


class UserResponse(BaseModel):
    user_id: str
    username: str
    email: str
    created_at: datetime
