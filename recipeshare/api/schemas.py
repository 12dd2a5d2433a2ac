from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from recipeshare.logging import get_correlation_id

# Zero-width joiners and bidi embedding/isolate controls render as nothing
_INVISIBLE = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    """NFKC-fold ``value`` after dropping invisible characters.

    Two emails that look the same on screen must also compare equal, or one
    account could be registered twice under visually identical addresses.
    """
    return unicodedata.normalize("NFKC", "".join(c for c in value if c not in _INVISIBLE))


ERROR_CODES = (
    "validation_error",
    "invalid_credentials",
    "otp_invalid",
    "unauthorized",
    "session_expired",
    "forbidden",
    "csrf_rejected",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
)


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Shape of every JSON body the API returns."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


# Dot-atom local part (RFC 5322 without quoted strings) and LDH domain labels
_LOCAL_RE = re.compile(r"[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*")
_LABEL_RE = re.compile(r"[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?")
EMAIL_MAX_LENGTH = 254


def _validate_email(value: str) -> str:
    email = _normalize_unicode(value.strip()).lower()
    if not 3 <= len(email) <= EMAIL_MAX_LENGTH:
        raise ValueError("invalid email address")
    local, _, domain = email.rpartition("@")
    labels = domain.split(".")
    valid = (
        0 < len(local) <= 64
        and _LOCAL_RE.fullmatch(local) is not None
        and len(labels) >= 2
        and all(_LABEL_RE.fullmatch(label) for label in labels)
    )
    if not valid:
        raise ValueError("invalid email address")
    return email


PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def _validate_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password needs at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password may have at most {PASSWORD_MAX_LENGTH} characters")
    return value


def _validate_display_name(value: str) -> str:
    normalized = " ".join(_normalize_unicode(value).split())
    if not normalized:
        raise ValueError("name must not be blank")
    return normalized


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _validate_display_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    # Strength rules are not re-checked on login; a bad password is just a bad password
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    otp: str = Field(..., min_length=1, max_length=10)

    @field_validator("otp")
    @classmethod
    def _strip_otp(cls, value: str) -> str:
        return value.strip()


class ResendOtpRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    created_at: datetime


class UserListResponse(BaseModel):
    items: List[UserResponse]


class SecurityLogEntry(BaseModel):
    timestamp: datetime
    level: str
    event: str
    type: str
    correlation_id: Optional[str] = None
    details: dict = Field(default_factory=dict)


class SecurityLogResponse(BaseModel):
    logs: List[SecurityLogEntry]


class AuthResponse(BaseModel):
    """Result of register, login and verify-otp.

    When ``requires_otp`` is true the account still has to pass the OTP step
    and ``user`` is omitted; ``demo_otp`` is only filled in on deployments that
    echo codes for demonstration.
    """

    requires_otp: bool
    user_id: str
    user: Optional[UserResponse] = None
    demo_otp: Optional[str] = None
    message: Optional[str] = None


class ResendOtpResponse(BaseModel):
    message: str
    demo_otp: Optional[str] = None


class MeResponse(BaseModel):
    user: Optional[UserResponse] = None


class ActivityResponse(BaseModel):
    active: bool
    reason: Optional[str] = None


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    header_name: str


class PostResponse(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: datetime


class PostListResponse(BaseModel):
    items: List[PostResponse]
