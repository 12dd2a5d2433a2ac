from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles. Roles are labels, not a hierarchy."""

    ADMIN = "admin"
    EDITOR = "editor"
    USER = "user"

    @property
    def requires_otp(self) -> bool:
        """Only ordinary users go through the emailed one-time code."""
        if self is Role.USER:
            return True
        if self in (Role.ADMIN, Role.EDITOR):
            return False
        raise ValueError(f"unhandled role {self!r}")


@dataclass
class User:
    id: str
    name: str
    email: str
    role: Role = Role.USER
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.role = Role(self.role)


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OtpChallenge:
    id: str
    user_id: str
    code: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed: bool = False

    def is_live(self, now: datetime) -> bool:
        return not self.consumed and self.expires_at > now


@dataclass
class Session:
    """One browser context. ``user_id`` stays None until authentication."""

    id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    csrf_secret: str
    user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @classmethod
    def new(
        cls,
        user_id: Optional[str] = None,
        max_age_minutes: int = 60,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(minutes=max_age_minutes),
            csrf_secret=secrets.token_urlsafe(32),
            user_id=user_id,
        )


@dataclass
class Post:
    id: str
    user_id: str
    title: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class StoredFile:
    id: str
    user_id: str
    filename: str
    post_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


def new_id() -> str:
    return str(uuid.uuid4())
