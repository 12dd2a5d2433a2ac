from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from recipeshare.config import Settings
from recipeshare.logging import get_logger, security_event
from recipeshare.service.access import require_identity, require_roles
from recipeshare.service.activity import ActivityMonitor
from recipeshare.service.context import RequestContext
from recipeshare.service.csrf import CsrfGuard
from recipeshare.service.errors import (
    Conflict,
    Forbidden,
    InvalidCredentials,
    NotFound,
    OtpInvalidOrExpired,
    ValidationError,
)
from recipeshare.service.otp import OtpChallengeManager
from recipeshare.service.sessions import AFK_TIMEOUT, SESSION_EXPIRED, SessionTrustManager
from recipeshare.storage.errors import ConstraintViolation
from recipeshare.storage.models import Role, Session, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(self, name: str, email: str, role: Role = Role.USER) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def create_user_with_password(
        self,
        name: str,
        email: str,
        role: Role,
        password_hash: str,
        password_algo: str,
    ) -> User: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def purge_otp_challenges(self, now: datetime) -> int: ...

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class AuthOutcome:
    """Result of register, login and verify_otp.

    Either ``requires_otp`` is set and no session exists yet, or ``session``
    holds the freshly regenerated authenticated session.
    """

    user: User
    requires_otp: bool = False
    session: Optional[Session] = None
    demo_otp: Optional[str] = None


@dataclass(frozen=True)
class ActivityStatus:
    active: bool
    reason: Optional[str] = None


class AuthService:
    """Credential checks, the OTP step and every session-trust operation."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        otp: OtpChallengeManager,
        sessions: SessionTrustManager,
        activity: ActivityMonitor,
        csrf: CsrfGuard,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.otp = otp
        self.sessions = sessions
        self.activity = activity
        self.csrf = csrf
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = clock()
        self.logger = logger

    # request context
    def resolve_context(
        self,
        session_id: Optional[str],
        *,
        path: str,
        method: str,
        client_ip: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> RequestContext:
        base = RequestContext(
            path=path, method=method, client_ip=client_ip, request_id=request_id
        )
        resolution = self.sessions.resolve(session_id)
        session = resolution.session
        if session is None:
            return replace(base, reason=resolution.ended_reason)
        if not session.is_authenticated:
            return base.with_session(session)
        user = self.store.get_user(session.user_id)
        if user is None:
            # Account removed while the session was alive
            self.sessions.destroy(session.id)
            return replace(base, reason="user_not_found")
        return replace(base, session=session, identity=user)

    def authenticate(
        self, ctx: RequestContext, required_roles: Optional[frozenset[Role]] = None
    ) -> RequestContext:
        """Gate a protected action and record it as activity."""
        if required_roles is None:
            require_identity(ctx)
        else:
            require_roles(ctx, required_roles)
        touched = self.activity.touch(ctx.session_id) if ctx.session_id else None
        return ctx.with_session(touched or ctx.session)

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _burn_password_check(self, password: str) -> None:
        """Spend one hash verification so unknown emails cost the same as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def create_account(
        self, name: str, email: str, password: str, *, role: Role = Role.USER
    ) -> User:
        """Store the account and its password hash in one step.

        Raises:
            Conflict: If the email is already registered
        """
        pwd_hash, algo = self._hash_password(password)
        try:
            return self.store.create_user_with_password(
                name, email, Role(role), pwd_hash, algo
            )
        except ConstraintViolation as exc:
            raise Conflict("email already in use", detail=exc.detail) from exc

    # operations
    async def register(
        self,
        name: str,
        email: str,
        password: str,
        ctx: RequestContext,
        *,
        role: Role = Role.USER,
    ) -> AuthOutcome:
        self.maybe_cleanup()
        user = self.create_account(name, email, password, role=role)
        security_event(
            "user_registered",
            logger=self.logger,
            user_id=user.id,
            email=user.email,
            role=user.role.value,
        )
        return await self._complete_primary_auth(user, ctx, action="register")

    async def login(self, email: str, password: str, ctx: RequestContext) -> AuthOutcome:
        self.maybe_cleanup()
        user = self.store.get_user_by_email(email)
        if user is None:
            self._burn_password_check(password)
            security_event(
                "login_failed",
                logger=self.logger,
                email=email,
                ip=ctx.client_ip,
                reason="user_not_found",
            )
            raise InvalidCredentials("invalid credentials")
        if not self.verify_password(user.id, password):
            security_event(
                "login_failed",
                logger=self.logger,
                email=email,
                user_id=user.id,
                ip=ctx.client_ip,
                reason="bad_password",
            )
            raise InvalidCredentials("invalid credentials")
        return await self._complete_primary_auth(user, ctx, action="login")

    async def _complete_primary_auth(
        self, user: User, ctx: RequestContext, *, action: str
    ) -> AuthOutcome:
        if user.role.requires_otp:
            code = await self.otp.issue(user.id)
            security_event(
                "otp_sent", logger=self.logger, user_id=user.id, action=action
            )
            return AuthOutcome(
                user=user,
                requires_otp=True,
                demo_otp=code if self.settings.expose_demo_otp else None,
            )
        session = self.sessions.regenerate(ctx.session_id, user.id)
        security_event(
            "login_success",
            logger=self.logger,
            user_id=user.id,
            role=user.role.value,
            action=action,
            ip=ctx.client_ip,
        )
        return AuthOutcome(user=user, session=session)

    async def verify_otp(self, user_id: str, code: str, ctx: RequestContext) -> AuthOutcome:
        # Verify before looking the account up so unknown ids fail the same way
        verified = await self.otp.verify(user_id, code)
        user = self.store.get_user(user_id) if verified else None
        if user is None:
            security_event(
                "otp_failed", logger=self.logger, user_id=user_id, ip=ctx.client_ip
            )
            raise OtpInvalidOrExpired("invalid or expired OTP")
        session = self.sessions.regenerate(ctx.session_id, user.id)
        security_event(
            "otp_verified", logger=self.logger, user_id=user.id, ip=ctx.client_ip
        )
        return AuthOutcome(user=user, session=session)

    async def resend_otp(self, user_id: str, ctx: RequestContext) -> Optional[str]:
        """Issue a replacement code; returns it only when demo echo is enabled."""
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("user not found")
        if not user.role.requires_otp:
            raise ValidationError("OTP is not required for this account")
        code = await self.otp.resend(user.id)
        security_event("otp_resent", logger=self.logger, user_id=user.id, ip=ctx.client_ip)
        return code if self.settings.expose_demo_otp else None

    async def logout(self, ctx: RequestContext) -> None:
        if ctx.session_id:
            self.sessions.destroy(ctx.session_id)
        if ctx.identity is not None:
            security_event("logout", logger=self.logger, user_id=ctx.user_id)

    async def me(self, ctx: RequestContext) -> Optional[User]:
        if ctx.identity is None:
            return None
        if ctx.session_id:
            self.activity.touch(ctx.session_id)
        return ctx.identity

    async def heartbeat(self, ctx: RequestContext) -> bool:
        if ctx.identity is None or not ctx.session_id:
            return False
        return self.activity.touch(ctx.session_id) is not None

    async def check_activity(self, ctx: RequestContext) -> ActivityStatus:
        # Does not count as activity; expiry was already enforced in resolve_context
        if ctx.identity is not None:
            return ActivityStatus(active=True)
        if ctx.reason in (AFK_TIMEOUT, SESSION_EXPIRED):
            return ActivityStatus(active=False, reason=ctx.reason)
        return ActivityStatus(active=False, reason="not_logged_in")

    async def csrf_token(self, ctx: RequestContext) -> Tuple[Session, str, bool]:
        """Return the session's CSRF token, opening an anonymous session if needed.

        The third element tells the caller whether a new session cookie has to
        be sent.
        """
        if ctx.session is not None:
            return ctx.session, self.csrf.issue(ctx.session), False
        session = self.sessions.create_anonymous()
        return session, self.csrf.issue(session), True

    # administration
    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    async def delete_user(self, actor: User, user_id: str, ctx: RequestContext) -> None:
        if actor.id == user_id:
            raise ValidationError("cannot delete your own account")
        target = self.store.get_user(user_id)
        if target is None:
            raise NotFound("user not found")
        if target.role is Role.ADMIN:
            security_event(
                "forbidden_access_attempt",
                logger=self.logger,
                path=ctx.path,
                method=ctx.method,
                ip=ctx.client_ip,
                user_id=actor.id,
                user_role=actor.role.value,
                target_user_id=user_id,
                reason="admin_target",
            )
            raise Forbidden("cannot delete another admin")
        if not self.store.delete_user(user_id):
            raise NotFound("user not found")
        security_event(
            "user_deleted",
            logger=self.logger,
            user_id=user_id,
            deleted_by=actor.id,
            email=target.email,
        )

    # housekeeping
    def cleanup_expired_state(self) -> int:
        now = self._clock()
        cleaned = self.otp.cleanup_expired_state()
        cleaned += self.store.purge_otp_challenges(now)
        cleaned += self.store.purge_expired_sessions(now)
        if cleaned > 0:
            self.logger.debug("auth_state_cleanup", cleaned=cleaned)
        self._last_cleanup = now
        return cleaned

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Run cleanup if interval has elapsed since last cleanup."""
        now = self._clock()
        if now - self._last_cleanup < timedelta(minutes=interval_minutes):
            return 0
        if not self._cleanup_lock.acquire(blocking=False):
            return 0
        try:
            return self.cleanup_expired_state()
        finally:
            self._cleanup_lock.release()
