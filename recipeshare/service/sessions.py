from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from recipeshare.logging import get_logger, security_event
from recipeshare.service.activity import ActivityMonitor
from recipeshare.storage.models import Session, utcnow

logger = get_logger(__name__)

AFK_TIMEOUT = "afk_timeout"
SESSION_EXPIRED = "session_expired"


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_session(self, old_session_id: Optional[str], session: Session) -> Session: ...

    def delete_session(self, session_id: str) -> bool: ...


@dataclass(frozen=True)
class SessionResolution:
    """Outcome of looking up a session cookie.

    ``session`` is None when no live session exists; ``ended_reason`` then says
    whether a session was just terminated (``afk_timeout`` or
    ``session_expired``) or there simply never was one (None).
    """

    session: Optional[Session] = None
    ended_reason: Optional[str] = None


class SessionTrustManager:
    """Owns session records: creation, regeneration on login, and termination."""

    def __init__(
        self,
        store: SessionStore,
        activity: ActivityMonitor,
        *,
        max_age_minutes: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.activity = activity
        self.max_age_minutes = max_age_minutes
        self._clock = clock

    def create_anonymous(self) -> Session:
        session = Session.new(max_age_minutes=self.max_age_minutes, now=self._clock())
        return self.store.create_session(session)

    def regenerate(self, old_session_id: Optional[str], user_id: str) -> Session:
        """Bind ``user_id`` to a brand-new session and drop the old record.

        The new session gets a fresh identifier and CSRF secret; the old
        identifier is deleted in the same store operation so the two are never
        valid at once.
        """
        session = Session.new(
            user_id=user_id, max_age_minutes=self.max_age_minutes, now=self._clock()
        )
        self.store.rotate_session(old_session_id, session)
        logger.info(
            "session_regenerated",
            user_id=user_id,
            replaced_previous=bool(old_session_id),
        )
        return session

    def destroy(self, session_id: str) -> bool:
        return self.store.delete_session(session_id)

    def resolve(self, session_id: Optional[str]) -> SessionResolution:
        """Load a session, terminating it first if either time limit has passed."""
        if not session_id:
            return SessionResolution()
        session = self.store.get_session(session_id)
        if session is None:
            return SessionResolution()
        now = self._clock()
        if now >= session.expires_at:
            self.destroy(session.id)
            if not session.is_authenticated:
                return SessionResolution()
            logger.info("session_max_age_reached", user_id=session.user_id)
            return SessionResolution(ended_reason=SESSION_EXPIRED)
        if session.is_authenticated and self.activity.is_expired(session, now):
            self.destroy(session.id)
            security_event(
                "afk_timeout",
                logger=logger,
                user_id=session.user_id,
                idle_seconds=int(self.activity.idle_for(session, now).total_seconds()),
            )
            return SessionResolution(ended_reason=AFK_TIMEOUT)
        return SessionResolution(session=session)
