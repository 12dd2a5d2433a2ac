from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Union

from recipeshare.storage.models import Session, utcnow


class ActivityStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, when: datetime) -> Optional[Session]: ...


class ActivityMonitor:
    """Tracks last activity per session and decides when a session went idle."""

    def __init__(
        self,
        store: ActivityStore,
        afk_timeout: timedelta,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.afk_timeout = afk_timeout
        self._clock = clock

    def touch(self, session_id: str) -> Optional[Session]:
        # Concurrent touches race; the store keeps the latest instant
        return self.store.touch_session(session_id, self._clock())

    def idle_for(self, session: Session, now: Optional[datetime] = None) -> timedelta:
        now = now or self._clock()
        return max(timedelta(0), now - session.last_activity)

    def is_expired(
        self, session: Union[Session, str], now: Optional[datetime] = None
    ) -> bool:
        if isinstance(session, str):
            loaded = self.store.get_session(session)
            if loaded is None:
                return True
            session = loaded
        return self.idle_for(session, now) > self.afk_timeout
