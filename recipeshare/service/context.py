from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from recipeshare.storage.models import Role, Session, User


@dataclass(frozen=True)
class RequestContext:
    """Everything the trust core decided about one request.

    Built once per request from the session cookie and handed explicitly to
    the operations and the role gate.
    """

    path: str
    method: str
    client_ip: Optional[str] = None
    request_id: Optional[str] = None
    session: Optional[Session] = None
    identity: Optional[User] = None
    # Why there is no identity: afk_timeout, session_expired, user_not_found or None
    reason: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.id if self.identity else None

    @property
    def role(self) -> Optional[Role]:
        return self.identity.role if self.identity else None

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    def with_session(self, session: Optional[Session]) -> "RequestContext":
        return replace(self, session=session)
