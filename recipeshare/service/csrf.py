from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Optional

from recipeshare.logging import get_logger, security_event
from recipeshare.service.errors import CsrfRejected
from recipeshare.storage.models import Session

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CsrfGuard:
    """Derives anti-forgery tokens from a session's CSRF secret.

    A token is an HMAC over the session id and its secret, so it is stable for
    the life of a session and worthless against any other session, including
    the one that replaces it on login.
    """

    def __init__(self, key: str) -> None:
        self._key = key.encode()

    @staticmethod
    def requires_check(method: str) -> bool:
        return method.upper() not in SAFE_METHODS

    def issue(self, session: Session) -> str:
        message = f"{session.id}:{session.csrf_secret}".encode()
        digest = hmac.new(self._key, message, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")

    def validate(self, session: Optional[Session], token: Optional[str]) -> bool:
        if session is None or not token:
            return False
        return hmac.compare_digest(self.issue(session), token)

    def enforce(
        self,
        session: Optional[Session],
        token: Optional[str],
        *,
        path: str,
        method: str,
        client_ip: Optional[str] = None,
    ) -> None:
        if self.validate(session, token):
            return
        if session is None:
            reason = "no_session"
        elif not token:
            reason = "missing_token"
        else:
            reason = "token_mismatch"
        security_event(
            "csrf_rejected",
            logger=logger,
            path=path,
            method=method,
            ip=client_ip,
            user_id=session.user_id if session else None,
            reason=reason,
        )
        raise CsrfRejected("missing or invalid CSRF token")
