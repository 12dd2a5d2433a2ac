from __future__ import annotations

from typing import Iterable, Optional

from recipeshare.logging import get_logger, security_event
from recipeshare.service.context import RequestContext
from recipeshare.service.errors import Forbidden, NotAuthenticated, SessionExpired
from recipeshare.service.sessions import AFK_TIMEOUT, SESSION_EXPIRED
from recipeshare.storage.models import Role, User

logger = get_logger(__name__)

ADMIN_ONLY = frozenset({Role.ADMIN})
CONTENT_MANAGERS = frozenset({Role.ADMIN, Role.EDITOR})


def authorize(identity: Optional[User], required_roles: Iterable[Role]) -> bool:
    """Allow iff the identity's role is literally one of ``required_roles``.

    Roles are not ordered: an admin only passes a gate that lists admin.
    """
    if identity is None:
        return False
    return Role(identity.role) in {Role(role) for role in required_roles}


def require_identity(ctx: RequestContext) -> User:
    if ctx.identity is not None:
        return ctx.identity
    reason = ctx.reason or "no_session"
    security_event(
        "unauthorized_access_attempt",
        logger=logger,
        path=ctx.path,
        method=ctx.method,
        ip=ctx.client_ip,
        reason=reason,
    )
    if reason in (AFK_TIMEOUT, SESSION_EXPIRED):
        message = (
            "session expired due to inactivity"
            if reason == AFK_TIMEOUT
            else "session expired"
        )
        raise SessionExpired(message, detail={"reason": reason})
    raise NotAuthenticated("authentication required")


def require_roles(ctx: RequestContext, required_roles: Iterable[Role]) -> User:
    identity = require_identity(ctx)
    required = frozenset(Role(role) for role in required_roles)
    if authorize(identity, required):
        return identity
    security_event(
        "forbidden_access_attempt",
        logger=logger,
        path=ctx.path,
        method=ctx.method,
        ip=ctx.client_ip,
        user_id=identity.id,
        user_role=identity.role.value,
        required_roles=sorted(role.value for role in required),
        reason="insufficient_role",
    )
    raise Forbidden("insufficient permissions")
