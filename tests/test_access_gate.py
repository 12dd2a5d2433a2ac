"""Role gate tests: roles are compared literally, with no hierarchy."""

import pytest

from recipeshare.service.access import (
    ADMIN_ONLY,
    CONTENT_MANAGERS,
    authorize,
    require_identity,
    require_roles,
)
from recipeshare.service.context import RequestContext
from recipeshare.service.errors import Forbidden, NotAuthenticated, SessionExpired
from recipeshare.service.sessions import AFK_TIMEOUT, SESSION_EXPIRED
from recipeshare.storage.models import Role, Session, User


def _user(role: Role) -> User:
    return User(id=f"{role.value}-1", name=role.value.title(), email=f"{role.value}@example.com", role=role)


def _ctx(identity=None, reason=None) -> RequestContext:
    session = Session.new(user_id=identity.id) if identity else None
    return RequestContext(
        path="/v1/test", method="GET", session=session, identity=identity, reason=reason
    )


def test_admin_fails_editor_only_gate():
    editor_only = frozenset({Role.EDITOR})

    assert authorize(_user(Role.ADMIN), editor_only) is False
    assert authorize(_user(Role.EDITOR), editor_only) is True


@pytest.mark.parametrize(
    "role,allowed",
    [(Role.ADMIN, True), (Role.EDITOR, False), (Role.USER, False)],
)
def test_admin_only_gate(role, allowed):
    assert authorize(_user(role), ADMIN_ONLY) is allowed


@pytest.mark.parametrize(
    "role,allowed",
    [(Role.ADMIN, True), (Role.EDITOR, True), (Role.USER, False)],
)
def test_content_manager_gate(role, allowed):
    assert authorize(_user(role), CONTENT_MANAGERS) is allowed


def test_no_identity_is_never_authorized():
    assert authorize(None, CONTENT_MANAGERS) is False


def test_role_strings_are_accepted_in_required_set():
    assert authorize(_user(Role.EDITOR), ["editor"]) is True


def test_require_identity_returns_user():
    user = _user(Role.USER)

    assert require_identity(_ctx(user)) is user


def test_require_identity_without_session():
    with pytest.raises(NotAuthenticated) as excinfo:
        require_identity(_ctx())

    assert not isinstance(excinfo.value, SessionExpired)
    assert excinfo.value.status_code == 401


@pytest.mark.parametrize("reason", [AFK_TIMEOUT, SESSION_EXPIRED])
def test_require_identity_reports_why_session_ended(reason):
    with pytest.raises(SessionExpired) as excinfo:
        require_identity(_ctx(reason=reason))

    assert excinfo.value.error_code == "session_expired"
    assert excinfo.value.detail == {"reason": reason}


def test_require_roles_forbidden_for_wrong_role():
    with pytest.raises(Forbidden):
        require_roles(_ctx(_user(Role.USER)), CONTENT_MANAGERS)


def test_require_roles_checks_authentication_first():
    with pytest.raises(NotAuthenticated):
        require_roles(_ctx(), ADMIN_ONLY)
