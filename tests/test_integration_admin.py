"""Integration tests for admin endpoints and role gates."""

import pytest
from fastapi.testclient import TestClient

from recipeshare import app as app_module
from recipeshare.logging import SECURITY_LOG_CAPACITY, security_event
from recipeshare.service.runtime import get_runtime
from recipeshare.storage.models import Role, Session


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _seed(email, role, password="Password123!"):
    runtime = get_runtime()
    user = runtime.store.create_user(role.value.title(), email, role)
    runtime.auth.save_password(user.id, password)
    return user


def _csrf(client):
    return client.get("/v1/csrf-token").json()["data"]["csrf_token"]


def _login_as(client, email):
    response = client.post(
        "/v1/auth/login",
        json={"email": email, "password": "Password123!"},
        headers={"X-CSRF-Token": _csrf(client)},
    )
    assert response.status_code == 200
    return response


def _delete(client, path):
    return client.delete(path, headers={"X-CSRF-Token": _csrf(client)})


@pytest.fixture
def admin():
    return _seed("admin@example.com", Role.ADMIN)


@pytest.fixture
def editor():
    return _seed("editor@example.com", Role.EDITOR)


class TestAdminGate:
    def test_admin_status(self, client, admin):
        _login_as(client, "admin@example.com")

        response = client.get("/v1/admin/status")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == admin.id

    def test_editor_is_forbidden(self, client, editor):
        _login_as(client, "editor@example.com")

        response = client.get("/v1/admin/users")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        response = client.get("/v1/admin/users")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_list_users(self, client, admin, editor):
        _login_as(client, "admin@example.com")

        response = client.get("/v1/admin/users")

        emails = {item["email"] for item in response.json()["data"]["items"]}
        assert emails == {"admin@example.com", "editor@example.com"}


class TestSecurityLogs:
    def test_admin_sees_recent_events_newest_first(self, client, admin, editor):
        failed = client.post(
            "/v1/auth/login",
            json={"email": "editor@example.com", "password": "WrongPass123!"},
            headers={"X-CSRF-Token": _csrf(client)},
        )
        assert failed.status_code == 401
        _login_as(client, "admin@example.com")

        response = client.get("/v1/admin/logs")

        assert response.status_code == 200
        logs = response.json()["data"]["logs"]
        assert [entry["event"] for entry in logs] == ["login_success", "login_failed"]
        success, failure = logs
        assert success["type"] == "auth"
        assert success["details"]["user_id"] == admin.id
        assert failure["level"] == "warning"
        assert failure["type"] == "security"
        assert failure["details"]["email"] == "ed***@example.com"
        assert failure["details"]["reason"] == "bad_password"

    def test_only_the_latest_entries_are_kept(self, client, admin):
        _login_as(client, "admin@example.com")
        for n in range(SECURITY_LOG_CAPACITY + 50):
            security_event("rate_limited", scope="test", n=n)

        logs = client.get("/v1/admin/logs").json()["data"]["logs"]
        limited = client.get("/v1/admin/logs", params={"limit": 5}).json()["data"]["logs"]

        assert len(logs) == SECURITY_LOG_CAPACITY
        assert logs[0]["details"]["n"] == SECURITY_LOG_CAPACITY + 49
        assert logs[-1]["details"]["n"] == 50
        assert [entry["details"]["n"] for entry in limited] == [149, 148, 147, 146, 145]

    def test_editor_cannot_read_logs(self, client, editor):
        _login_as(client, "editor@example.com")

        response = client.get("/v1/admin/logs")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_cannot_read_logs(self, client):
        assert client.get("/v1/admin/logs").status_code == 401


class TestContentGate:
    def test_editor_and_admin_can_see_drafts(self, client, admin, editor):
        get_runtime().store.create_post(editor.id, "Sourdough notes")

        _login_as(client, "editor@example.com")
        as_editor = client.get("/v1/posts/drafts")
        admin_client = TestClient(app_module.app)
        _login_as(admin_client, "admin@example.com")
        as_admin = admin_client.get("/v1/posts/drafts")

        assert as_editor.status_code == 200
        assert as_admin.status_code == 200
        assert [p["title"] for p in as_editor.json()["data"]["items"]] == ["Sourdough notes"]

    def test_user_role_cannot_see_drafts(self, client):
        runtime = get_runtime()
        user = _seed("user@example.com", Role.USER)
        session = Session.new(user_id=user.id, now=runtime.now())
        runtime.store.create_session(session)
        client.cookies.set("sid", session.id)

        response = client.get("/v1/posts/drafts")

        assert response.status_code == 403


class TestDeleteUser:
    def test_delete_user_cascades(self, client, admin):
        runtime = get_runtime()
        target = _seed("user@example.com", Role.USER)
        post = runtime.store.create_post(target.id, "Pho")
        runtime.store.create_file(target.id, "pho.jpg", post_id=post.id)
        target_session = runtime.store.create_session(
            Session.new(user_id=target.id, now=runtime.now())
        )
        _login_as(client, "admin@example.com")

        response = _delete(client, f"/v1/admin/users/{target.id}")

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": True, "user_id": target.id}
        assert runtime.store.get_user(target.id) is None
        assert runtime.store.list_posts(target.id) == []
        assert runtime.store.list_files(target.id) == []
        assert runtime.store.get_session(target_session.id) is None

    def test_cannot_delete_self(self, client, admin):
        _login_as(client, "admin@example.com")

        response = _delete(client, f"/v1/admin/users/{admin.id}")

        assert response.status_code == 400
        assert get_runtime().store.get_user(admin.id) is not None

    def test_cannot_delete_other_admin(self, client, admin):
        other = _seed("admin2@example.com", Role.ADMIN)
        _login_as(client, "admin@example.com")

        response = _delete(client, f"/v1/admin/users/{other.id}")

        assert response.status_code == 403
        assert get_runtime().store.get_user(other.id) is not None

    def test_delete_unknown_user(self, client, admin):
        _login_as(client, "admin@example.com")

        response = _delete(client, "/v1/admin/users/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_delete_requires_csrf(self, client, admin, editor):
        _login_as(client, "admin@example.com")

        response = client.delete(f"/v1/admin/users/{editor.id}")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "csrf_rejected"
        assert get_runtime().store.get_user(editor.id) is not None

    def test_deleted_user_is_logged_out(self, client, admin, editor):
        editor_client = TestClient(app_module.app)
        _login_as(editor_client, "editor@example.com")
        _login_as(client, "admin@example.com")

        _delete(client, f"/v1/admin/users/{editor.id}")

        assert editor_client.get("/v1/auth/me").json()["data"]["user"] is None
