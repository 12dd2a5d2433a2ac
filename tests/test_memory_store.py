from datetime import timedelta

import pytest

from recipeshare.storage.errors import ConstraintViolation
from recipeshare.storage.memory import MemoryStore
from recipeshare.storage.models import Role, Session, utcnow


@pytest.fixture
def store():
    return MemoryStore()


def test_create_user_normalizes_email_and_rejects_duplicates(store):
    user = store.create_user("Ann", "  Ann@Example.COM ", Role.EDITOR)

    assert user.email == "ann@example.com"
    assert store.get_user_by_email("ANN@example.com").id == user.id
    with pytest.raises(ConstraintViolation):
        store.create_user("Ann Again", "ann@example.com")


def test_role_is_coerced_to_enum(store):
    user = store.create_user("Ann", "ann@example.com", "admin")

    assert user.role is Role.ADMIN


def test_unknown_role_is_rejected(store):
    with pytest.raises(ValueError):
        store.create_user("Root", "root@example.com", "superuser")


def test_create_user_with_password_stores_both(store):
    user = store.create_user_with_password(
        "Ann", "ann@example.com", Role.USER, "hash", "argon2id"
    )

    assert store.get_user(user.id).email == "ann@example.com"
    assert store.get_password_record(user.id) == ("hash", "argon2id")


def test_create_user_with_password_leaves_nothing_on_failure(store, monkeypatch):
    def broken_save(user_id, password_hash, password_algo):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "save_password", broken_save)

    with pytest.raises(RuntimeError):
        store.create_user_with_password(
            "Ann", "ann@example.com", Role.USER, "hash", "argon2id"
        )

    assert store.users == {}
    assert store.credentials == {}
    assert store.get_user_by_email("ann@example.com") is None


def test_delete_user_cascades_everything_owned(store):
    doomed = store.create_user("Dora", "dora@example.com", Role.USER)
    keeper = store.create_user("Kim", "kim@example.com", Role.EDITOR)
    store.save_password(doomed.id, "hash", "argon2id")
    post = store.create_post(doomed.id, "Lemon tart")
    store.create_file(doomed.id, "tart.jpg", post_id=post.id)
    store.issue_otp(doomed.id, "123456", utcnow() + timedelta(minutes=10))
    store.create_session(Session.new(user_id=doomed.id))
    store.create_post(keeper.id, "Focaccia")
    keeper_session = store.create_session(Session.new(user_id=keeper.id))

    assert store.delete_user(doomed.id) is True

    assert store.get_user(doomed.id) is None
    assert store.get_password_record(doomed.id) is None
    assert store.list_posts(doomed.id) == []
    assert store.list_files(doomed.id) == []
    assert all(c.user_id != doomed.id for c in store.otp_challenges.values())
    assert all(s.user_id != doomed.id for s in store.sessions.values())
    assert [p.title for p in store.list_posts()] == ["Focaccia"]
    assert store.get_session(keeper_session.id) is not None


def test_delete_missing_user_returns_false(store):
    assert store.delete_user("missing") is False


def test_issue_otp_retires_earlier_codes(store):
    user = store.create_user("Uma", "uma@example.com")
    expires = utcnow() + timedelta(minutes=10)
    store.issue_otp(user.id, "111111", expires)
    store.issue_otp(user.id, "222222", expires)

    live = [c for c in store.otp_challenges.values() if not c.consumed]

    assert [c.code for c in live] == ["222222"]
    assert store.consume_otp(user.id, "111111", utcnow()) is False
    assert store.consume_otp(user.id, "222222", utcnow()) is True


def test_issue_otp_for_unknown_user(store):
    with pytest.raises(ConstraintViolation):
        store.issue_otp("missing", "123456", utcnow() + timedelta(minutes=10))


def test_purge_otp_challenges(store):
    user = store.create_user("Uma", "uma@example.com")
    now = utcnow()
    store.issue_otp(user.id, "111111", now + timedelta(minutes=10))
    store.issue_otp(user.id, "222222", now + timedelta(minutes=10))

    assert store.purge_otp_challenges(now) == 1
    assert store.purge_otp_challenges(now + timedelta(minutes=11)) == 1
    assert store.otp_challenges == {}


def test_rotate_session_replaces_old_record(store):
    user = store.create_user("Ann", "ann@example.com", Role.ADMIN)
    old = store.create_session(Session.new())
    new = Session.new(user_id=user.id)

    store.rotate_session(old.id, new)

    assert store.get_session(old.id) is None
    assert store.get_session(new.id).user_id == user.id


def test_get_session_returns_copy(store):
    session = store.create_session(Session.new())
    loaded = store.get_session(session.id)
    loaded.user_id = "tampered"

    assert store.get_session(session.id).user_id is None


def test_touch_session_is_monotonic(store):
    session = store.create_session(Session.new())
    later = session.last_activity + timedelta(minutes=5)

    store.touch_session(session.id, later)
    store.touch_session(session.id, session.last_activity)

    assert store.get_session(session.id).last_activity == later
    assert store.touch_session("missing", later) is None


def test_session_for_unknown_user_rejected(store):
    with pytest.raises(ConstraintViolation):
        store.create_session(Session.new(user_id="missing"))
