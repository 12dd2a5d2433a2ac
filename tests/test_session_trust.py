"""Tests for session regeneration, idle timeout and absolute lifetime."""

from datetime import timedelta

import pytest

from recipeshare.service.activity import ActivityMonitor
from recipeshare.service.sessions import AFK_TIMEOUT, SESSION_EXPIRED, SessionTrustManager
from recipeshare.storage.memory import MemoryStore
from recipeshare.storage.models import Role


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def activity(store, clock):
    return ActivityMonitor(store, timedelta(minutes=25), clock=clock)


@pytest.fixture
def sessions(store, activity, clock):
    return SessionTrustManager(store, activity, max_age_minutes=60, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("Ed Editor", "ed@example.com", Role.EDITOR)


class TestRegeneration:
    def test_regenerate_issues_new_identifier_and_drops_old(self, sessions, store, user):
        anonymous = sessions.create_anonymous()

        fresh = sessions.regenerate(anonymous.id, user.id)

        assert fresh.id != anonymous.id
        assert fresh.csrf_secret != anonymous.csrf_secret
        assert fresh.user_id == user.id
        assert store.get_session(anonymous.id) is None
        assert store.get_session(fresh.id) is not None

    def test_regenerate_without_prior_session(self, sessions, store, user):
        fresh = sessions.regenerate(None, user.id)

        assert store.get_session(fresh.id).user_id == user.id

    def test_old_identifier_no_longer_resolves(self, sessions, user):
        anonymous = sessions.create_anonymous()
        sessions.regenerate(anonymous.id, user.id)

        resolution = sessions.resolve(anonymous.id)

        assert resolution.session is None
        assert resolution.ended_reason is None

    def test_new_session_starts_full_lifetime(self, sessions, user, clock):
        clock.advance(minutes=50)
        fresh = sessions.regenerate(None, user.id)

        assert fresh.expires_at == clock.now + timedelta(minutes=60)
        assert fresh.last_activity == clock.now


class TestIdleTimeout:
    def test_active_session_resolves(self, sessions, user, clock):
        session = sessions.regenerate(None, user.id)
        clock.advance(minutes=24)

        assert sessions.resolve(session.id).session is not None

    def test_idle_session_is_terminated(self, sessions, store, user, clock):
        session = sessions.regenerate(None, user.id)
        clock.advance(minutes=25, seconds=1)

        resolution = sessions.resolve(session.id)

        assert resolution.session is None
        assert resolution.ended_reason == AFK_TIMEOUT
        assert store.get_session(session.id) is None

    def test_terminated_session_reports_nothing_afterwards(self, sessions, user, clock):
        session = sessions.regenerate(None, user.id)
        clock.advance(minutes=26)
        sessions.resolve(session.id)

        assert sessions.resolve(session.id).ended_reason is None

    def test_touch_extends_idle_window(self, sessions, activity, user, clock):
        session = sessions.regenerate(None, user.id)
        clock.advance(minutes=20)
        activity.touch(session.id)
        clock.advance(minutes=20)

        assert sessions.resolve(session.id).session is not None

    def test_touch_never_moves_activity_backwards(self, store, activity, sessions, user, clock):
        session = sessions.regenerate(None, user.id)
        later = clock.now + timedelta(minutes=10)
        store.touch_session(session.id, later)

        activity.touch(session.id)

        assert store.get_session(session.id).last_activity == later

    def test_anonymous_sessions_do_not_go_idle(self, sessions, clock):
        session = sessions.create_anonymous()
        clock.advance(minutes=40)

        assert sessions.resolve(session.id).session is not None

    def test_is_expired_for_unknown_session(self, activity):
        assert activity.is_expired("missing") is True


class TestAbsoluteLifetime:
    def test_session_ends_at_max_age_despite_activity(self, sessions, activity, user, clock):
        session = sessions.regenerate(None, user.id)
        for _ in range(6):
            clock.advance(minutes=10)
            activity.touch(session.id)

        resolution = sessions.resolve(session.id)

        assert resolution.session is None
        assert resolution.ended_reason == SESSION_EXPIRED

    def test_expired_anonymous_session_is_silently_dropped(self, sessions, store, clock):
        session = sessions.create_anonymous()
        clock.advance(minutes=61)

        resolution = sessions.resolve(session.id)

        assert resolution.session is None
        assert resolution.ended_reason is None
        assert store.get_session(session.id) is None


def test_destroy_ends_only_that_session(sessions, user):
    first = sessions.regenerate(None, user.id)
    second = sessions.regenerate(None, user.id)

    assert sessions.destroy(first.id) is True

    assert sessions.resolve(first.id).session is None
    assert sessions.resolve(second.id).session.id == second.id
    assert sessions.destroy(first.id) is False
