"""Unit tests for one-time code issuing, verification and lockout."""

import asyncio
import threading

import pytest

from recipeshare.config import Settings
from recipeshare.service.otp import OtpChallengeManager
from recipeshare.storage.memory import MemoryStore
from recipeshare.storage.models import Role


@pytest.fixture
def settings():
    return Settings(
        session_secret="otp-test-secret",
        otp_ttl_minutes=10,
        otp_digits=6,
        otp_max_attempts=3,
        otp_lockout_minutes=5,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("Uma User", "uma@example.com", Role.USER)


@pytest.fixture
def manager(store, settings, clock):
    return OtpChallengeManager(store, settings, clock=clock)


def test_generated_codes_are_zero_padded_digits(manager):
    for _ in range(50):
        code = manager.generate_code()
        assert len(code) == 6
        assert code.isdigit()


async def test_issued_code_verifies_once(manager, user):
    code = await manager.issue(user.id)

    assert await manager.verify(user.id, code) is True
    assert await manager.verify(user.id, code) is False


async def test_reissue_invalidates_previous_code(manager, user):
    first = await manager.issue(user.id)
    second = await manager.issue(user.id)
    if first == second:
        # One in a million; the older record is still consumed
        pytest.skip("random codes collided")

    assert await manager.verify(user.id, first) is False
    assert await manager.verify(user.id, second) is True


async def test_resend_replaces_outstanding_code(manager, user):
    original = await manager.issue(user.id)
    replacement = await manager.resend(user.id)
    if original == replacement:
        pytest.skip("random codes collided")

    assert await manager.verify(user.id, original) is False
    assert await manager.verify(user.id, replacement) is True


async def test_code_expires_after_ttl(manager, user, clock):
    code = await manager.issue(user.id)
    clock.advance(minutes=10)

    assert await manager.verify(user.id, code) is False


async def test_code_valid_just_before_expiry(manager, user, clock):
    code = await manager.issue(user.id)
    clock.advance(minutes=9, seconds=59)

    assert await manager.verify(user.id, code) is True


async def test_code_bound_to_its_user(manager, store, user):
    other = store.create_user("Otto Other", "otto@example.com", Role.USER)
    code = await manager.issue(user.id)

    assert await manager.verify(other.id, code) is False
    assert await manager.verify(user.id, code) is True


@pytest.mark.parametrize("bad", ["", "12345", "1234567", "abcdef", "١٢٣٤٥٦"])
async def test_malformed_codes_never_verify(manager, user, bad):
    await manager.issue(user.id)

    assert await manager.verify(user.id, bad) is False


async def test_lockout_blocks_even_correct_code(manager, user):
    code = await manager.issue(user.id)
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(3):
        assert await manager.verify(user.id, wrong) is False

    assert await manager.is_locked_out(user.id) is True
    assert await manager.verify(user.id, code) is False


async def test_resend_does_not_lift_lockout(manager, user):
    code = await manager.issue(user.id)
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(3):
        await manager.verify(user.id, wrong)

    fresh = await manager.resend(user.id)

    assert await manager.verify(user.id, fresh) is False


async def test_lockout_lapses(manager, user, clock):
    code = await manager.issue(user.id)
    wrong = "000000" if code != "000000" else "111111"
    for _ in range(3):
        await manager.verify(user.id, wrong)

    clock.advance(minutes=5, seconds=1)
    fresh = await manager.issue(user.id)

    assert await manager.is_locked_out(user.id) is False
    assert await manager.verify(user.id, fresh) is True


async def test_success_resets_failure_count(manager, user):
    code = await manager.issue(user.id)
    wrong = "000000" if code != "000000" else "111111"
    await manager.verify(user.id, wrong)
    await manager.verify(user.id, wrong)
    assert await manager.verify(user.id, code) is True

    code = await manager.issue(user.id)
    wrong = "000000" if code != "000000" else "111111"
    await manager.verify(user.id, wrong)
    await manager.verify(user.id, wrong)

    assert await manager.is_locked_out(user.id) is False


def test_concurrent_verification_succeeds_once(manager, user):
    code = asyncio.run(manager.issue(user.id))
    results = []
    results_lock = threading.Lock()
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        outcome = asyncio.run(manager.verify(user.id, code))
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1


def test_cleanup_drops_lapsed_lockouts(manager, user, clock):
    async def lock_out():
        code = await manager.issue(user.id)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(3):
            await manager.verify(user.id, wrong)

    asyncio.run(lock_out())
    assert user.id in manager._lockouts

    clock.advance(minutes=6)

    assert manager.cleanup_expired_state() >= 1
    assert user.id not in manager._lockouts
