"""Tests for failed-login counting and temporary account locks."""

import asyncio
import threading
from datetime import timedelta

import pytest

from storeauth.service.lockout import AccountSecurityGuard
from storeauth.storage.models import AccountStatus


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("reader", "reader@example.com")


@pytest.fixture
def guard(memory_store, settings, clock):
    return AccountSecurityGuard(memory_store, settings, clock=clock)


class TestLockoutStateMachine:
    async def test_locks_at_threshold(self, guard, user, settings):
        for _ in range(settings.lockout_threshold - 1):
            await guard.record_failure(user.id)
        assert not await guard.is_locked(user.id)

        state = await guard.record_failure(user.id)

        assert state.failed_attempts == settings.lockout_threshold
        assert await guard.is_locked(user.id)

    async def test_lock_mirrors_account_status(self, guard, user, memory_store, settings):
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)

        assert memory_store.get_user(user.id).account_status == AccountStatus.LOCKED

    async def test_failures_while_locked_do_not_extend(self, guard, user, settings):
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)
        locked_until = (await guard.state(user.id)).locked_until

        await guard.record_failure(user.id)
        state = await guard.state(user.id)

        assert state.locked_until == locked_until
        assert state.failed_attempts == settings.lockout_threshold

    async def test_lock_expires_lazily(self, guard, user, clock, settings, memory_store):
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)

        clock.advance(minutes=settings.lockout_duration_minutes)

        assert not await guard.is_locked(user.id)
        state = await guard.state(user.id)
        assert state.failed_attempts == settings.lockout_threshold
        assert state.locked_until is None
        assert memory_store.get_user(user.id).account_status == AccountStatus.ACTIVE

    async def test_one_failure_after_expiry_locks_again(self, guard, user, clock, settings):
        """Expiry lifts the lock but does not hand out a fresh set of guesses."""
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)
        clock.advance(minutes=settings.lockout_duration_minutes, seconds=1)
        assert not await guard.is_locked(user.id)

        state = await guard.record_failure(user.id)

        assert state.failed_attempts == settings.lockout_threshold + 1
        assert state.locked_until == clock() + timedelta(minutes=settings.lockout_duration_minutes)
        assert await guard.is_locked(user.id)

    async def test_failure_after_unread_expiry_locks_again(self, guard, user, clock, settings):
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)
        clock.advance(minutes=settings.lockout_duration_minutes)

        await guard.record_failure(user.id)

        assert await guard.is_locked(user.id)

    async def test_success_after_expiry_resets_counter(self, guard, user, clock, settings):
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)
        clock.advance(minutes=settings.lockout_duration_minutes)
        assert not await guard.is_locked(user.id)

        await guard.record_success(user.id)
        state = await guard.record_failure(user.id)

        assert state.failed_attempts == 1
        assert state.locked_until is None

    async def test_lock_announced_once(self, guard, user, settings, memory_store, monkeypatch):
        """Only the failure that starts a lock flips the account status."""
        writes = []
        original = memory_store.set_account_status

        def _recording(user_id, status):
            writes.append(status)
            return original(user_id, status)

        monkeypatch.setattr(memory_store, "set_account_status", _recording)
        for _ in range(settings.lockout_threshold + 3):
            await guard.record_failure(user.id)

        assert writes == [AccountStatus.LOCKED]

    async def test_still_locked_just_before_expiry(self, guard, user, clock, settings):
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)

        clock.advance(minutes=settings.lockout_duration_minutes, seconds=-1)

        assert await guard.is_locked(user.id)

    async def test_success_resets_counter(self, guard, user, settings):
        for _ in range(settings.lockout_threshold - 1):
            await guard.record_failure(user.id)
        await guard.record_success(user.id)
        await guard.record_failure(user.id)

        assert (await guard.state(user.id)).failed_attempts == 1
        assert not await guard.is_locked(user.id)

    async def test_unlock_clears_active_lock(self, guard, user, settings, memory_store):
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)

        await guard.unlock(user.id)

        assert not await guard.is_locked(user.id)
        assert (await guard.state(user.id)).failed_attempts == 0
        assert memory_store.get_user(user.id).account_status == AccountStatus.ACTIVE

    async def test_suspended_status_is_left_alone(self, guard, user, settings, memory_store):
        memory_store.set_account_status(user.id, AccountStatus.SUSPENDED)
        for _ in range(settings.lockout_threshold):
            await guard.record_failure(user.id)
        await guard.unlock(user.id)

        assert memory_store.get_user(user.id).account_status == AccountStatus.SUSPENDED


class TestLockoutConcurrency:
    def test_parallel_failures_are_all_counted(self, memory_store, settings, clock):
        roomy = settings.model_copy(update={"lockout_threshold": 1000})
        guard = AccountSecurityGuard(memory_store, roomy, clock=clock)
        user = memory_store.create_user("busy", "busy@example.com")
        workers, per_worker = 8, 25
        barrier = threading.Barrier(workers)

        def _hammer():
            barrier.wait()
            for _ in range(per_worker):
                asyncio.run(guard.record_failure(user.id))

        threads = [threading.Thread(target=_hammer) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert memory_store.get_lockout(user.id).failed_attempts == workers * per_worker

    def test_parallel_failures_lock_exactly_once(self, guard, memory_store, settings):
        user = memory_store.create_user("racer", "racer@example.com")
        workers = settings.lockout_threshold * 3
        barrier = threading.Barrier(workers)

        def _fail():
            barrier.wait()
            asyncio.run(guard.record_failure(user.id))

        threads = [threading.Thread(target=_fail) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        state = memory_store.get_lockout(user.id)
        assert state.failed_attempts == settings.lockout_threshold
        assert state.locked_until is not None
