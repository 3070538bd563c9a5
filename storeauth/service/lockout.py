from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.storage.memory import MemoryStore
from storeauth.storage.models import AccountStatus, LockoutState
from storeauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AccountSecurityGuard:
    """Failed-login counting and temporary account locks.

    A lock is set once ``lockout_threshold`` consecutive failures accumulate and
    lasts ``lockout_duration_minutes``. An elapsed lock is lifted the next time
    the account is looked at, but the counter survives it, so one further
    failure locks again. Failures recorded while locked neither count nor
    extend the lock. Only a successful login or an administrative unlock resets
    the counter.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        # Redis only when explicitly requested; the store is otherwise authoritative
        self.cache = cache if settings.use_redis_lockout else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def _lock_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_duration_minutes)

    def _mark_status(self, user_id: str, locked: bool) -> None:
        user = self.store.get_user(user_id)
        if not user:
            return
        if locked and user.account_status == AccountStatus.ACTIVE:
            self.store.set_account_status(user_id, AccountStatus.LOCKED)
        elif not locked and user.account_status == AccountStatus.LOCKED:
            self.store.set_account_status(user_id, AccountStatus.ACTIVE)

    async def state(self, user_id: str) -> LockoutState:
        if self.cache:
            attempts, locked_until, last_failure = await self.cache.get_lockout(user_id)
            return LockoutState(
                user_id=user_id,
                failed_attempts=attempts,
                locked_until=locked_until,
                last_failure_at=last_failure,
            )
        return self.store.get_lockout(user_id)

    async def is_locked(self, user_id: str) -> bool:
        now = self._clock()
        current = await self.state(user_id)
        if current.is_locked(now):
            return True
        if current.locked_until is None:
            return False

        # Lock has elapsed: drop it but keep the failure count
        if self.cache:
            expired = await self.cache.expire_lockout(user_id, now=now)
        else:
            expired = False

            def _expire(state: LockoutState) -> None:
                nonlocal expired
                if state.locked_until is not None and now >= state.locked_until:
                    state.locked_until = None
                    expired = True

            self.store.update_lockout(user_id, _expire)
        if expired:
            self._mark_status(user_id, locked=False)
            logger.info("account_lock_expired", user_id=user_id, attempts=current.failed_attempts)
        return False

    async def record_failure(self, user_id: str) -> LockoutState:
        now = self._clock()
        threshold = self.settings.lockout_threshold
        if self.cache:
            attempts, locked_until, newly_locked = await self.cache.record_login_failure(
                user_id,
                now=now,
                threshold=threshold,
                lock_seconds=int(self._lock_duration.total_seconds()),
            )
            result = LockoutState(
                user_id=user_id,
                failed_attempts=attempts,
                locked_until=locked_until,
                last_failure_at=now,
            )
        else:
            triggered = False

            def _count(state: LockoutState) -> None:
                nonlocal triggered
                if state.is_locked(now):
                    return
                state.failed_attempts += 1
                state.last_failure_at = now
                if state.failed_attempts >= threshold:
                    state.locked_until = now + self._lock_duration
                    triggered = True
                else:
                    state.locked_until = None

            result = self.store.update_lockout(user_id, _count)
            newly_locked = triggered

        if newly_locked:
            self._mark_status(user_id, locked=True)
            logger.warning(
                "account_locked",
                user_id=user_id,
                attempts=result.failed_attempts,
                locked_until=result.locked_until.isoformat() if result.locked_until else None,
            )
        else:
            logger.info("login_failure_recorded", user_id=user_id, attempts=result.failed_attempts)
        return result

    async def _reset(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_lockout(user_id)
        else:

            def _clear(state: LockoutState) -> None:
                state.failed_attempts = 0
                state.locked_until = None

            self.store.update_lockout(user_id, _clear)
        self._mark_status(user_id, locked=False)

    async def record_success(self, user_id: str) -> None:
        await self._reset(user_id)

    async def unlock(self, user_id: str) -> None:
        """Administrative unlock; clears both the counter and any active lock."""
        await self._reset(user_id)
        logger.info("account_unlocked", user_id=user_id)
