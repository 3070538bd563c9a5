from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import quote

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service.errors import ConflictError, NotFoundError
from storeauth.storage.memory import MemoryStore
from storeauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# One step either side of "now" absorbs ordinary clock drift
_SKEW_STEPS = 1


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    otpauth_uri: str


def new_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(secret: str, step: int, *, digits: int = 6) -> str:
    """RFC 6238 code for time step ``step`` (HMAC-SHA1, dynamic truncation)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, True)
    digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


class TwoFactorAuth:
    """TOTP enrollment and verification.

    A freshly enrolled secret stays inactive until the first code verifies.
    Each time step is accepted at most once per user. Too many wrong codes in
    a row block verification for ``totp_lockout_seconds``.
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
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # In-process attempt tracking used when Redis is not configured
        self._state_lock = threading.Lock()
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}

    def _step(self, moment: datetime) -> int:
        return int(moment.timestamp()) // self.settings.totp_interval_seconds

    def enroll(self, user_id: str, *, label: Optional[str] = None) -> TwoFactorEnrollment:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        existing = self.store.get_two_factor(user_id)
        if existing and existing.enabled:
            raise ConflictError("two-factor authentication already enabled")
        secret = new_secret()
        self.store.set_two_factor(user_id, secret, enabled=False)
        issuer = self.settings.totp_issuer
        account = label or user.username
        uri = (
            f"otpauth://totp/{quote(issuer)}:{quote(account)}"
            f"?secret={secret}&issuer={quote(issuer)}"
            f"&digits={self.settings.totp_digits}&period={self.settings.totp_interval_seconds}"
        )
        logger.info("two_factor_enrollment_started", user_id=user_id)
        return TwoFactorEnrollment(secret=secret, otpauth_uri=uri)

    def is_enabled(self, user_id: str) -> bool:
        cfg = self.store.get_two_factor(user_id)
        return bool(cfg and cfg.enabled)

    def is_enrolled(self, user_id: str) -> bool:
        return self.store.get_two_factor(user_id) is not None

    async def _locked_out(self, user_id: str, now: datetime) -> bool:
        if self.cache:
            return await self.cache.check_mfa_lockout(user_id)
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
            return False

    async def _record_failure(self, user_id: str, now: datetime) -> None:
        max_attempts = self.settings.totp_max_attempts
        lockout_seconds = self.settings.totp_lockout_seconds
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts=max_attempts, lockout_seconds=lockout_seconds
            )
            if is_locked and attempts >= 0:
                logger.warning("two_factor_lockout_triggered", user_id=user_id, attempts=attempts)
            return
        window = timedelta(seconds=lockout_seconds)
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._attempts.get(user_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._attempts[user_id] = (attempts, window_start)
            if attempts >= max_attempts:
                self._lockouts[user_id] = now + window
                self._attempts.pop(user_id, None)
                logger.warning("two_factor_lockout_triggered", user_id=user_id, attempts=attempts)

    async def _clear_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_mfa_attempts(user_id)
        else:
            with self._state_lock:
                self._attempts.pop(user_id, None)

    def _matching_step(self, secret: str, code: str, now: datetime) -> Optional[int]:
        current = self._step(now)
        matched = None
        for step in range(current - _SKEW_STEPS, current + _SKEW_STEPS + 1):
            expected = generate_totp(secret, step, digits=self.settings.totp_digits)
            # Check every candidate so timing does not reveal which step matched
            if hmac.compare_digest(expected, code) and matched is None:
                matched = step
        return matched

    async def verify(self, user_id: str, code: str) -> bool:
        cfg = self.store.get_two_factor(user_id)
        if not cfg:
            return False
        now = self._clock()
        if await self._locked_out(user_id, now):
            logger.warning("two_factor_locked_out", user_id=user_id)
            return False

        candidate = (code or "").strip()
        step: Optional[int] = None
        if candidate.isdigit() and len(candidate) == self.settings.totp_digits:
            try:
                step = self._matching_step(cfg.secret, candidate, now)
            except (binascii.Error, ValueError):
                logger.error("two_factor_secret_invalid", user_id=user_id)
                return False

        if step is None or not self.store.accept_two_factor_step(user_id, step, enable=True):
            if step is not None:
                logger.warning("two_factor_code_replayed", user_id=user_id)
            await self._record_failure(user_id, now)
            return False

        await self._clear_failures(user_id)
        if not cfg.enabled:
            logger.info("two_factor_enabled", user_id=user_id)
        return True

    def disable(self, user_id: str) -> bool:
        removed = self.store.delete_two_factor(user_id)
        if removed:
            with self._state_lock:
                self._attempts.pop(user_id, None)
                self._lockouts.pop(user_id, None)
            logger.info("two_factor_disabled", user_id=user_id)
        return removed
