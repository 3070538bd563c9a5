from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service.email import NotificationDispatcher, Notifier
from storeauth.service.errors import InvalidOrExpiredToken, NotFoundError
from storeauth.service.passwords import CredentialVerifier
from storeauth.service.sessions import SessionRegistry
from storeauth.storage.memory import MemoryStore
from storeauth.storage.models import AccountStatus, OneTimeToken, TokenPurpose

logger = get_logger(__name__)


def _hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


def _email_digest(email: str) -> str:
    return hashlib.sha256(email.lower().encode()).hexdigest()[:16]


class PasswordResetFlow:
    """Single-use, time-limited tokens for password reset and email verification.

    Tokens are stored as SHA-256 digests; the raw value only ever goes to the
    notifier. Delivery runs in the background and its failures are logged,
    never reported to the requester.
    """

    def __init__(
        self,
        store: MemoryStore,
        verifier: CredentialVerifier,
        sessions: SessionRegistry,
        notifier: Notifier,
        settings: Settings,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.sessions = sessions
        self.notifier = notifier
        self.settings = settings
        self.dispatcher = dispatcher or NotificationDispatcher()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _issue(self, user_id: str, purpose: TokenPurpose, ttl: timedelta) -> str:
        raw = secrets.token_urlsafe(32)
        now = self._clock()
        self.store.save_one_time_token(
            OneTimeToken(
                token_hash=_hash_token(raw),
                user_id=user_id,
                purpose=purpose,
                expires_at=now + ttl,
                created_at=now,
            )
        )
        return raw

    async def initiate(self, email: str) -> None:
        """Start a reset for ``email``. Returns the same way whether or not it exists."""
        user = self.store.get_user_by_email(email)
        if not user or user.account_status == AccountStatus.DEACTIVATED:
            logger.info("password_reset_not_issued", email_digest=_email_digest(email))
            return
        raw = self._issue(
            user.id,
            TokenPurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.dispatcher.dispatch(
            "password_reset", self.notifier.send_password_reset, user.email, raw
        )
        logger.info("password_reset_requested", user_id=user.id)

    def validate(self, token: str) -> bool:
        record = self.store.get_one_time_token(_hash_token(token))
        if not record or record.purpose != TokenPurpose.PASSWORD_RESET or record.consumed:
            return False
        if self._clock() >= record.expires_at:
            return False
        user = self.store.get_user(record.user_id)
        return bool(user and user.account_status != AccountStatus.DEACTIVATED)

    async def redeem(self, token: str, new_password: str) -> str:
        """Set a new password with a reset token and end every session of its owner.

        Returns the user id.

        Raises:
            InvalidOrExpiredToken: the token is unknown, spent or expired.
        """
        new_hash = self.verifier.encode(new_password)
        user_id = self.store.redeem_password_reset(
            _hash_token(token), new_hash, self.verifier.algorithm, now=self._clock()
        )
        if user_id is None:
            logger.warning("password_reset_invalid_token")
            raise InvalidOrExpiredToken()
        revoked = self.sessions.revoke_all_for_user(user_id)
        logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)
        return user_id

    async def request_email_verification(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.email_verified:
            return
        raw = self._issue(
            user.id,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        self.dispatcher.dispatch(
            "email_verification", self.notifier.send_email_verification, user.email, raw
        )
        logger.info("email_verification_requested", user_id=user.id)

    async def confirm_email(self, token: str) -> str:
        record = self.store.consume_one_time_token(
            _hash_token(token), TokenPurpose.EMAIL_VERIFICATION, now=self._clock()
        )
        if not record:
            logger.warning("email_verification_invalid_token")
            raise InvalidOrExpiredToken()
        self.store.mark_email_verified(record.user_id)
        logger.info("email_verified", user_id=record.user_id)
        return record.user_id
