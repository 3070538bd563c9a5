from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Callable, Optional

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service.errors import InvalidOrExpiredToken
from storeauth.storage.memory import MemoryStore
from storeauth.storage.models import Session

logger = get_logger(__name__)


def hash_refresh_token(raw_token: str) -> str:
    """Digest under which a refresh token is stored; the raw value never is."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


class SessionRegistry:
    """Lifecycle of login sessions and the refresh tokens bound to them."""

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create_session(
        self,
        user_id: str,
        refresh_token_hash: str,
        ip_address: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        session = self.store.create_session(
            user_id,
            refresh_token_hash,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
            now=self._clock(),
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session.id

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def is_valid(self, session_id: str) -> bool:
        session = self.store.get_session(session_id)
        return bool(session and session.is_active(self._clock()))

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id, now=self._clock())
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = self.store.revoke_user_sessions(
            user_id, except_session_id, now=self._clock()
        )
        logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    def find_by_refresh_hash(self, refresh_token_hash: str) -> Optional[Session]:
        return self.store.find_session_by_refresh_hash(refresh_token_hash)

    def rotate(
        self,
        presented_hash: str,
        new_refresh_hash: str,
        ip_address: Optional[str] = None,
        *,
        new_session_id: Optional[str] = None,
    ) -> Session:
        """Swap a refresh token for a new one; each token can be swapped once.

        Raises:
            InvalidOrExpiredToken: the presented token is unknown, already
                rotated or revoked, or its session has expired.
        """
        rotated = self.store.rotate_session(
            presented_hash,
            new_refresh_hash,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            now=self._clock(),
            ip_address=ip_address,
            new_session_id=new_session_id,
        )
        if rotated is None:
            previous = self.store.find_session_by_refresh_hash(presented_hash)
            if previous and previous.rotated_to:
                # A rotated token came back: someone holds a copy of it
                logger.warning(
                    "refresh_token_reused",
                    user_id=previous.user_id,
                    session_id=previous.id,
                )
            raise InvalidOrExpiredToken()
        retired, successor = rotated
        logger.info(
            "session_rotated",
            user_id=successor.user_id,
            session_id=successor.id,
            previous_session_id=retired.id,
        )
        return successor
