from __future__ import annotations

from typing import Iterable, Optional

from storeauth.logging import get_logger
from storeauth.service.authorities import Principal, principal_from_claims
from storeauth.service.errors import TokenError
from storeauth.service.sessions import SessionRegistry
from storeauth.service.tokens import TokenCodec
from storeauth.storage.models import TokenKind

logger = get_logger(__name__)

_BEARER_PREFIX = "bearer "


class RequestAuthenticationInterceptor:
    """Resolves the caller of one request from its bearer token.

    Never raises. Anything that prevents a clean resolution leaves the
    request unauthenticated, and the access layer decides what that means.
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionRegistry,
        public_paths: Iterable[str],
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.public_paths = tuple(p for p in public_paths if p)

    def is_public(self, path: str) -> bool:
        # Prefix match on whole path segments: "/healthz" does not cover "/healthzx"
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.public_paths
        )

    def resolve(self, path: str, authorization: Optional[str]) -> Optional[Principal]:
        if self.is_public(path):
            return None
        if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
            return None
        token = authorization[len(_BEARER_PREFIX) :].strip()
        if not token:
            return None
        try:
            claims = self.codec.decode(token, expected_kind=TokenKind.ACCESS)
            if claims.session_id and not self.sessions.is_valid(claims.session_id):
                logger.info(
                    "access_token_session_revoked",
                    user_id=claims.subject,
                    session_id=claims.session_id,
                )
                return None
            return principal_from_claims(claims)
        except TokenError as exc:
            logger.info("access_token_rejected", path=path, reason=type(exc).__name__)
            return None
        except Exception:
            logger.exception("request_authentication_failed", path=path)
            return None
