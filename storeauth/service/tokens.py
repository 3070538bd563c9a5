from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service.errors import (
    MalformedToken,
    SignatureInvalid,
    TokenExpired,
    WrongTokenType,
)
from storeauth.storage.models import TokenKind, UserRole, UserType

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "token_type", "iat", "exp")


def _system_clock() -> datetime:
    return datetime.now(timezone.utc)


def _derive_kid(secret: bytes) -> str:
    return hashlib.sha256(b"kid:" + secret).hexdigest()[:16]


@dataclass
class SigningKey:
    kid: str
    secret: bytes
    created_at: datetime
    retired_at: Optional[datetime] = None


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None
    user_role: Optional[str] = None
    user_type: Optional[str] = None
    session_id: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False)


class TokenCodec:
    """Issues and verifies HS256 bearer tokens against a rotating key ring.

    The newest key signs; retired keys keep verifying until every token they
    could have signed has expired (retirement time plus the longest token
    lifetime). Each token names its signing key in the ``kid`` header.
    """

    def __init__(self, settings: Settings, *, clock: Clock | None = None) -> None:
        self.settings = settings
        self._clock = clock or _system_clock
        self._lock = threading.Lock()
        secret = settings.jwt_secret.encode()
        self._keys: list[SigningKey] = [
            SigningKey(kid=_derive_kid(secret), secret=secret, created_at=self._clock())
        ]

    @property
    def active_kid(self) -> str:
        with self._lock:
            return self._keys[0].kid

    @property
    def _retention(self) -> timedelta:
        return timedelta(minutes=self.settings.max_token_ttl_minutes)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, key: SigningKey, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(key.secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        user_id: str,
        user_type: Optional[Union[UserType, str]],
        user_role: Optional[Union[UserRole, str]],
        kind: TokenKind,
        ttl: timedelta,
        *,
        session_id: Optional[str] = None,
    ) -> str:
        if ttl.total_seconds() <= 0:
            raise ValueError("token ttl must be positive")
        now = self._clock()
        issued = int(now.timestamp())
        payload: dict[str, Any] = {
            "sub": user_id,
            "token_type": TokenKind(kind).value,
            "iat": issued,
            "exp": issued + int(ttl.total_seconds()),
            "jti": uuid.uuid4().hex,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if user_role is not None:
            payload["user_role"] = getattr(user_role, "value", user_role)
        if user_type is not None:
            payload["user_type"] = getattr(user_type, "value", user_type)
        if session_id:
            payload["sid"] = session_id
        with self._lock:
            key = self._keys[0]
        header = {"alg": _ALGORITHM, "typ": "JWT", "kid": key.kid}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(key, signing_input)}"

    def _verification_keys(self, kid: Optional[str]) -> list[SigningKey]:
        now = self._clock()
        with self._lock:
            self._keys = [
                k
                for k in self._keys
                if k.retired_at is None or now < k.retired_at + self._retention
            ]
            if kid is None:
                return list(self._keys)
            return [k for k in self._keys if k.kid == kid]

    def decode(self, token: str, *, expected_kind: Optional[TokenKind] = None) -> TokenClaims:
        """Verify ``token`` and return its claims.

        Raises:
            MalformedToken: not a well-formed token for this issuer and audience
            SignatureInvalid: no known signing key produced the signature
            TokenExpired: the verifier's clock is at or past ``exp``
            WrongTokenType: the token is not of ``expected_kind``
        """
        if not isinstance(token, str) or not token.isascii():
            raise MalformedToken("token must be an ASCII string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedToken("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise MalformedToken("token header must be an object")
        # Reject anything but HMAC-SHA256, including "none"
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedToken("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        candidates = self._verification_keys(header.get("kid"))
        if not any(
            hmac.compare_digest(self._sign(key, signing_input), sig_b64) for key in candidates
        ):
            raise SignatureInvalid("token signature does not verify")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedToken("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedToken("token payload must be an object")
        missing = [name for name in _REQUIRED_CLAIMS if payload.get(name) in (None, "")]
        if missing:
            raise MalformedToken(f"token missing claims: {', '.join(missing)}")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedToken("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise MalformedToken("token audience mismatch")
        try:
            kind = TokenKind(payload["token_type"])
            issued_ts = int(payload["iat"])
            exp_ts = int(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise MalformedToken("token claims have invalid values") from exc

        if self._clock().timestamp() >= exp_ts:
            raise TokenExpired("token expired")
        if expected_kind is not None and kind != TokenKind(expected_kind):
            raise WrongTokenType(f"expected {TokenKind(expected_kind).value} token")

        return TokenClaims(
            subject=str(payload["sub"]),
            kind=kind,
            issued_at=datetime.fromtimestamp(issued_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            token_id=payload.get("jti"),
            user_role=payload.get("user_role"),
            user_type=payload.get("user_type"),
            session_id=payload.get("sid"),
            raw=payload,
        )

    def extract_claim(
        self, token: str, selector: Union[str, Callable[[TokenClaims], Any]]
    ) -> Any:
        """Read one claim from a verified token, by claim name or selector function."""
        claims = self.decode(token)
        if callable(selector):
            return selector(claims)
        return claims.raw.get(selector)

    def rotate_key(self, new_secret: Optional[str] = None) -> str:
        """Start signing with a new key; returns its ``kid``."""
        secret = (new_secret or secrets.token_urlsafe(64)).encode()
        now = self._clock()
        with self._lock:
            if any(k.secret == secret for k in self._keys):
                raise ValueError("signing key already present in the key ring")
            self._keys[0].retired_at = now
            key = SigningKey(kid=_derive_kid(secret), secret=secret, created_at=now)
            self._keys.insert(0, key)
            del self._keys[self.settings.jwt_key_history :]
        logger.info("jwt_signing_key_rotated", kid=key.kid)
        return key.kid
