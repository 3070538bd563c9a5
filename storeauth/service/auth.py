from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from storeauth.config import Settings
from storeauth.logging import get_logger
from storeauth.service.authorities import Principal, expand, principal_from_claims
from storeauth.service.email import EmailService, NotificationDispatcher, Notifier
from storeauth.service.errors import (
    AccountDisabled,
    AccountLocked,
    ConflictError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFoundError,
    ServerError,
    SessionRevoked,
    TokenError,
    TwoFactorRequired,
    ValidationError,
)
from storeauth.service.lockout import AccountSecurityGuard
from storeauth.service.password_reset import PasswordResetFlow
from storeauth.service.passwords import CredentialVerifier
from storeauth.service.sessions import SessionRegistry, hash_refresh_token
from storeauth.service.tokens import TokenCodec
from storeauth.service.two_factor import TwoFactorAuth, TwoFactorEnrollment
from storeauth.storage.errors import ConstraintViolation
from storeauth.storage.memory import MemoryStore
from storeauth.storage.models import (
    AccountStatus,
    TokenKind,
    User,
    UserRole,
    UserType,
)
from storeauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_STAFF_ROLES = frozenset(
    {UserRole.SUPPORT, UserRole.MODERATOR, UserRole.MANAGER, UserRole.ADMIN, UserRole.SUPER_ADMIN}
)


@dataclass
class AuthResult:
    user: User
    session_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    authorities: frozenset[str]
    token_type: str = "Bearer"


class AuthenticationService:
    """Login, refresh, logout and account-security operations.

    Composes the token codec, the lockout guard, the session registry, the
    password verifier, the reset flow and TOTP two-factor into the flows the
    HTTP layer exposes.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tokens: Optional[TokenCodec] = None,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.notifier: Notifier = notifier or EmailService()
        self.dispatcher = NotificationDispatcher()
        self.tokens = tokens or TokenCodec(settings, clock=self._clock)
        self.verifier = verifier or CredentialVerifier()
        self.guard = AccountSecurityGuard(store, settings, cache=cache, clock=self._clock)
        self.sessions = SessionRegistry(store, settings, clock=self._clock)
        self.resets = PasswordResetFlow(
            store,
            self.verifier,
            self.sessions,
            self.notifier,
            settings,
            dispatcher=self.dispatcher,
            clock=self._clock,
        )
        self.two_factor = TwoFactorAuth(store, settings, cache=cache, clock=self._clock)

    @property
    def _access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def _refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _mint_pair(self, user: User, session_id: str) -> tuple[str, str]:
        access = self.tokens.issue(
            user.id, user.user_type, user.role, TokenKind.ACCESS, self._access_ttl,
            session_id=session_id,
        )
        refresh = self.tokens.issue(
            user.id, user.user_type, user.role, TokenKind.REFRESH, self._refresh_ttl,
            session_id=session_id,
        )
        return access, refresh

    def _result(self, user: User, session_id: str, access: str, refresh: str) -> AuthResult:
        # Report the expiries the tokens actually carry
        access_claims = self.tokens.decode(access, expected_kind=TokenKind.ACCESS)
        refresh_claims = self.tokens.decode(refresh, expected_kind=TokenKind.REFRESH)
        return AuthResult(
            user=user,
            session_id=session_id,
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
            authorities=expand(user.role, user.user_type),
        )

    def _open_session(
        self, user: User, ip_address: Optional[str], user_agent: Optional[str]
    ) -> AuthResult:
        # Session id is fixed up front so it can be embedded in both tokens
        session_id = str(uuid.uuid4())
        try:
            access, refresh = self._mint_pair(user, session_id)
            self.sessions.create_session(
                user.id,
                hash_refresh_token(refresh),
                ip_address,
                user_agent=user_agent,
                session_id=session_id,
            )
        except Exception as exc:
            # Never leave a half-built session behind
            self.sessions.revoke(session_id)
            logger.error(
                "session_open_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("could not establish a session") from exc
        return self._result(user, session_id, access, refresh)

    # registration
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        full_name: Optional[str] = None,
        mobile_number: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Create a customer account and sign it in."""
        user = self._create_account(
            username,
            email,
            password,
            role=UserRole.CUSTOMER,
            user_type=UserType.CUSTOMER,
            full_name=full_name,
            mobile_number=mobile_number,
        )
        await self.resets.request_email_verification(user.id)
        logger.info("user_registered", user_id=user.id)
        return self._open_session(user, ip_address, user_agent)

    def register_staff(
        self,
        username: str,
        email: str,
        password: str,
        role: UserRole,
        *,
        full_name: Optional[str] = None,
    ) -> User:
        """Create an account with a staff role; it is not signed in."""
        role = UserRole(role)
        user_type = UserType.ADMIN if role in _STAFF_ROLES else UserType.CUSTOMER
        user = self._create_account(
            username, email, password, role=role, user_type=user_type, full_name=full_name
        )
        logger.info("staff_user_registered", user_id=user.id, role=role.value)
        return user

    def _create_account(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: UserRole,
        user_type: UserType,
        full_name: Optional[str] = None,
        mobile_number: Optional[str] = None,
    ) -> User:
        try:
            user = self.store.create_user(
                username,
                email,
                role=role,
                user_type=user_type,
                full_name=full_name,
                mobile_number=mobile_number,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.store.save_password(user.id, self.verifier.encode(password), self.verifier.algorithm)
        return user

    def username_available(self, username: str) -> bool:
        return self.store.get_user_by_username(username) is None

    def email_available(self, email: str) -> bool:
        return self.store.get_user_by_email(email) is None

    # login
    async def authenticate(
        self,
        login: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        two_factor_code: Optional[str] = None,
    ) -> AuthResult:
        """Verify credentials and open a session.

        Raises:
            InvalidCredentials: unknown login, wrong password or wrong 2FA code
            AccountDisabled: the account is suspended or deactivated
            AccountLocked: too many recent failures; the password is not checked
            TwoFactorRequired: password accepted, second factor missing
            ServerError: tokens or session could not be created
        """
        user = self.store.find_user_by_login(login.strip())
        if not user:
            # Spend the same hashing time as a real mismatch
            self.verifier.burn()
            logger.info("login_failed", reason="unknown_login")
            raise InvalidCredentials()

        if user.is_disabled:
            logger.warning("login_rejected", user_id=user.id, status=user.account_status.value)
            raise AccountDisabled()

        if await self.guard.is_locked(user.id):
            state = await self.guard.state(user.id)
            logger.warning("login_rejected_locked", user_id=user.id)
            raise AccountLocked(
                detail={
                    "locked_until": state.locked_until.isoformat() if state.locked_until else None
                }
            )

        record = self.store.get_password_record(user.id)
        stored_hash = record[0] if record else ""
        if not self.verifier.verify(password, stored_hash):
            await self.guard.record_failure(user.id)
            logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentials()

        if self.two_factor.is_enabled(user.id):
            if not two_factor_code:
                raise TwoFactorRequired()
            if not await self.two_factor.verify(user.id, two_factor_code):
                await self.guard.record_failure(user.id)
                logger.info("login_failed", user_id=user.id, reason="bad_two_factor_code")
                raise InvalidCredentials()

        await self.guard.record_success(user.id)
        if self.verifier.needs_rehash(stored_hash):
            self.store.save_password(user.id, self.verifier.encode(password), self.verifier.algorithm)
        self.store.record_login(user.id, ip_address, self._clock())
        user = self.store.get_user(user.id) or user
        result = self._open_session(user, ip_address, user_agent)
        logger.info("login_succeeded", user_id=user.id, session_id=result.session_id)
        return result

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        """Exchange a refresh token for a new pair; the presented token is spent.

        Raises:
            InvalidOrExpiredToken: for every failure, including reuse of a
                token that was already exchanged.
        """
        try:
            claims = self.tokens.decode(refresh_token, expected_kind=TokenKind.REFRESH)
        except TokenError as exc:
            logger.info("refresh_rejected", reason=type(exc).__name__)
            raise InvalidOrExpiredToken() from exc

        presented_hash = hash_refresh_token(refresh_token)
        session = self.sessions.find_by_refresh_hash(presented_hash)
        if not session or session.user_id != claims.subject:
            logger.info("refresh_rejected", reason="unknown_session")
            raise InvalidOrExpiredToken()

        user = self.store.get_user(claims.subject)
        if not user or user.is_disabled or await self.guard.is_locked(user.id):
            self.sessions.revoke(session.id)
            logger.warning("refresh_rejected", user_id=claims.subject, reason="account_unusable")
            raise InvalidOrExpiredToken()

        if self.cache:
            remaining = int((session.expires_at - self._clock()).total_seconds())
            if not await self.cache.claim_refresh_token(presented_hash, remaining):
                logger.warning("refresh_token_reused", user_id=user.id, session_id=session.id)
                raise InvalidOrExpiredToken()

        new_session_id = str(uuid.uuid4())
        access, refresh = self._mint_pair(user, new_session_id)
        successor = self.sessions.rotate(
            presented_hash,
            hash_refresh_token(refresh),
            ip_address,
            new_session_id=new_session_id,
        )
        return self._result(user, successor.id, access, refresh)

    def validate_access_token(self, token: str) -> Principal:
        """Resolve an access token to a principal.

        Raises:
            TokenError: the token does not decode as a live access token
            SessionRevoked: the session it belongs to has ended
        """
        claims = self.tokens.decode(token, expected_kind=TokenKind.ACCESS)
        if claims.session_id and not self.sessions.is_valid(claims.session_id):
            raise SessionRevoked()
        return principal_from_claims(claims)

    def logout(self, session_id: str) -> bool:
        return self.sessions.revoke(session_id)

    def logout_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        return self.sessions.revoke_all_for_user(user_id, except_session_id=except_session_id)

    # password management
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> int:
        """Replace the password and end the user's other sessions; returns how many ended."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if await self.guard.is_locked(user_id):
            raise AccountLocked()
        record = self.store.get_password_record(user_id)
        if not self.verifier.verify(current_password, record[0] if record else ""):
            await self.guard.record_failure(user_id)
            raise InvalidCredentials("current password is incorrect")
        self.store.save_password(user_id, self.verifier.encode(new_password), self.verifier.algorithm)
        revoked = self.sessions.revoke_all_for_user(user_id, except_session_id=keep_session_id)
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def forgot_password(self, email: str) -> None:
        await self.resets.initiate(email)

    def validate_reset_token(self, token: str) -> bool:
        return self.resets.validate(token)

    async def reset_password(self, token: str, new_password: str) -> str:
        return await self.resets.redeem(token, new_password)

    async def request_email_verification(self, user_id: str) -> None:
        await self.resets.request_email_verification(user_id)

    async def verify_email(self, token: str) -> str:
        return await self.resets.confirm_email(token)

    # two-factor
    def enable_two_factor(self, user_id: str) -> TwoFactorEnrollment:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return self.two_factor.enroll(user_id, label=user.email)

    async def confirm_two_factor(self, user_id: str, code: str) -> None:
        """Activate a pending enrollment with its first valid code."""
        if not self.two_factor.is_enrolled(user_id):
            raise ValidationError("two-factor enrollment not started")
        already_enabled = self.two_factor.is_enabled(user_id)
        if not await self.two_factor.verify(user_id, code):
            raise ValidationError("invalid two-factor code")
        user = self.store.get_user(user_id)
        if user and not already_enabled:
            self.dispatcher.dispatch(
                "two_factor_enabled", self.notifier.send_two_factor_enabled, user.email
            )

    async def disable_two_factor(
        self, user_id: str, code: str, *, keep_session_id: Optional[str] = None
    ) -> None:
        if not self.two_factor.is_enabled(user_id):
            raise ValidationError("two-factor authentication is not enabled")
        if not await self.two_factor.verify(user_id, code):
            raise ValidationError("invalid two-factor code")
        self.two_factor.disable(user_id)
        self.sessions.revoke_all_for_user(user_id, except_session_id=keep_session_id)

    # administration
    async def unlock_account(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.account_status == AccountStatus.DEACTIVATED:
            raise ValidationError("deactivated accounts cannot be unlocked")
        await self.guard.unlock(user_id)

    async def drain_notifications(self) -> None:
        await self.dispatcher.drain()
