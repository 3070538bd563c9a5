"""Scenario tests for AuthenticationService.

Covers:
- Login success and the failure taxonomy (credentials, disabled, locked)
- Lockout interplay with correct passwords
- Refresh rotation and reuse
- Logout and session revocation
- Registration, password change and reset
- Two-factor login
"""

from datetime import timedelta

import pytest

from storeauth.service.auth import AuthenticationService
from storeauth.service.authorities import ADMIN, MANAGER, SUPER_ADMIN, USER
from storeauth.service.errors import (
    AccountDisabled,
    AccountLocked,
    ConflictError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    NotFoundError,
    ServerError,
    SessionRevoked,
    TokenExpired,
    TwoFactorRequired,
    ValidationError,
    WrongTokenType,
)
from storeauth.service.two_factor import generate_totp
from storeauth.storage.models import AccountStatus, UserRole, UserType

PASSWORD = "Paper-Back-42"


@pytest.fixture
def service(memory_store, settings, clock, notifier, verifier):
    return AuthenticationService(
        memory_store, settings, notifier=notifier, clock=clock, verifier=verifier
    )


@pytest.fixture
def user(service):
    return service.register_staff("bookworm", "bookworm@example.com", PASSWORD, UserRole.CUSTOMER)


def _totp(service, secret):
    step = int(service._clock().timestamp()) // service.settings.totp_interval_seconds
    return generate_totp(secret, step, digits=service.settings.totp_digits)


class TestLogin:
    async def test_login_by_username_issues_pair(self, service, user):
        result = await service.authenticate("bookworm", PASSWORD, ip_address="192.0.2.1")

        assert result.user.id == user.id
        assert result.authorities == {USER}
        principal = service.validate_access_token(result.access_token)
        assert principal.user_id == user.id
        assert principal.session_id == result.session_id

    async def test_login_by_email_is_case_insensitive(self, service, user):
        result = await service.authenticate("BookWorm@Example.com", PASSWORD)

        assert result.user.id == user.id

    async def test_login_records_last_login(self, service, user, memory_store, clock):
        await service.authenticate("bookworm", PASSWORD, ip_address="192.0.2.9")
        stored = memory_store.get_user(user.id)

        assert stored.last_login_at == clock()
        assert stored.last_login_ip == "192.0.2.9"

    async def test_unknown_user_and_wrong_password_look_alike(self, service, user):
        with pytest.raises(InvalidCredentials) as unknown:
            await service.authenticate("ghost", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            await service.authenticate("bookworm", "wrong-password-1")

        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code

    @pytest.mark.parametrize("status", [AccountStatus.SUSPENDED, AccountStatus.DEACTIVATED])
    async def test_disabled_accounts_refused(self, service, user, memory_store, status):
        memory_store.set_account_status(user.id, status)

        with pytest.raises(AccountDisabled):
            await service.authenticate("bookworm", PASSWORD)

    async def test_staff_role_authorities(self, service):
        service.register_staff("boss", "boss@example.com", PASSWORD, UserRole.SUPER_ADMIN)

        result = await service.authenticate("boss", PASSWORD)

        assert result.authorities == {USER, SUPER_ADMIN, ADMIN, MANAGER}
        assert result.user.user_type == UserType.ADMIN


class TestLockoutDuringLogin:
    async def test_correct_password_after_threshold_is_locked(self, service, user, settings):
        for _ in range(settings.lockout_threshold):
            with pytest.raises(InvalidCredentials):
                await service.authenticate("bookworm", "wrong-password-1")

        with pytest.raises(AccountLocked):
            await service.authenticate("bookworm", PASSWORD)

    async def test_login_works_again_after_lock_expires(self, service, user, settings, clock):
        for _ in range(settings.lockout_threshold):
            with pytest.raises(InvalidCredentials):
                await service.authenticate("bookworm", "wrong-password-1")

        clock.advance(minutes=settings.lockout_duration_minutes)
        result = await service.authenticate("bookworm", PASSWORD)

        assert result.user.id == user.id

    async def test_one_wrong_password_after_expiry_locks_again(self, service, user, settings, clock):
        for _ in range(settings.lockout_threshold):
            with pytest.raises(InvalidCredentials):
                await service.authenticate("bookworm", "wrong-password-1")
        clock.advance(minutes=settings.lockout_duration_minutes)

        with pytest.raises(InvalidCredentials):
            await service.authenticate("bookworm", "wrong-password-1")
        with pytest.raises(AccountLocked):
            await service.authenticate("bookworm", PASSWORD)

    async def test_success_resets_failures(self, service, user, settings):
        for _ in range(settings.lockout_threshold - 1):
            with pytest.raises(InvalidCredentials):
                await service.authenticate("bookworm", "wrong-password-1")
        await service.authenticate("bookworm", PASSWORD)

        for _ in range(settings.lockout_threshold - 1):
            with pytest.raises(InvalidCredentials):
                await service.authenticate("bookworm", "wrong-password-1")
        assert (await service.authenticate("bookworm", PASSWORD)).user.id == user.id

    async def test_admin_unlock(self, service, user, settings):
        for _ in range(settings.lockout_threshold):
            with pytest.raises(InvalidCredentials):
                await service.authenticate("bookworm", "wrong-password-1")

        await service.unlock_account(user.id)

        assert (await service.authenticate("bookworm", PASSWORD)).user.id == user.id

    async def test_unlock_refuses_deactivated(self, service, user, memory_store):
        memory_store.set_account_status(user.id, AccountStatus.DEACTIVATED)

        with pytest.raises(ValidationError):
            await service.unlock_account(user.id)

    async def test_unlock_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            await service.unlock_account("missing")


class TestRefresh:
    async def test_refresh_rotates_pair(self, service, user):
        login = await service.authenticate("bookworm", PASSWORD)

        refreshed = await service.refresh(login.refresh_token)

        assert refreshed.session_id != login.session_id
        assert refreshed.refresh_token != login.refresh_token
        assert service.validate_access_token(refreshed.access_token).user_id == user.id
        with pytest.raises(SessionRevoked):
            service.validate_access_token(login.access_token)

    async def test_refresh_token_spent_after_one_use(self, service, user):
        login = await service.authenticate("bookworm", PASSWORD)
        await service.refresh(login.refresh_token)

        with pytest.raises(InvalidOrExpiredToken):
            await service.refresh(login.refresh_token)

    async def test_access_token_cannot_refresh(self, service, user):
        login = await service.authenticate("bookworm", PASSWORD)

        with pytest.raises(InvalidOrExpiredToken):
            await service.refresh(login.access_token)

    async def test_refresh_token_cannot_authenticate(self, service, user):
        login = await service.authenticate("bookworm", PASSWORD)

        with pytest.raises(WrongTokenType):
            service.validate_access_token(login.refresh_token)

    async def test_refresh_refused_for_suspended_user(self, service, user, memory_store):
        login = await service.authenticate("bookworm", PASSWORD)
        memory_store.set_account_status(user.id, AccountStatus.SUSPENDED)

        with pytest.raises(InvalidOrExpiredToken):
            await service.refresh(login.refresh_token)
        assert not service.sessions.is_valid(login.session_id)

    async def test_expired_refresh_token(self, service, user, clock, settings):
        login = await service.authenticate("bookworm", PASSWORD)
        clock.advance(minutes=settings.refresh_token_ttl_minutes)

        with pytest.raises(InvalidOrExpiredToken):
            await service.refresh(login.refresh_token)


class TestLogout:
    async def test_logout_revokes_session(self, service, user):
        login = await service.authenticate("bookworm", PASSWORD)

        assert service.logout(login.session_id)
        with pytest.raises(SessionRevoked):
            service.validate_access_token(login.access_token)
        with pytest.raises(InvalidOrExpiredToken):
            await service.refresh(login.refresh_token)

    async def test_logout_all(self, service, user):
        first = await service.authenticate("bookworm", PASSWORD)
        second = await service.authenticate("bookworm", PASSWORD)

        assert service.logout_all(user.id) == 2
        for login in (first, second):
            with pytest.raises(SessionRevoked):
                service.validate_access_token(login.access_token)

    async def test_session_failure_surfaces_as_server_error(self, service, user, monkeypatch):
        def _broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(service.sessions, "create_session", _broken)

        with pytest.raises(ServerError):
            await service.authenticate("bookworm", PASSWORD)
        assert service.store.list_user_sessions(user.id) == []


class TestRegistration:
    async def test_register_creates_customer_and_signs_in(self, service, notifier):
        result = await service.register(
            "newreader", "newreader@example.com", PASSWORD, full_name="New Reader"
        )
        await service.drain_notifications()

        assert result.user.role == UserRole.CUSTOMER
        assert result.user.account_status == AccountStatus.ACTIVE
        assert notifier.verifications[0][0] == "newreader@example.com"
        assert service.validate_access_token(result.access_token).user_id == result.user.id

    async def test_duplicate_username_conflicts(self, service, user):
        with pytest.raises(ConflictError):
            await service.register("BOOKWORM", "other@example.com", PASSWORD)

    async def test_duplicate_email_conflicts(self, service, user):
        with pytest.raises(ConflictError):
            await service.register("other", "bookworm@example.com", PASSWORD)

    def test_availability_checks(self, service, user):
        assert not service.username_available("bookworm")
        assert service.username_available("someone-else")
        assert not service.email_available("bookworm@example.com")
        assert service.email_available("free@example.com")

    async def test_verify_email(self, service, notifier, user):
        await service.request_email_verification(user.id)
        await service.drain_notifications()
        _, token = notifier.verifications[-1]

        assert await service.verify_email(token) == user.id
        assert service.store.get_user(user.id).email_verified


class TestPasswordChanges:
    async def test_change_password_keeps_current_session(self, service, user):
        current = await service.authenticate("bookworm", PASSWORD)
        other = await service.authenticate("bookworm", PASSWORD)

        revoked = await service.change_password(
            user.id, PASSWORD, "Hard-Cover-77", keep_session_id=current.session_id
        )

        assert revoked == 1
        assert service.sessions.is_valid(current.session_id)
        assert not service.sessions.is_valid(other.session_id)
        assert (await service.authenticate("bookworm", "Hard-Cover-77")).user.id == user.id

    async def test_change_password_wrong_current(self, service, user):
        with pytest.raises(InvalidCredentials):
            await service.change_password(user.id, "not-it-123", "Hard-Cover-77")

    async def test_reset_revokes_every_session(self, service, user, notifier):
        first = await service.authenticate("bookworm", PASSWORD)
        second = await service.authenticate("bookworm", PASSWORD)

        await service.forgot_password("bookworm@example.com")
        await service.drain_notifications()
        _, token = notifier.password_resets[-1]
        assert service.validate_reset_token(token)
        await service.reset_password(token, "Dust-Jacket-5")

        assert not service.sessions.is_valid(first.session_id)
        assert not service.sessions.is_valid(second.session_id)
        with pytest.raises(InvalidCredentials):
            await service.authenticate("bookworm", PASSWORD)
        assert (await service.authenticate("bookworm", "Dust-Jacket-5")).user.id == user.id


class TestTwoFactorLogin:
    async def _enable(self, service, user, clock):
        enrollment = service.enable_two_factor(user.id)
        await service.confirm_two_factor(user.id, _totp(service, enrollment.secret))
        # Next code comes from a later step so it is not a replay
        clock.advance(seconds=service.settings.totp_interval_seconds)
        return enrollment.secret

    async def test_code_required_once_enabled(self, service, user, clock, notifier):
        await self._enable(service, user, clock)
        await service.drain_notifications()

        assert notifier.two_factor_notices == ["bookworm@example.com"]
        with pytest.raises(TwoFactorRequired):
            await service.authenticate("bookworm", PASSWORD)

    async def test_login_with_code(self, service, user, clock):
        secret = await self._enable(service, user, clock)

        result = await service.authenticate(
            "bookworm", PASSWORD, two_factor_code=_totp(service, secret)
        )

        assert result.user.id == user.id

    async def test_bad_code_counts_as_failure(self, service, user, clock):
        await self._enable(service, user, clock)

        with pytest.raises(InvalidCredentials):
            await service.authenticate("bookworm", PASSWORD, two_factor_code="000000")
        assert (await service.guard.state(user.id)).failed_attempts == 1

    async def test_confirm_with_bad_code(self, service, user):
        service.enable_two_factor(user.id)

        with pytest.raises(ValidationError):
            await service.confirm_two_factor(user.id, "abc")

    async def test_disable_revokes_other_sessions(self, service, user, clock):
        secret = await self._enable(service, user, clock)
        current = await service.authenticate(
            "bookworm", PASSWORD, two_factor_code=_totp(service, secret)
        )
        clock.advance(seconds=service.settings.totp_interval_seconds)
        other = await service.authenticate(
            "bookworm", PASSWORD, two_factor_code=_totp(service, secret)
        )
        clock.advance(seconds=service.settings.totp_interval_seconds)

        await service.disable_two_factor(
            user.id, _totp(service, secret), keep_session_id=current.session_id
        )

        assert not service.two_factor.is_enabled(user.id)
        assert service.sessions.is_valid(current.session_id)
        assert not service.sessions.is_valid(other.session_id)
        assert (await service.authenticate("bookworm", PASSWORD)).user.id == user.id


class TestTokenLifetime:
    async def test_access_token_expires(self, service, user, clock, settings):
        login = await service.authenticate("bookworm", PASSWORD)
        clock.advance(minutes=settings.access_token_ttl_minutes)

        with pytest.raises(TokenExpired):
            service.validate_access_token(login.access_token)

    async def test_result_reports_expiry(self, service, user, clock, settings):
        login = await service.authenticate("bookworm", PASSWORD)

        assert login.access_expires_at == clock() + timedelta(minutes=settings.access_token_ttl_minutes)
        assert login.token_type == "Bearer"

    async def test_result_expiry_matches_issued_tokens(self, service, user, clock):
        """Sub-second clock readings do not skew the reported expiry."""
        clock.advance(microseconds=750_000)

        login = await service.authenticate("bookworm", PASSWORD)

        access = service.tokens.decode(login.access_token)
        refresh = service.tokens.decode(login.refresh_token)
        assert login.access_expires_at == access.expires_at
        assert login.refresh_expires_at == refresh.expires_at
        assert login.access_expires_at < clock() + timedelta(
            minutes=service.settings.access_token_ttl_minutes
        )
