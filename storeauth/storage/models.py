from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Platform roles; each account holds exactly one."""

    CUSTOMER = "CUSTOMER"
    SUPPORT = "SUPPORT"
    MODERATOR = "MODERATOR"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class UserType(str, Enum):
    """Legacy account classification still carried in token claims."""

    CUSTOMER = "CUSTOMER"
    VENDOR = "VENDOR"
    ADMIN = "ADMIN"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"
    SUSPENDED = "SUSPENDED"
    DEACTIVATED = "DEACTIVATED"


class TokenKind(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class User:
    id: str
    username: str
    email: str
    role: UserRole = UserRole.CUSTOMER
    user_type: UserType = UserType.CUSTOMER
    account_status: AccountStatus = AccountStatus.ACTIVE
    full_name: Optional[str] = None
    mobile_number: Optional[str] = None
    email_verified: bool = False
    mobile_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    password_changed_at: Optional[datetime] = None

    @property
    def is_disabled(self) -> bool:
        return self.account_status in (AccountStatus.SUSPENDED, AccountStatus.DEACTIVATED)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    rotated_to: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        ttl_minutes: int = 7 * 24 * 60,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class LockoutState:
    user_id: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class OneTimeToken:
    token_hash: str
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed: bool = False
    consumed_at: Optional[datetime] = None


@dataclass
class TwoFactorConfig:
    user_id: str
    secret: str
    enabled: bool = False
    last_used_step: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
