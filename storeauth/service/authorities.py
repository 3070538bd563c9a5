from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from storeauth.logging import get_logger
from storeauth.service.errors import UnknownRole
from storeauth.service.tokens import TokenClaims
from storeauth.storage.models import UserRole, UserType

logger = get_logger(__name__)

USER = "USER"
SUPPORT = "SUPPORT"
MODERATOR = "MODERATOR"
MANAGER = "MANAGER"
ADMIN = "ADMIN"
SUPER_ADMIN = "SUPER_ADMIN"

# Full closure per role; no inheritance is computed at runtime.
ROLE_AUTHORITIES: dict[UserRole, frozenset[str]] = {
    UserRole.SUPER_ADMIN: frozenset({USER, SUPER_ADMIN, ADMIN, MANAGER}),
    UserRole.ADMIN: frozenset({USER, ADMIN, MANAGER}),
    UserRole.MANAGER: frozenset({USER, MANAGER}),
    UserRole.MODERATOR: frozenset({USER, MODERATOR}),
    UserRole.SUPPORT: frozenset({USER, SUPPORT}),
    UserRole.CUSTOMER: frozenset({USER}),
}

BASELINE = frozenset({USER})
LEGACY_ADMIN = frozenset({USER, ADMIN})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller attached to a single request."""

    user_id: str
    authorities: frozenset[str]
    user_role: Optional[str] = None
    user_type: Optional[str] = None
    session_id: Optional[str] = None

    def has_authority(self, *required: str) -> bool:
        return has_authority(self, *required)


def parse_role(value: Union[UserRole, str]) -> UserRole:
    try:
        return UserRole(value)
    except ValueError as exc:
        raise UnknownRole(f"unknown role: {value!r}") from exc


def expand(
    user_role: Optional[Union[UserRole, str]],
    user_type: Optional[Union[UserType, str]] = None,
) -> frozenset[str]:
    """Map a role claim (and the legacy type claim) to an authority set.

    Never raises: unknown roles degrade to the baseline set. The legacy type is
    consulted only when no role claim is present, and can grant ADMIN at most.
    """
    if user_role in (None, ""):
        if getattr(user_type, "value", user_type) == UserType.ADMIN.value:
            logger.warning("legacy_admin_type_fallback")
            return LEGACY_ADMIN
        return BASELINE
    try:
        role = parse_role(user_role)
    except UnknownRole:
        logger.warning("unknown_role", role=str(user_role))
        return BASELINE
    return ROLE_AUTHORITIES[role]


def has_authority(principal: Optional[Principal], *required: str) -> bool:
    """True when the principal holds every authority in ``required``."""
    if principal is None:
        return False
    return all(name in principal.authorities for name in required)


def principal_from_claims(claims: TokenClaims) -> Principal:
    return Principal(
        user_id=claims.subject,
        authorities=expand(claims.user_role, claims.user_type),
        user_role=claims.user_role,
        user_type=claims.user_type,
        session_id=claims.session_id,
    )
