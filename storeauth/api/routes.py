from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from storeauth.api.schemas import (
    AuthResponse,
    AvailabilityResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    StaffRegisterRequest,
    TokenRefreshRequest,
    TokenValidationResponse,
    TwoFactorCodeRequest,
    TwoFactorEnrollResponse,
    _validate_email,
)
from storeauth.logging import get_logger
from storeauth.service.auth import AuthResult
from storeauth.service.authorities import ADMIN, SUPER_ADMIN, Principal, has_authority
from storeauth.service.errors import SessionRevoked, TokenError
from storeauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_principal(request: Request) -> Principal:
    """The caller resolved by the authentication middleware, or 401."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise _http_error("unauthorized", "access denied", status_code=401)
    return principal


def require_authority(*names: str) -> Callable:
    """Dependency factory: the caller must hold every authority in ``names``."""

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not has_authority(principal, *names):
            logger.warning(
                "authority_denied",
                user_id=principal.user_id,
                required=list(names),
            )
            raise _http_error("forbidden", "access denied", status_code=403)
        return principal

    return _dependency


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        username=result.user.username,
        session_id=result.session_id,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        access_expires_at=result.access_expires_at,
        refresh_expires_at=result.refresh_expires_at,
        role=result.user.role.value,
        authorities=sorted(result.authorities),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with a username or email and a password.

    Raises:
        401: invalid credentials, or a two-factor code is required
        403: the account is suspended or deactivated
        423: the account is temporarily locked
    """
    runtime = get_runtime()
    result = await runtime.auth.authenticate(
        body.login,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        two_factor_code=body.two_factor_code,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "registration is closed", status_code=403)
    result = await runtime.auth.register(
        body.username,
        body.email,
        body.password,
        full_name=body.full_name,
        mobile_number=body.mobile_number,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token, ip_address=_client_ip(request))
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    revoked = runtime.auth.logout(principal.session_id) if principal.session_id else False
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    count = runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data={"revoked": count})


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    """Start a password reset. The answer is the same whether or not the email is known."""
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the address belongs to an account, a reset link is on its way"},
    )


@router.get("/reset-password/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_token(token: str = Query(..., max_length=256)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"valid": runtime.auth.validate_reset_token(token)})


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"verified": True})


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.request_email_verification(principal.user_id)
    return Envelope(status="ok", data={"message": "verification email requested"})


@router.post("/2fa/enroll", response_model=Envelope, tags=["auth"])
async def enroll_two_factor(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    enrollment = runtime.auth.enable_two_factor(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorEnrollResponse(
            secret=enrollment.secret, otpauth_uri=enrollment.otpauth_uri
        ),
    )


@router.post("/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorCodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.confirm_two_factor(principal.user_id, body.code)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorCodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(
        principal.user_id, body.code, keep_session_id=principal.session_id
    )
    return Envelope(status="ok", data={"enabled": False})


@router.post("/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"message": "password updated", "sessions_revoked": revoked})


@router.get("/validate", response_model=Envelope, tags=["auth"])
async def validate_token(
    token: Optional[str] = Query(None, max_length=4096),
    authorization: Optional[str] = Header(None),
):
    """Report whether an access token is currently accepted.

    The token comes from the ``token`` query parameter or the bearer header.
    """
    runtime = get_runtime()
    raw = token
    if not raw and authorization and authorization.lower().startswith("bearer "):
        raw = authorization[7:].strip()
    if not raw:
        return Envelope(status="ok", data=TokenValidationResponse(valid=False))
    try:
        principal = runtime.auth.validate_access_token(raw)
    except (TokenError, SessionRevoked):
        return Envelope(status="ok", data=TokenValidationResponse(valid=False))
    return Envelope(
        status="ok",
        data=TokenValidationResponse(
            valid=True,
            user_id=principal.user_id,
            role=principal.user_role,
            authorities=sorted(principal.authorities),
        ),
    )


@router.get("/check-username/{username}", response_model=Envelope, tags=["auth"])
async def check_username(username: str = Path(..., max_length=50)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=AvailabilityResponse(available=runtime.auth.username_available(username)),
    )


@router.get("/check-email/{email}", response_model=Envelope, tags=["auth"])
async def check_email(email: str = Path(..., max_length=254)):
    runtime = get_runtime()
    try:
        normalized = _validate_email(email)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400) from exc
    return Envelope(
        status="ok",
        data=AvailabilityResponse(available=runtime.auth.email_available(normalized)),
    )


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock_user(
    user_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require_authority(ADMIN)),
):
    runtime = get_runtime()
    await runtime.auth.unlock_account(user_id)
    logger.info("admin_unlocked_account", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data={"unlocked": True})


@router.post("/admin/register", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_register_staff(
    body: StaffRegisterRequest,
    principal: Principal = Depends(require_authority(SUPER_ADMIN)),
):
    """Create a staff account. Only super administrators may do this."""
    runtime = get_runtime()
    user = runtime.auth.register_staff(
        body.username,
        body.email,
        body.password,
        body.role,
        full_name=body.full_name,
    )
    logger.info(
        "admin_registered_staff",
        admin_id=principal.user_id,
        user_id=user.id,
        role=user.role.value,
    )
    return Envelope(
        status="ok",
        data={"user_id": user.id, "username": user.username, "role": user.role.value},
    )
