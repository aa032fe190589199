from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from consoleauth.api.schemas import (
    AdminBlockRequest,
    AdminCreateRequest,
    AdminProfile,
    AdminSummary,
    BackupCodeStatusResponse,
    BackupCodesResponse,
    Envelope,
    ErrorBody,
    LoginRequest,
    LoginResponse,
    MFACodeRequest,
    MFADisableRequest,
    MFASetupRequest,
    MFASetupResponse,
    PasswordChangedResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    TemporaryPasswordResponse,
)
from consoleauth.logging import get_logger
from consoleauth.service.errors import MFARequired, PasswordRotationRequired
from consoleauth.service.login_flow import LoginAttempt, LoginState
from consoleauth.service.runtime import check_rate_limit, get_runtime
from consoleauth.service.sessions import AuthContext
from consoleauth.storage.models import ADMIN_ROLES, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"
ROTATION_COOKIE = "rotation_ticket"


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


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", scope=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": reset_seconds},
        )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _session_token(
    authorization: Optional[str], session_header: Optional[str], session_cookie: Optional[str]
) -> Optional[str]:
    return _bearer_token(authorization) or session_header or session_cookie


async def get_admin_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.sessions.resolve(
        _session_token(authorization, session_id, session_cookie)
    )
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    if ctx.role not in ADMIN_ROLES:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return ctx


async def get_super_admin(principal: AuthContext = Depends(get_admin_user)) -> AuthContext:
    if principal.role != "super_admin":
        raise _http_error("forbidden", "super admin access required", status_code=403)
    return principal


async def get_optional_admin_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> Optional[AuthContext]:
    """Resolve the caller when a live session is presented.

    A stale or revoked token yields ``None`` rather than 401 so a rotation
    ticket can still authorize the password change.
    """
    token = _session_token(authorization, session_id, session_cookie)
    if not token:
        return None
    ctx = await get_runtime().sessions.resolve(token)
    if ctx and ctx.role not in ADMIN_ROLES:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return ctx


def _apply_session_cookie(response: Response, session: Session) -> None:
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_auth_cookies(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", secure=True, samesite="lax")
    response.delete_cookie(ROTATION_COOKIE, path="/", secure=True, samesite="lax")


def _rotation_required_response(ticket: str, ttl_seconds: int) -> JSONResponse:
    # Built by hand so the ticket cookie survives on an error status
    exc = PasswordRotationRequired(rotation_ticket=ticket)
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=exc.error_code, message=exc.message, details=exc.detail),
    )
    response = JSONResponse(status_code=exc.status_code, content=envelope.model_dump(mode="json"))
    response.delete_cookie(SESSION_COOKIE, path="/", secure=True, samesite="lax")
    response.set_cookie(
        ROTATION_COOKIE,
        ticket,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=ttl_seconds,
        path="/v1/admin/settings/password",
    )
    return response


def _profile(runtime, user_id: str) -> AdminProfile:
    user = runtime.store.get_user(user_id)
    if not user:
        raise _http_error("not_found", "identity not found", status_code=404)
    status = runtime.mfa.status(user_id)
    return AdminProfile(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        two_factor_enabled=status["enabled"],
        backup_codes_remaining=status["backup_codes_remaining"],
        last_login_at=user.last_login_at,
    )


async def _enforce_mfa_rate_limit(runtime, principal: AuthContext) -> None:
    await _enforce_rate_limit(
        runtime,
        f"mfa:{principal.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate an administrator.

    ``email`` and ``password`` are obfuscated by the console. Accounts with
    two-factor authentication enabled must repeat the request with
    ``totp_code`` (a TOTP or a backup code) after a ``mfa_required`` reply.

    Raises:
        401: invalid credentials or second factor
        403: second factor required, password change required, or blocked account
        429: too many attempts for this email
    """
    runtime = get_runtime()
    attempt = LoginAttempt(
        email=body.email,
        password=body.password,
        secret_code=body.secret_code,
        second_factor=body.totp_code,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    subject = runtime.login.decode_email(attempt) or f"ip:{_client_ip(request)}"
    await _enforce_rate_limit(
        runtime,
        f"login:{subject}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    outcome = await runtime.login.submit(attempt)

    if outcome.state is LoginState.FORCED_PASSWORD_CHANGE:
        return _rotation_required_response(
            outcome.rotation_ticket, runtime.settings.rotation_ticket_ttl_seconds
        )
    if outcome.state is LoginState.TWO_FACTOR:
        raise MFARequired()

    user, session = outcome.user, outcome.session
    _apply_session_cookie(response, session)
    data = LoginResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        session_proof=session.id,
        expires_at=session.expires_at,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.sessions.revoke(principal.session_id)
    _clear_auth_cookies(response)
    logger.info("logout", user_id=principal.user_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.put("/admin/settings/password", response_model=Envelope, tags=["settings"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: Optional[AuthContext] = Depends(get_optional_admin_user),
    x_rotation_ticket: Optional[str] = Header(None, alias="X-Rotation-Ticket"),
    rotation_cookie: Optional[str] = Cookie(None, alias=ROTATION_COOKIE),
):
    """Change the password of the calling administrator.

    Works with a live session, or with the rotation ticket handed out when a
    login hit a forced password change. Every session of the account is
    revoked afterwards, including the caller's.
    """
    runtime = get_runtime()
    ticket = x_rotation_ticket or rotation_cookie
    if principal is None and not ticket:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    await runtime.login.complete_password_rotation(
        body.current_password,
        body.new_password,
        user_id=principal.user_id if principal else None,
        ticket=None if principal else ticket,
    )
    _clear_auth_cookies(response)
    return Envelope(
        status="ok", data=PasswordChangedResponse().model_dump(by_alias=True)
    )


@router.get("/admin/settings/profile", response_model=Envelope, tags=["settings"])
async def get_profile(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    profile = _profile(runtime, principal.user_id)
    return Envelope(status="ok", data={"admin": profile.model_dump(by_alias=True, mode="json")})


@router.put("/admin/settings/profile", response_model=Envelope, tags=["settings"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    with runtime.store.identity_lock(principal.user_id):
        user = runtime.store.update_username(principal.user_id, body.username)
    if not user:
        raise _http_error("not_found", "identity not found", status_code=404)
    logger.info("profile_updated", user_id=principal.user_id)
    return Envelope(status="ok", data={"username": user.username})


@router.post("/admin/settings/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(
    body: Optional[MFASetupRequest] = None, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await _enforce_mfa_rate_limit(runtime, principal)
    enrollment = runtime.mfa.start_enrollment(
        principal.user_id, custom_secret=body.custom_secret if body else None
    )
    data = MFASetupResponse(
        qr_code=enrollment["qr_code"],
        secret=enrollment["secret"],
        provisioning_uri=enrollment["provisioning_uri"],
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True))


@router.post("/admin/settings/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_two_factor(
    body: MFACodeRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await _enforce_mfa_rate_limit(runtime, principal)
    codes = await runtime.mfa.confirm_enrollment(principal.user_id, body.totp_code)
    return Envelope(
        status="ok", data=BackupCodesResponse(backup_codes=codes).model_dump(by_alias=True)
    )


@router.post("/admin/settings/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: MFADisableRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await _enforce_mfa_rate_limit(runtime, principal)
    await runtime.mfa.disable(
        principal.user_id,
        body.password,
        body.totp_code,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"enabled": False})


@router.post("/admin/settings/2fa/regenerate-backup", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    body: MFACodeRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    await _enforce_mfa_rate_limit(runtime, principal)
    codes = await runtime.mfa.regenerate_backup_codes(principal.user_id, body.totp_code)
    return Envelope(
        status="ok", data=BackupCodesResponse(backup_codes=codes).model_dump(by_alias=True)
    )


@router.get("/admin/settings/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def backup_code_status(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    status = runtime.mfa.backup_code_status(principal.user_id)
    return Envelope(status="ok", data=BackupCodeStatusResponse(**status).model_dump())


def _admin_summary(user, two_factor_enabled: bool) -> dict:
    return AdminSummary(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        two_factor_enabled=two_factor_enabled,
        must_change_password=user.must_change_password,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    ).model_dump(by_alias=True, mode="json")


async def _enforce_admin_rate_limit(runtime, principal: AuthContext, action: str) -> None:
    await _enforce_rate_limit(
        runtime,
        f"admin:{action}:{principal.user_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
    )


@router.get("/admin/management/admins", response_model=Envelope, tags=["management"])
async def list_admins(principal: AuthContext = Depends(get_super_admin)):
    runtime = get_runtime()
    await _enforce_admin_rate_limit(runtime, principal, "read")
    accounts = runtime.admins.list_admins()
    return Envelope(
        status="ok",
        data={"admins": [_admin_summary(a.user, a.two_factor_enabled) for a in accounts]},
    )


@router.post("/admin/management/admins", response_model=Envelope, tags=["management"])
async def create_admin(
    body: AdminCreateRequest, principal: AuthContext = Depends(get_super_admin)
):
    """Create an administrator with a temporary password.

    The password is returned once and must be rotated at first login.

    Raises:
        409: the email is already registered
    """
    runtime = get_runtime()
    await _enforce_admin_rate_limit(runtime, principal, "create")
    user, temporary = runtime.admins.create_admin(
        body.email, username=body.username, role=body.role
    )
    return Envelope(
        status="ok",
        data={
            "admin": _admin_summary(user, False),
            **TemporaryPasswordResponse(temporary_password=temporary).model_dump(by_alias=True),
        },
    )


@router.put("/admin/management/admins/{admin_id}/block", response_model=Envelope, tags=["management"])
async def block_admin(
    admin_id: str,
    body: Optional[AdminBlockRequest] = None,
    principal: AuthContext = Depends(get_super_admin),
):
    runtime = get_runtime()
    await _enforce_admin_rate_limit(runtime, principal, "block")
    user = runtime.admins.set_blocked(admin_id, True, actor_id=principal.user_id)
    if body and body.reason:
        logger.info("admin_block_reason", user_id=admin_id, reason=body.reason)
    return Envelope(status="ok", data={"id": user.id, "isActive": user.is_active})


@router.put("/admin/management/admins/{admin_id}/unblock", response_model=Envelope, tags=["management"])
async def unblock_admin(admin_id: str, principal: AuthContext = Depends(get_super_admin)):
    runtime = get_runtime()
    await _enforce_admin_rate_limit(runtime, principal, "block")
    user = runtime.admins.set_blocked(admin_id, False, actor_id=principal.user_id)
    return Envelope(status="ok", data={"id": user.id, "isActive": user.is_active})


@router.post(
    "/admin/management/admins/{admin_id}/reset-password", response_model=Envelope, tags=["management"]
)
async def reset_admin_password(admin_id: str, principal: AuthContext = Depends(get_super_admin)):
    runtime = get_runtime()
    await _enforce_admin_rate_limit(runtime, principal, "reset")
    temporary = runtime.admins.reset_password(admin_id)
    return Envelope(
        status="ok",
        data=TemporaryPasswordResponse(temporary_password=temporary).model_dump(by_alias=True),
    )


@router.post(
    "/admin/management/admins/{admin_id}/reset-mfa", response_model=Envelope, tags=["management"]
)
async def reset_admin_mfa(admin_id: str, principal: AuthContext = Depends(get_super_admin)):
    runtime = get_runtime()
    await _enforce_admin_rate_limit(runtime, principal, "reset")
    removed = runtime.admins.reset_mfa(admin_id)
    await runtime.lockout.release(admin_id)
    return Envelope(status="ok", data={"id": admin_id, "twoFactorReset": removed})
