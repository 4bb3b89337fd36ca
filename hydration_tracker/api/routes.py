from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from hydration_tracker.api.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionOut,
    UserOut,
    VerifyEmailRequest,
)
from hydration_tracker.logging import bind_auth_context
from hydration_tracker.service.auth import AuthContext
from hydration_tracker.service.runtime import get_runtime
from hydration_tracker.storage.models import RequestContext, Session, User

router = APIRouter(prefix="/auth")

# Identical reply whether or not the address belongs to an account
_FORGOT_PASSWORD_MESSAGE = "If that email is registered, a reset link has been sent"


def _http_error(code: str, message: str, status_code: int) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _ok(data: Optional[dict] = None, message: Optional[str] = None) -> Envelope:
    return Envelope(success=True, message=message, data=data)


def _request_context(request: Request) -> RequestContext:
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client:
        ip = request.client.host
    return RequestContext(ip_address=ip, user_agent=request.headers.get("user-agent"))


def _user_out(user: User) -> dict:
    return UserOut(
        id=user.id,
        email=user.email,
        username=user.username,
        full_name=user.full_name,
        email_verified=user.email_verified,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    ).model_dump(by_alias=True, mode="json")


def _session_out(sess: Session, current_token: str) -> dict:
    return SessionOut(
        session_token=sess.session_token,
        device_info=sess.device_info,
        ip_address=sess.ip_address,
        user_agent=sess.user_agent,
        created_at=sess.created_at,
        last_used_at=sess.last_used_at,
        expires_at=sess.expires_at,
        current=sess.session_token == current_token,
    ).model_dump(by_alias=True, mode="json")


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Protected-route dependency; auth errors surface through the ServiceError handler."""
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization)
    bind_auth_context(principal.user_id, principal.session_token)
    return principal


@router.post(
    "/register",
    response_model=Envelope,
    response_model_exclude_none=True,
    status_code=201,
    tags=["auth"],
)
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    user, tokens = await runtime.auth.register(
        body.email,
        body.password,
        username=body.username,
        full_name=body.full_name,
        device_info=body.device_info,
        request_context=_request_context(request),
    )
    return _ok(
        {"user": _user_out(user), "tokens": tokens.as_response()},
        message="Registration successful",
    )


@router.post("/login", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password and open a session for this device.

    Raises:
        401: INVALID_CREDENTIALS for an unknown email or a wrong password alike
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(
        body.login,
        body.password,
        remember_me=body.remember_me,
        device_info=body.device_info,
        request_context=_request_context(request),
    )
    return _ok(
        {"user": _user_out(user), "tokens": tokens.as_response()},
        message="Login successful",
    )


@router.post("/refresh", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Exchange a refresh token for a new access token.

    The refresh token is not rotated and the session expiry does not move.
    """
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return _ok({"tokens": result.as_response()}, message="Token refreshed")


@router.post("/logout", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    all_devices = bool(body and body.logout_all_devices)
    revoked = await runtime.auth.logout(principal, all_devices=all_devices)
    message = "Logged out from all devices" if all_devices else "Logged out"
    return _ok({"revokedSessions": revoked}, message=message)


@router.get("/me", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return _ok({"user": _user_out(principal.user)})


@router.get("/sessions", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal)
    return _ok(
        {"sessions": [_session_out(s, principal.session_token) for s in sessions]}
    )


@router.delete(
    "/sessions/{session_token}",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def revoke_session(
    session_token: str = Path(..., min_length=1, max_length=256),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal, session_token)
    return _ok(message="Session revoked")


@router.post(
    "/password/change", response_model=Envelope, response_model_exclude_none=True, tags=["auth"]
)
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    """Change the password and sign out every device, including this one."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return _ok(
        {"revokedSessions": revoked},
        message="Password changed; please log in again",
    )


@router.post(
    "/password/forgot", response_model=Envelope, response_model_exclude_none=True, tags=["auth"]
)
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return _ok(message=_FORGOT_PASSWORD_MESSAGE)


@router.post(
    "/password/reset", response_model=Envelope, response_model_exclude_none=True, tags=["auth"]
)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.complete_password_reset(body.token, body.new_password)
    return _ok(message="Password reset; please log in again")


@router.post(
    "/email/verification", response_model=Envelope, response_model_exclude_none=True, tags=["auth"]
)
async def request_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sent = await runtime.auth.request_email_verification(principal)
    if not sent:
        raise _http_error("VALIDATION_ERROR", "email is already verified", status_code=400)
    return _ok(message="Verification email sent")


@router.post(
    "/email/verify", response_model=Envelope, response_model_exclude_none=True, tags=["auth"]
)
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    user = await runtime.auth.complete_email_verification(body.token)
    return _ok({"user": _user_out(user)}, message="Email verified")


@router.delete("/account", response_model=Envelope, response_model_exclude_none=True, tags=["auth"])
async def delete_account(
    body: DeleteAccountRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal, body.password)
    return _ok(message="Account deleted")
