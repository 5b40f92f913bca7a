from __future__ import annotations

import asyncio
import math
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from loanease.api.schemas import (
    CompleteRegistrationRequest,
    EmailVerificationConfirm,
    EmailVerificationResend,
    Envelope,
    InvitationCreateRequest,
    InvitationResponse,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    TwoFactorVerifyRequest,
    UserResponse,
)
from loanease.logging import get_logger
from loanease.service.attempts import attempt_key
from loanease.service.audit import record_audit
from loanease.service.email_verification import ALREADY_VERIFIED
from loanease.service.errors import (
    ForbiddenError,
    NotFoundError,
    Rejection,
    RejectionKind,
)
from loanease.service.passwords import hash_password, needs_rehash, verify_password
from loanease.service.roles import REFERRER_ROLES, can_manage_organisation, is_admin
from loanease.service.runtime import Runtime, check_rate_limit, get_runtime
from loanease.service.sessions import IdentityClaims, TokenPair
from loanease.storage.models import Invitation, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "cf_access_token"
REFRESH_COOKIE = "cf_refresh_token"
TWO_FA_COOKIE = "cf_2fa_verified"

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_CODE = "Invalid or expired code"

# Codec failures after which a refresh cookie may stand in for the access token
_REFRESHABLE_CAUSES = {None, RejectionKind.EXPIRED}


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise 429 with Retry-After when ``key`` has exhausted its budget."""
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


def _raise_rejection(rejection: Rejection, message: Optional[str] = None) -> None:
    raise rejection.to_error(message)


def _apply_token_cookies(response: Response, pair: TokenPair, runtime: Runtime) -> None:
    secure = runtime.settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=int(runtime.settings.access_token_ttl.total_seconds()),
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=int(runtime.settings.refresh_token_ttl.total_seconds()),
        path="/",
    )


def _clear_auth_cookies(response: Response, runtime: Runtime) -> None:
    secure = runtime.settings.cookie_secure
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, TWO_FA_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, samesite="lax", httponly=True)


def _pair_response(pair: TokenPair, *, include_tokens: bool) -> TokenPairResponse:
    identity = pair.identity
    return TokenPairResponse(
        user_id=identity.subject_id,
        role=identity.role,
        organisation_id=identity.organisation_id,
        requires_2fa=identity.two_fa_enabled,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
        access_token=pair.access_token if include_tokens else None,
        refresh_token=pair.refresh_token if include_tokens else None,
        token_type=pair.token_type if include_tokens else None,
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        organisation_id=user.organisation_id,
        first_name=user.first_name,
        surname=user.surname,
        two_fa_enabled=user.two_fa_enabled,
        email_verified=user.email_verified,
        is_active=user.is_active,
        last_login_at=user.last_login_at,
    )


def _invitation_to_response(record: Invitation) -> InvitationResponse:
    return InvitationResponse(
        id=record.id,
        email=record.email,
        organisation_id=record.organisation_id,
        role=record.role,
        status=record.status.value,
        force_2fa=record.force_2fa,
        expires_at=record.expires_at,
        resent_count=record.resent_count,
        created_at=record.created_at,
    )


async def get_session_principal(
    response: Response,
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
) -> IdentityClaims:
    """Resolve the caller's identity from a Bearer header or the access cookie.

    Two-factor verification may still be pending. Browser sessions whose access cookie is missing or expired are renewed
    from the refresh cookie here, outside the gate.
    """
    runtime = get_runtime()
    identity = runtime.gate.authenticate_request(authorization, access_cookie)
    if not isinstance(identity, Rejection):
        return identity
    if identity.cause in _REFRESHABLE_CAUSES and refresh_cookie and not authorization:
        pair = runtime.sessions.rotate(refresh_cookie)
        if not isinstance(pair, Rejection):
            _apply_token_cookies(response, pair, runtime)
            logger.info("session_renewed_from_refresh_cookie", user_id=pair.identity.subject_id)
            return pair.identity
        if pair.kind == RejectionKind.DEPENDENCY_UNAVAILABLE:
            _raise_rejection(pair)
    raise identity.to_error("authentication required")


async def get_principal(
    principal: IdentityClaims = Depends(get_session_principal),
    two_fa_cookie: Optional[str] = Cookie(None, alias=TWO_FA_COOKIE),
) -> IdentityClaims:
    """Authenticated caller who has also passed two-factor verification when enabled."""
    denied = get_runtime().gate.require_second_factor(principal, two_fa_cookie)
    if denied is not None:
        raise _http_error(
            "forbidden",
            "two-factor verification required",
            status_code=403,
            details={"requires_2fa": True},
        )
    return principal


def _load_live_user(runtime: Runtime, identity: IdentityClaims) -> User:
    user = runtime.gate.load_live_user(identity)
    if isinstance(user, Rejection):
        _raise_rejection(user, "authentication required")
    return user


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Sets the access/refresh cookies; mobile clients also receive the tokens
    in the body. Users with two-factor enabled are sent a fresh code.

    Raises:
        401: If credentials are invalid
        403: If the account is inactive or has no password yet
        429: If the email/IP pair is locked out
    """
    runtime = get_runtime()
    ip_address = _client_ip(request)
    user_agent = _user_agent(request)
    key = attempt_key(body.email, ip_address)

    remaining = await runtime.attempts.lockout_remaining(key)
    if remaining:
        minutes_left = max(1, math.ceil(remaining / 60))
        record_audit(
            runtime.audit,
            "login_blocked",
            clock=runtime.clock,
            ip_address=ip_address,
            user_agent=user_agent,
            description="Login blocked due to too many attempts",
        )
        raise _http_error(
            "rate_limited",
            f"Too many failed attempts. Please try again in {minutes_left} minutes.",
            status_code=429,
            headers={"Retry-After": str(remaining)},
        )

    user = runtime.store.get_user_by_email(body.email)
    if user is not None and not user.password_hash:
        raise _http_error(
            "forbidden",
            "Please reset your password to continue.",
            status_code=403,
            details={"requires_password_reset": True},
        )
    if user is None or not verify_password(user.password_hash, body.password):
        locked, attempts = await runtime.attempts.record_failure(key)
        record_audit(
            runtime.audit,
            "login_locked" if locked else "login_failed",
            clock=runtime.clock,
            actor_user_id=user.id if user else None,
            subject_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            description=f"Failed login attempt {attempts}/{runtime.attempts.max_attempts}",
        )
        if locked:
            raise _http_error(
                "rate_limited",
                "Too many failed attempts. Account temporarily locked.",
                status_code=429,
            )
        raise _http_error(
            "unauthorized",
            INVALID_CREDENTIALS,
            status_code=401,
            details={"attempts_left": max(0, runtime.attempts.max_attempts - attempts)},
        )

    if not user.is_active:
        record_audit(
            runtime.audit,
            "login_blocked",
            clock=runtime.clock,
            actor_user_id=user.id,
            subject_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            description="Login blocked - inactive account",
        )
        raise _http_error(
            "forbidden", "Your account is inactive. Please contact support.", status_code=403
        )

    await runtime.attempts.clear(key)
    if needs_rehash(user.password_hash):
        runtime.store.update_user_password(user.id, hash_password(body.password))
        logger.info("password_rehashed", user_id=user.id)
    runtime.store.record_login(user.id, runtime.clock.now())
    record_audit(
        runtime.audit,
        "login_success",
        clock=runtime.clock,
        actor_user_id=user.id,
        subject_id=user.id,
        ip_address=ip_address,
        user_agent=user_agent,
        description="User logged in successfully",
    )

    if user.two_fa_enabled:
        # Delivery failures never block login; the user can request another code
        delivered = await asyncio.to_thread(runtime.one_time_codes.deliver, user)
        if isinstance(delivered, Rejection):
            logger.warning("login_2fa_issue_failed", user_id=user.id, reason=delivered.kind.value)

    pair = runtime.sessions.issue_pair(IdentityClaims.from_user(user))
    _apply_token_cookies(response, pair, runtime)
    response.delete_cookie(TWO_FA_COOKIE, path="/")
    return Envelope(status="ok", data=_pair_response(pair, include_tokens=body.mobile_app))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    body_token = body.refresh_token if body else None
    token = body_token or refresh_cookie
    if not token:
        raise _http_error("unauthorized", "refresh token required", status_code=401)
    pair = runtime.sessions.rotate(token)
    if isinstance(pair, Rejection):
        _raise_rejection(pair, "invalid refresh token")
    _apply_token_cookies(response, pair, runtime)
    return Envelope(status="ok", data=_pair_response(pair, include_tokens=bool(body_token)))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
):
    """Discard the caller's cookies. Always succeeds; tokens simply age out."""
    runtime = get_runtime()
    identity = runtime.gate.authenticate_request(authorization, access_cookie)
    if not isinstance(identity, Rejection):
        record_audit(
            runtime.audit,
            "logout",
            clock=runtime.clock,
            actor_user_id=identity.subject_id,
            subject_id=identity.subject_id,
            ip_address=_client_ip(request),
            user_agent=_user_agent(request),
            description="User logged out",
        )
    _clear_auth_cookies(response, runtime)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: IdentityClaims = Depends(get_principal)):
    runtime = get_runtime()
    user = _load_live_user(runtime, principal)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/2fa/send", response_model=Envelope, tags=["auth"])
async def send_two_factor_code(principal: IdentityClaims = Depends(get_session_principal)):
    """Issue and email a new two-factor code to the caller.

    Reports success even when the email could not be sent; earlier codes
    stay valid until they expire.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:send:{principal.subject_id}",
        runtime.settings.two_fa_send_rate_limit_per_minute,
        60,
    )
    user = _load_live_user(runtime, principal)
    delivered = await asyncio.to_thread(runtime.one_time_codes.deliver, user)
    if isinstance(delivered, Rejection):
        _raise_rejection(delivered)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor_code(
    body: TwoFactorVerifyRequest,
    request: Request,
    response: Response,
    principal: IdentityClaims = Depends(get_session_principal),
):
    runtime = get_runtime()
    ip_address = _client_ip(request)
    key = f"2fa:{attempt_key(principal.email, ip_address)}"
    if await runtime.attempts.lockout_remaining(key):
        raise _http_error(
            "rate_limited", "Too many failed attempts. Please try again later.", status_code=429
        )

    result = runtime.one_time_codes.verify(principal.subject_id, body.code)
    if isinstance(result, Rejection):
        if result.kind == RejectionKind.DEPENDENCY_UNAVAILABLE:
            _raise_rejection(result)
        locked, _attempts = await runtime.attempts.record_failure(key)
        record_audit(
            runtime.audit,
            "2fa_locked" if locked else "2fa_failed",
            clock=runtime.clock,
            actor_user_id=principal.subject_id,
            subject_id=principal.subject_id,
            ip_address=ip_address,
            user_agent=_user_agent(request),
            description=f"Two-factor verification failed ({result.kind.value})",
        )
        if locked:
            raise _http_error(
                "rate_limited", "Too many failed attempts. Please try again later.", status_code=429
            )
        raise _http_error("validation_error", INVALID_CODE, status_code=400)

    await runtime.attempts.clear(key)
    response.set_cookie(
        TWO_FA_COOKIE,
        runtime.codec.second_factor_proof(principal.subject_id),
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=int(runtime.settings.refresh_token_ttl.total_seconds()),
        path="/",
    )
    record_audit(
        runtime.audit,
        "2fa_verified",
        clock=runtime.clock,
        actor_user_id=principal.subject_id,
        subject_id=principal.subject_id,
        ip_address=ip_address,
        user_agent=_user_agent(request),
        description="Two-factor code verified",
    )
    return Envelope(status="ok", data={"status": "verified"})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    outcome = await asyncio.to_thread(
        runtime.password_reset.request_reset,
        body.email,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    if outcome is not None:
        logger.warning("password_reset_request_failed", reason=outcome.kind.value)
    # Always return success to prevent email enumeration
    return Envelope(
        status="ok",
        data={"message": "If an account exists with that email, a reset link has been sent."},
    )


@router.get("/auth/password-reset/verify", response_model=Envelope, tags=["auth"])
async def verify_password_reset(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    result = runtime.password_reset.verify(token)
    if isinstance(result, Rejection) and result.kind == RejectionKind.DEPENDENCY_UNAVAILABLE:
        _raise_rejection(result)
    return Envelope(status="ok", data={"valid": not isinstance(result, Rejection)})


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    ip_address = _client_ip(request)
    # Rate limit to prevent token brute-forcing
    await _enforce_rate_limit(runtime, f"reset:confirm:{ip_address}", 5, 300)
    result = runtime.password_reset.complete_reset(
        body.token,
        body.new_password,
        ip_address=ip_address,
        user_agent=_user_agent(request),
    )
    if isinstance(result, Rejection):
        if result.kind == RejectionKind.DEPENDENCY_UNAVAILABLE:
            _raise_rejection(result)
        raise _http_error(
            "validation_error",
            "Invalid or expired reset link",
            status_code=400,
            details={"reason": result.kind.value},
        )
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationConfirm, request: Request):
    runtime = get_runtime()
    ip_address = _client_ip(request)
    await _enforce_rate_limit(runtime, f"verify:confirm:{ip_address}", 5, 300)
    result = runtime.email_verification.confirm_email(
        body.token,
        ip_address=ip_address,
        user_agent=_user_agent(request),
    )
    if isinstance(result, Rejection):
        if result.kind == RejectionKind.DEPENDENCY_UNAVAILABLE:
            _raise_rejection(result)
        message = (
            "Email is already verified"
            if result.message == ALREADY_VERIFIED
            else "Invalid or expired verification link"
        )
        raise _http_error(
            "validation_error",
            message,
            status_code=400,
            details={"reason": result.kind.value},
        )
    return Envelope(status="ok", data={"status": "verified"})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailVerificationResend):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:resend:{body.email}",
        runtime.settings.verification_resend_limit_per_hour,
        3600,
    )
    outcome = await asyncio.to_thread(runtime.email_verification.request_verification, body.email)
    if outcome is not None:
        if outcome.kind == RejectionKind.DEPENDENCY_UNAVAILABLE:
            _raise_rejection(outcome)
        if outcome.kind == RejectionKind.ALREADY_CONSUMED:
            raise _http_error(
                "validation_error",
                "Email is already verified. Please login.",
                status_code=400,
                details={"reason": outcome.kind.value},
            )
    return Envelope(
        status="ok",
        data={"message": "If an account exists with that email, a verification link has been sent."},
    )


def _authorize_invitation_actor(actor: User, organisation_id: str, role: str) -> None:
    denied = can_manage_organisation(actor.role, actor.organisation_id, organisation_id)
    if denied is not None:
        raise denied.to_error("you cannot manage invitations for this organisation")
    if not is_admin(actor.role) and role not in REFERRER_ROLES:
        raise ForbiddenError("you cannot invite users with this role")


@router.post("/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def create_invitation(
    body: InvitationCreateRequest,
    request: Request,
    principal: IdentityClaims = Depends(get_principal),
):
    runtime = get_runtime()
    actor = _load_live_user(runtime, principal)
    _authorize_invitation_actor(actor, body.organisation_id, body.role)
    token = runtime.invitations.create(
        body.email,
        body.organisation_id,
        invited_by=actor.id,
        role=body.role,
        force_2fa=body.force_2fa,
    )
    if isinstance(token, Rejection):
        _raise_rejection(token)
    record = runtime.invitations.resolve(token)
    if isinstance(record, Rejection):
        _raise_rejection(record)
    await asyncio.to_thread(runtime.invitations.send, record, actor.display_name)
    record_audit(
        runtime.audit,
        "invitation_created",
        clock=runtime.clock,
        actor_user_id=actor.id,
        subject_id=record.id,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
        table_name="user_invitation",
        description=f"Invited {record.email} as {record.role}",
    )
    return Envelope(status="ok", data=_invitation_to_response(record))


@router.post("/invitations/{invitation_id}/resend", response_model=Envelope, tags=["invitations"])
async def resend_invitation(
    invitation_id: str,
    principal: IdentityClaims = Depends(get_principal),
):
    runtime = get_runtime()
    actor = _load_live_user(runtime, principal)
    existing = runtime.store.get_invitation(invitation_id)
    if existing is None:
        raise NotFoundError("invitation not found")
    _authorize_invitation_actor(actor, existing.organisation_id, existing.role)
    updated = await asyncio.to_thread(
        runtime.invitations.resend, invitation_id, actor_user_id=actor.id
    )
    if isinstance(updated, Rejection):
        _raise_rejection(updated)
    return Envelope(status="ok", data=_invitation_to_response(updated))


@router.get("/invitations/verify", response_model=Envelope, tags=["invitations"])
async def verify_invitation(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    record = runtime.invitations.resolve(token)
    if isinstance(record, Rejection):
        _raise_rejection(record)
    return Envelope(
        status="ok",
        data={
            "email": record.email,
            "organisation_id": record.organisation_id,
            "role": record.role,
            "expires_at": record.expires_at,
        },
    )


@router.post("/auth/complete-registration", response_model=Envelope, status_code=201, tags=["auth"])
async def complete_registration(body: CompleteRegistrationRequest, request: Request):
    runtime = get_runtime()
    user = runtime.invitations.register(
        body.token,
        body.password,
        body.first_name,
        body.surname,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    if isinstance(user, Rejection):
        _raise_rejection(user)
    return Envelope(status="ok", data=_user_to_response(user))


__all__ = ["router", "get_principal", "get_session_principal"]
