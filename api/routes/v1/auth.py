"""
api/routes/v1/auth.py -- Login, MFA and session REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login (+ optional inline MFA code)
  POST /api/v1/auth/mfa/verify-login   -- finish an MFA-pending login
  POST /api/v1/auth/logout             -- clears the session and CSRF cookies
  GET  /api/v1/auth/csrf-token         -- rotate the CSRF pair for the current session
  GET  /api/v1/auth/me                 -- current principal
  POST /api/v1/auth/mfa/setup          -- start TOTP enrolment (secret shown once)
  POST /api/v1/auth/mfa/verify         -- confirm enrolment with a first code
  POST /api/v1/auth/mfa/disable        -- turn MFA off with a valid code
  GET  /api/v1/auth/mfa/status         -- enabled / verified flags

Security:
  Every route requires a valid API key (the calling application).
  Login and verify-login are rate-limited per client address and pass the CSRF
  policy through its exempt list (no CSRF cookie exists before login).
  Logout needs a session and a matching CSRF pair.
  A user with MFA enabled never receives a session token from /login without a
  valid code; the 401 "MFA verification required" body carries only the
  pending login id.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, limiter
from api.models import (
    CsrfTokenResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    MfaCodeRequest,
    MfaRequiredResponse,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyLoginRequest,
)
from core.config import Settings
from gateway.api_keys import AdmittedContext
from gateway.csrf import CSRF_COOKIE
from gateway.dependencies import admit_pre_session, authenticate_session, current_user, guard_csrf, reject
from gateway.errors import Rejection
from gateway.mfa import LoginFlow, LoginOutcome, LoginState
from gateway.models import CsrfToken, Principal, User
from gateway.session import SESSION_COOKIE
from gateway.tokens import TokenService

logger = logging.getLogger("flightschool.api")

_NO_STORE = {"Cache-Control": "no-store"}

# Auth policy:
# - POST /auth/login, /auth/mfa/verify-login: API key, rate limited, CSRF exempt list
# - POST /auth/logout:                        API key + session + CSRF
# - GET  /auth/csrf-token:                    API key + session
# - GET  /auth/me, /auth/mfa/status:          API key + session
# - POST /auth/mfa/setup|verify|disable:      API key + session + CSRF
router = APIRouter()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_csrf_cookie(response: JSONResponse, settings: Settings, tokens: TokenService, csrf: CsrfToken) -> None:
    # Readable by scripts: the client copies it into the X-CSRF-Token header.
    remaining = max(0, int((csrf.expires_at - tokens.now()).total_seconds()))
    response.set_cookie(
        CSRF_COOKIE,
        csrf.value,
        max_age=remaining,
        httponly=False,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def _session_response(request: Request, outcome: LoginOutcome) -> JSONResponse:
    settings: Settings = request.app.state.settings
    tokens: TokenService = request.app.state.token_service
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(token=outcome.session_token, csrf_token=outcome.csrf.value).model_dump(by_alias=True),
        headers=_NO_STORE,
    )
    resp.set_cookie(
        SESSION_COOKIE,
        outcome.session_token,
        max_age=int(tokens.session_ttl.total_seconds()),
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )
    _set_csrf_cookie(resp, settings, tokens, outcome.csrf)
    logger.info("Login complete for user_id=%s", outcome.user.id)
    return resp


def _login_result(request: Request, outcome: LoginOutcome | Rejection) -> JSONResponse:
    if isinstance(outcome, Rejection):
        raise reject(request, outcome, headers=_NO_STORE)
    if outcome.state is LoginState.MFA_PENDING:
        logger.info("MFA verification required for user_id=%s", outcome.user.id)
        return JSONResponse(
            status_code=401,
            content=MfaRequiredResponse(pending_auth_id=outcome.pending_auth_id).model_dump(by_alias=True),
            headers=_NO_STORE,
        )
    return _session_response(request, outcome)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(LOGIN_RATE_LIMIT)  # below @router: the router must register the limited wrapper
def login(
    request: Request,
    body: LoginRequest,
    _: AdmittedContext = Depends(admit_pre_session),
) -> JSONResponse:
    """Authenticate with email and password.

    Without MFA: 200 {token, csrfToken} plus the "token" and "csrf-token"
    cookies. With MFA and no code: 401 {message, pendingAuthId}, no cookies.
    With MFA and a code in "token": the code is verified in the same request.

    Wrong email and wrong password give the same 401 (timing equalised).
    """
    flow: LoginFlow = request.app.state.login_flow
    return _login_result(request, flow.login(body.email, body.password, body.token))


@router.post("/auth/mfa/verify-login", response_model=LoginResponse)
@limiter.limit(LOGIN_RATE_LIMIT)
def verify_login(
    request: Request,
    body: MfaVerifyLoginRequest,
    _: AdmittedContext = Depends(admit_pre_session),
) -> JSONResponse:
    """Finish an MFA-pending login with a 6-digit code.

    400 for a badly formatted code, 401 for an unknown, expired or used
    pending login or a wrong code, 429 once the attempt budget is spent.
    """
    flow: LoginFlow = request.app.state.login_flow
    return _login_result(request, flow.complete(body.pending_auth_id, body.token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, _: Principal = Depends(guard_csrf)) -> JSONResponse:
    """Clear both cookies. Issued tokens are superseded at the next login, not revoked."""
    settings: Settings = request.app.state.settings
    resp = JSONResponse(content={"message": "Logged out."}, headers=_NO_STORE)
    resp.delete_cookie(SESSION_COOKIE, secure=settings.secure_cookies, httponly=True, samesite="strict")
    resp.delete_cookie(CSRF_COOKIE, secure=settings.secure_cookies, samesite="strict")
    return resp


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.get("/auth/csrf-token", response_model=CsrfTokenResponse)
def csrf_token(request: Request, principal: Principal = Depends(authenticate_session)) -> JSONResponse:
    """Issue a fresh CSRF pair for the current session (body + cookie)."""
    settings: Settings = request.app.state.settings
    tokens: TokenService = request.app.state.token_service
    csrf = tokens.issue_csrf_token()
    resp = JSONResponse(
        content=CsrfTokenResponse(csrf_token=csrf.value, expires_at=csrf.expires_at).model_dump(
            by_alias=True, mode="json"
        ),
        headers=_NO_STORE,
    )
    _set_csrf_cookie(resp, settings, tokens, csrf)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(user: User = Depends(current_user)) -> MeResponse:
    """Return identity information for the authenticated user."""
    return MeResponse(
        user_id=user.id,
        email=user.email,
        role=user.role,
        school_id=user.school_id,
        student_id=user.student_id,
        instructor_id=user.instructor_id,
        mfa_enabled=user.mfa_enabled,
    )


# ---------------------------------------------------------------------------
# MFA management
# ---------------------------------------------------------------------------


@router.post("/auth/mfa/setup", response_model=MfaSetupResponse)
def mfa_setup(request: Request, user: User = Depends(current_user)) -> JSONResponse:
    """Generate a TOTP secret. MFA is required at every login from this point on."""
    flow: LoginFlow = request.app.state.login_flow
    result = flow.begin_enrolment(user)
    if isinstance(result, Rejection):
        raise reject(request, result, user.id)
    return JSONResponse(
        content=MfaSetupResponse(secret=result.secret, otpauth_url=result.otpauth_uri).model_dump(by_alias=True),
        headers=_NO_STORE,
    )


@router.post("/auth/mfa/verify", response_model=MessageResponse)
def mfa_verify(request: Request, body: MfaCodeRequest, user: User = Depends(current_user)) -> MessageResponse:
    """Confirm enrolment with the first code from the authenticator app."""
    flow: LoginFlow = request.app.state.login_flow
    rejection = flow.confirm_enrolment(user, body.token)
    if rejection is not None:
        raise reject(request, rejection, user.id)
    return MessageResponse(message="MFA enabled successfully")


@router.post("/auth/mfa/disable", response_model=MessageResponse)
def mfa_disable(request: Request, body: MfaCodeRequest, user: User = Depends(current_user)) -> MessageResponse:
    flow: LoginFlow = request.app.state.login_flow
    rejection = flow.disable(user, body.token)
    if rejection is not None:
        raise reject(request, rejection, user.id)
    return MessageResponse(message="MFA disabled successfully")


@router.get("/auth/mfa/status", response_model=MfaStatusResponse)
def mfa_status(request: Request, user: User = Depends(current_user)) -> MfaStatusResponse:
    status = request.app.state.login_flow.status(user)
    return MfaStatusResponse(enabled=status.enabled, verified=status.verified)
