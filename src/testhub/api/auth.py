"""Auth API: registration, login, verification, password reset, GitHub OAuth.

Learn: Routes for the browser and CI authentication lifecycle:
- GET  /auth/config                → what the login page should offer
- POST /auth/register              → create an unverified account (201)
- POST /auth/login                 → email/password → session cookie
- GET  /auth/verify-email?token=   → redeem a verification link (302)
- POST /auth/resend-verification   → new verification link (always 204)
- POST /auth/password/forgot       → reset link (always 204)
- POST /auth/password/reset        → redeem a reset link (204)
- GET  /auth/github/login          → redirect to GitHub
- GET  /auth/github/callback       → GitHub redirects back here
- GET  /auth/me                    → current identity
- POST /auth/logout                → revoke the session (204)

Handlers stay thin: the flows live in AccountService / OAuthService and
raise AuthError subclasses, which the app-level handler turns into
{"detail": ...} responses.
"""

import secrets
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from testhub.auth.codec import generate_opaque_token
from testhub.auth.context import AuthContext
from testhub.auth.cookies import (
    CookieSignatureError,
    clear_session_cookie,
    clear_state_cookie,
    set_session_cookie,
    set_state_cookie,
    unsign_value,
)
from testhub.auth.dependencies import (
    client_ip,
    get_github_client,
    get_rate_limiter,
    require_auth,
)
from testhub.auth.errors import AuthError, BadRequest, TooManyRequests, Unauthorized
from testhub.auth.rate_limit import RateLimiter, forgot_password_policy, login_policy
from testhub.config import settings
from testhub.db.engine import get_db, get_session_factory
from testhub.services.account_service import AccountService
from testhub.services.oauth_service import GitHubClient, OAuthService, authorize_url

logger = structlog.get_logger()

router = APIRouter(prefix="/auth")


# ─── Schemas ─────────────────────────────────────────────


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: Optional[str] = Field(None, alias="fullName", min_length=1)

    model_config = {"populate_by_name": True}


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    new_password: str = Field(alias="newPassword", min_length=8)

    model_config = {"populate_by_name": True}


class OkResponse(BaseModel):
    ok: bool = True


class AuthConfigResponse(BaseModel):
    allow_signup: bool
    github_enabled: bool


# ─── Config ──────────────────────────────────────────────


@router.get("/config", response_model=AuthConfigResponse)
async def auth_config():
    """Tell the login page which options to show."""
    return AuthConfigResponse(
        allow_signup=settings.allow_signup,
        github_enabled=settings.github_enabled,
    )


# ─── Register ────────────────────────────────────────────


@router.post("/register", response_model=OkResponse, status_code=201)
async def register(
    body: RegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """Create a new account. A verification link is sent to the email."""
    await AccountService(db).register(body.email, body.password, body.full_name)
    return OkResponse()


# ─── Login / logout ─────────────────────────────────────


@router.post("/login", response_model=OkResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Email/password → session cookie."""
    ip = client_ip(request)
    if not await limiter.hit(login_policy(), ip):
        logger.warning("auth.login.blocked", reason_code="rate_limited", client_ip=ip)
        raise TooManyRequests("Too many attempts", reason="rate_limited")

    result = await AccountService(db, session_factory).login(body.email, body.password)
    set_session_cookie(response, result.session_id)
    return OkResponse()


@router.post("/logout", status_code=204)
async def logout(
    response: Response,
    context: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Revoke the current session and clear the cookie."""
    await AccountService(db).logout(context)
    clear_session_cookie(response)


# ─── Email verification ─────────────────────────────────


@router.get("/verify-email")
async def verify_email(
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """Redeem a verification link, then send the browser to the app."""
    await AccountService(db).verify_email(token)
    return RedirectResponse(
        f"{settings.web_app_url.rstrip('/')}/projects?verified=1", status_code=302
    )


@router.post("/resend-verification", status_code=204)
async def resend_verification(
    body: EmailRequest,
    db: AsyncSession = Depends(get_db),
):
    """Issue a new verification link. Same response whether or not the account exists."""
    await AccountService(db).resend_verification(body.email)


# ─── Password reset ─────────────────────────────────────


@router.post("/password/forgot", status_code=204)
async def forgot_password(
    body: EmailRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Issue a reset link.

    Always 204, including when rate limited or when no account matches,
    so the response says nothing about which emails are registered.
    """
    ip = client_ip(request)
    if not await limiter.hit(forgot_password_policy(), ip):
        logger.warning("auth.password_forgot.blocked", reason_code="rate_limited", client_ip=ip)
        return
    await AccountService(db).forgot_password(body.email)


@router.post("/password/reset", status_code=204)
async def reset_password(
    body: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
):
    """Set a new password with a reset token. Every existing session is revoked."""
    await AccountService(db).reset_password(body.token, body.new_password)


# ─── GitHub OAuth ───────────────────────────────────────


@router.get("/github/login")
async def github_login():
    """Start the OAuth dance: CSRF state into a signed cookie, then off to GitHub."""
    state = generate_opaque_token()
    response = RedirectResponse(authorize_url(state), status_code=302)
    set_state_cookie(response, state)
    return response


@router.get("/github/callback")
async def github_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    client: GitHubClient = Depends(get_github_client),
):
    """Finish GitHub login. The state cookie is single use: every outcome clears it."""
    try:
        _check_oauth_state(request.cookies.get(settings.state_cookie_name), state)
        if not code:
            raise BadRequest("Missing authorization code", reason="missing_code")
        result = await OAuthService(db, client, session_factory).complete_login(code, state)
    except AuthError as e:
        logger.warning("auth.github.callback_failed", reason_code=e.reason, status=e.status_code)
        response = JSONResponse(status_code=e.status_code, content={"detail": e.message})
        clear_state_cookie(response)
        return response
    except Exception:
        logger.exception("auth.github.callback_crashed")
        response = JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
        clear_state_cookie(response)
        return response

    response = RedirectResponse(settings.web_app_url, status_code=302)
    clear_state_cookie(response)
    set_session_cookie(response, result.session_id)
    return response


def _check_oauth_state(raw_cookie: Optional[str], state: Optional[str]) -> None:
    if not raw_cookie:
        raise Unauthorized("Missing OAuth state", reason="missing_state")
    try:
        expected = unsign_value(raw_cookie)
    except CookieSignatureError:
        raise Unauthorized("Invalid OAuth state", reason="bad_state_signature")
    if not state or not secrets.compare_digest(expected.encode(), state.encode()):
        raise Unauthorized("Invalid OAuth state", reason="state_mismatch")


# ─── Current identity ───────────────────────────────────


@router.get("/me")
async def get_me(
    context: AuthContext = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Who is calling: user (if any), org, and how they authenticated."""
    return await AccountService(db).describe(context)
