"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers. get_auth_context runs
the resolver once per request (FastAPI caches a dependency's value for the
request) and hands the resulting AuthContext to whoever asks.

Two auth mechanisms, tried in this order:
1. Signed session cookie (browsers)
2. API key in x-api-key header (CI uploaders, scripts)

A bad cookie degrades: it is cleared and the request continues as if it
had never been sent. A bad API key is a hard 401, because sending the
header is an explicit attempt to authenticate.
"""

import dataclasses
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from testhub.auth.context import AuthContext
from testhub.auth.cookies import (
    CookieSignatureError,
    clear_session_cookie,
    clear_session_cookie_header,
    unsign_value,
)
from testhub.auth.errors import SessionInvalid
from testhub.auth.rate_limit import RateLimiter
from testhub.config import settings
from testhub.db.engine import get_db, get_session_factory
from testhub.services.api_key_service import ApiKeyService
from testhub.services.oauth_service import GitHubClient
from testhub.services.session_service import SessionService

logger = structlog.get_logger()


class AuthContextResolver:
    """Compose session and API-key authentication into one AuthContext."""

    def __init__(
        self,
        db: AsyncSession,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.sessions = SessionService(db, session_factory)
        self.api_keys = ApiKeyService(db, session_factory)

    async def resolve(
        self,
        session_cookie: Optional[str],
        api_key_header: Optional[str],
        current: Optional[AuthContext] = None,
    ) -> AuthContext:
        """Resolve the request's identity.

        Raises ApiKeyInvalid when an API key was presented and rejected.
        """
        if current is not None and current.is_authenticated:
            return current

        clear_cookie = False
        if session_cookie:
            try:
                session = await self.sessions.validate(unsign_value(session_cookie))
                return AuthContext.for_session(session.id, session.user_id, session.org_id)
            except CookieSignatureError:
                logger.warning("auth.session.rejected", reason_code="bad_signature")
                clear_cookie = True
            except SessionInvalid as e:
                logger.warning("auth.session.rejected", reason_code=e.reason)
                clear_cookie = True

        context = await self.api_keys.authenticate(api_key_header)
        if context is not None:
            return dataclasses.replace(context, clear_session_cookie=clear_cookie)

        return AuthContext.anonymous(clear_session_cookie=clear_cookie)


async def get_auth_context(
    request: Request,
    response: Response,
    x_api_key: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AuthContext:
    """Resolve the current identity (optional, anonymous if no credentials).

    Learn: This is the "soft" auth dependency. For mandatory auth use
    require_auth instead.
    """
    resolver = AuthContextResolver(db, session_factory)
    context = await resolver.resolve(request.cookies.get(settings.cookie_name), x_api_key)
    if context.clear_session_cookie:
        clear_session_cookie(response)
    return context


async def require_auth(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Resolve the current identity (required, 401 if anonymous).

    The 401 is built by FastAPI from the exception, so a stale cookie has to
    be cleared through the exception's headers.
    """
    if not context.is_authenticated:
        headers = None
        if context.clear_session_cookie:
            headers = {"set-cookie": clear_session_cookie_header()}
        raise HTTPException(status_code=401, detail="Authentication required", headers=headers)
    return context


def get_rate_limiter(request: Request) -> RateLimiter:
    """The limiter installed on the app in create_app()."""
    return request.app.state.rate_limiter


def get_github_client() -> GitHubClient:
    return GitHubClient()


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"
