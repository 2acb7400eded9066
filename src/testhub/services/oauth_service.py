"""GitHub OAuth: code exchange, profile lookup, account linking.

Learn: The browser side of the flow lives in the /auth/github routes (state
cookie, redirects). This module does the server side:

    code ──exchange──▶ access token ──▶ /user + /user/emails
         ──choose email──▶ resolve account ──▶ ensure org ──▶ session

Account resolution, in one transaction:
1. user with this github_id        → sign them in
2. else user with the chosen email → link github_id to it
3. else                            → create a new user

The provider already verified the email it returned, so a created or
linked account counts as verified. Linking an account that was never
verified also drops its password.

GitHubClient wraps httpx.AsyncClient. Tests hand it an httpx.MockTransport
instead of talking to github.com.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from testhub.auth.errors import BadGateway, ServiceUnavailable, Unauthorized
from testhub.config import settings
from testhub.db.models import User
from testhub.services.account_service import LoginResult, email_localpart, ensure_membership
from testhub.services.session_service import SessionService

logger = structlog.get_logger()

AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
USER_URL = "https://api.github.com/user"
EMAILS_URL = "https://api.github.com/user/emails"
SCOPES = "read:user user:email"


@dataclass
class GitHubProfile:
    id: str
    login: Optional[str]
    name: Optional[str]


def authorize_url(state: str) -> str:
    """Build the GitHub authorize URL for a CSRF `state` value."""
    if not settings.github_enabled:
        raise ServiceUnavailable("GitHub login is not configured", reason="github_disabled")
    query = urlencode(
        {
            "client_id": settings.github_client_id,
            "redirect_uri": settings.github_redirect_uri,
            "state": state,
            "scope": SCOPES,
        }
    )
    return f"{AUTHORIZE_URL}?{query}"


def choose_email(emails: list[dict[str, Any]]) -> Optional[str]:
    """Primary + verified wins, then any verified address, else None."""
    for entry in emails:
        if entry.get("primary") and entry.get("verified") and entry.get("email"):
            return entry["email"]
    for entry in emails:
        if entry.get("verified") and entry.get("email"):
            return entry["email"]
    return None


# ═══════════════════════════════════════════════════════════
# HTTP client
# ═══════════════════════════════════════════════════════════


class GitHubClient:
    """Minimal GitHub OAuth/REST client."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.oauth_timeout_seconds

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def exchange_code(self, code: str, state: str) -> str:
        """Trade an authorization code for an access token."""
        payload = {
            "client_id": settings.github_client_id,
            "client_secret": settings.github_client_secret,
            "code": code,
            "redirect_uri": settings.github_redirect_uri,
            "state": state,
        }
        async with self._client() as client:
            try:
                response = await client.post(
                    ACCESS_TOKEN_URL,
                    json=payload,
                    headers={"accept": "application/json"},
                )
            except httpx.HTTPError as e:
                logger.warning("auth.github.exchange_failed", error=str(e))
                raise BadGateway("GitHub OAuth failed", reason="exchange_transport")

        try:
            data = response.json()
        except ValueError:
            data = {}
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if response.status_code != 200 or not access_token:
            logger.warning(
                "auth.github.exchange_failed",
                status=response.status_code,
                error=data.get("error") if isinstance(data, dict) else None,
            )
            raise BadGateway("GitHub OAuth failed", reason="exchange_rejected")
        return access_token

    async def fetch_profile(self, access_token: str) -> GitHubProfile:
        data = await self._get_json(USER_URL, access_token)
        if not isinstance(data, dict) or data.get("id") is None:
            raise BadGateway("GitHub API error", reason="bad_profile")
        return GitHubProfile(id=str(data["id"]), login=data.get("login"), name=data.get("name"))

    async def fetch_emails(self, access_token: str) -> list[dict[str, Any]]:
        data = await self._get_json(EMAILS_URL, access_token)
        if not isinstance(data, list) or not all(isinstance(entry, dict) for entry in data):
            raise BadGateway("GitHub API error", reason="bad_emails")
        return data

    async def _get_json(self, url: str, access_token: str) -> Any:
        headers = {
            "accept": "application/vnd.github+json",
            "authorization": f"Bearer {access_token}",
            "user-agent": "testhub",
        }
        async with self._client() as client:
            try:
                response = await client.get(url, headers=headers)
            except httpx.HTTPError as e:
                logger.warning("auth.github.api_failed", url=url, error=str(e))
                raise BadGateway("GitHub API error", reason="api_transport")

        if response.status_code != 200:
            logger.warning("auth.github.api_failed", url=url, status=response.status_code)
            raise BadGateway(f"GitHub API error ({response.status_code})", reason="api_status")
        try:
            return response.json()
        except ValueError:
            raise BadGateway("GitHub API error", reason="api_body")


# ═══════════════════════════════════════════════════════════
# Federation
# ═══════════════════════════════════════════════════════════


class OAuthService:
    """Sign a GitHub user in, linking or creating the local account."""

    def __init__(
        self,
        db: AsyncSession,
        client: GitHubClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.db = db
        self.client = client
        self.sessions = SessionService(db, session_factory)

    async def complete_login(self, code: str, state: str) -> LoginResult:
        """Finish the callback: exchange, fetch profile, resolve account, open a session."""
        if not settings.github_enabled:
            raise ServiceUnavailable("GitHub login is not configured", reason="github_disabled")

        access_token = await self.client.exchange_code(code, state)
        profile = await self.client.fetch_profile(access_token)
        emails = await self.client.fetch_emails(access_token)

        email = choose_email(emails)
        if email is None:
            logger.warning("auth.github.failed", reason_code="no_verified_email", github_id=profile.id)
            raise Unauthorized("GitHub account has no verified email", reason="no_verified_email")

        try:
            user = await self._resolve_user(profile, email.strip().lower())
            org_id = await ensure_membership(
                self.db, user, profile.login or email_localpart(user.email)
            )
            session_id = await self.sessions.create(user.id, org_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("auth.github.login", user_id=str(user.id), github_id=profile.id)
        return LoginResult(session_id=session_id, user_id=user.id, org_id=org_id)

    async def _resolve_user(self, profile: GitHubProfile, email: str) -> User:
        now = datetime.now(timezone.utc)

        result = await self.db.execute(select(User).where(User.github_id == profile.id))
        user = result.scalars().first()
        if user is None:
            result = await self.db.execute(select(User).where(User.email == email))
            user = result.scalars().first()
            if user is not None:
                user.github_id = profile.id
                if user.email_verified_at is None and user.password_hash:
                    # Nobody proved they own this address when the password was set
                    user.password_hash = None
                    logger.warning(
                        "auth.github.password_dropped", user_id=str(user.id), github_id=profile.id
                    )
                logger.info("auth.github.linked", user_id=str(user.id), github_id=profile.id)
            else:
                user = User(email=email, github_id=profile.id)
                self.db.add(user)
                logger.info("auth.github.user_created", email=email, github_id=profile.id)
            if user.email_verified_at is None:
                user.email_verified_at = now

        # Profile sync
        if profile.name:
            user.full_name = profile.name
        if profile.login:
            user.nickname = profile.login

        await self.db.flush()
        return user
