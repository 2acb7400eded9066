"""Account flows: registration, login, email verification, password reset.

Learn: This is the layer the /auth routes call. It composes the smaller
pieces (password hashing, TokenService, SessionService) into the public
operations, and owns the transaction boundaries:

- register / login / forgot / resend commit once, at the end
- verify_email / reset_password commit inside TokenService.consume()
- login-while-unverified commits the fresh verification token BEFORE
  raising 403, so the user can still click the new link

Password hashing is CPU-bound (argon2id, ~50ms), so it runs in the
threadpool rather than on the event loop.

Every account belongs to at least one organization. A user without one
gets a personal org ("Org of alice", slug "alice", "alice-2", ...) and the
ADMIN role the first time they register or log in.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.concurrency import run_in_threadpool

from testhub.auth.context import STRATEGY_API_KEY, STRATEGY_SESSION, AuthContext
from testhub.auth.errors import Conflict, Forbidden, Unauthorized
from testhub.auth.password import hash_password, needs_upgrade, verify_password
from testhub.config import settings
from testhub.db.models import (
    EmailVerificationToken,
    Membership,
    MembershipRole,
    Organization,
    PasswordResetToken,
    User,
)
from testhub.services.session_service import SessionService
from testhub.services.token_service import TokenService

logger = structlog.get_logger()

INVALID_CREDENTIALS = "Invalid email or password"
MAX_SLUG_ATTEMPTS = 100
_SLUG_MAX_LENGTH = 48
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


# ═══════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════


def normalize_email(email: str) -> str:
    return email.strip().lower()


def email_localpart(email: str) -> str:
    return email.split("@", 1)[0]


def to_slug(value: str) -> str:
    """'Alice.Smith' → 'alice-smith'. Falls back to 'org' when nothing is left."""
    slug = _NON_SLUG_CHARS.sub("-", value.strip().lower()).strip("-")
    return slug[:_SLUG_MAX_LENGTH] or "org"


async def ensure_membership(db: AsyncSession, user: User, handle: str) -> uuid.UUID:
    """Return the org id of the user's first membership, provisioning one if needed.

    The new org is named after `handle` (email localpart or GitHub login).
    Slug collisions are resolved by trying base, base-2, base-3, ... up to
    MAX_SLUG_ATTEMPTS candidates. Flushes only; the caller commits.
    """
    result = await db.execute(
        select(Membership.org_id)
        .where(Membership.user_id == user.id)
        .order_by(Membership.created_at)
        .limit(1)
    )
    org_id = result.scalars().first()
    if org_id is not None:
        return org_id

    base = to_slug(handle)
    slug = None
    for attempt in range(1, MAX_SLUG_ATTEMPTS + 1):
        candidate = base if attempt == 1 else f"{base}-{attempt}"
        taken = await db.execute(select(Organization.id).where(Organization.slug == candidate))
        if taken.scalars().first() is None:
            slug = candidate
            break
    if slug is None:
        raise Conflict("Could not allocate an organization slug", reason="slug_exhausted")

    org = Organization(name=f"Org of {handle or 'user'}", slug=slug)
    db.add(org)
    await db.flush()
    db.add(Membership(org_id=org.id, user_id=user.id, role=MembershipRole.ADMIN))
    await db.flush()

    logger.info("auth.org.provisioned", org_id=str(org.id), slug=slug, user_id=str(user.id))
    return org.id


def deliver_link(kind: str, path: str, raw_token: str, user: User) -> str:
    """Hand a token link to the user. Returns the link.

    There is no mail transport; the link goes to the log. The raw token is
    only written in development.
    """
    link = f"{settings.web_app_url.rstrip('/')}/{path}?token={raw_token}"
    if settings.is_development:
        logger.info("auth.link.issued", kind=kind, email=user.email, link=link)
    else:
        logger.info("auth.link.issued", kind=kind, user_id=str(user.id))
    return link


@dataclass
class LoginResult:
    session_id: str
    user_id: uuid.UUID
    org_id: uuid.UUID


# ═══════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════


class AccountService:
    """Public account operations behind the /auth routes."""

    def __init__(
        self,
        db: AsyncSession,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.db = db
        self.sessions = SessionService(db, session_factory)
        self.verifications = TokenService(db, EmailVerificationToken)
        self.resets = TokenService(db, PasswordResetToken)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalars().first()

    # ─── Registration ───────────────────────────────────

    async def register(self, email: str, password: str, full_name: Optional[str] = None) -> str:
        """Create an unverified user with a personal org. Returns the raw verification token."""
        if not settings.allow_signup:
            raise Forbidden("Signups are disabled", reason="signup_disabled")

        email = normalize_email(email)
        if await self.get_user_by_email(email) is not None:
            logger.warning("auth.register.failed", reason_code="email_taken")
            raise Conflict("Email already registered", reason="email_taken")

        password_hash = await run_in_threadpool(hash_password, password)
        user = User(
            email=email,
            password_hash=password_hash,
            full_name=(full_name or "").strip() or None,
        )
        self.db.add(user)
        await self.db.flush()

        await ensure_membership(self.db, user, email_localpart(email))
        raw = await self._issue_verification(user)
        await self.db.commit()

        logger.info("auth.register.succeeded", user_id=str(user.id))
        deliver_link("email_verification", "verify-email", raw, user)
        return raw

    # ─── Login ──────────────────────────────────────────

    async def login(self, email: str, password: str) -> LoginResult:
        """Check credentials and open a session. Commits."""
        user = await self.get_user_by_email(email)
        if user is None or not user.password_hash:
            logger.warning("auth.login.failed", reason_code="invalid_password")
            raise Unauthorized(INVALID_CREDENTIALS, reason="invalid_password")

        valid = await run_in_threadpool(verify_password, password, user.password_hash)
        if not valid:
            logger.warning("auth.login.failed", reason_code="invalid_password", user_id=str(user.id))
            raise Unauthorized(INVALID_CREDENTIALS, reason="invalid_password")

        # Transparent upgrade of outdated argon2 parameters
        if needs_upgrade(user.password_hash):
            user.password_hash = await run_in_threadpool(hash_password, password)
            logger.info("auth.password.rehashed", user_id=str(user.id))

        if user.email_verified_at is None:
            logger.warning("auth.login.blocked", reason_code="email_not_verified", user_id=str(user.id))
            raw = await self._issue_verification(user)
            await self.db.commit()
            deliver_link("email_verification", "verify-email", raw, user)
            raise Forbidden("Email not verified", reason="email_not_verified")

        org_id = await ensure_membership(self.db, user, email_localpart(user.email))
        session_id = await self.sessions.create(user.id, org_id)
        await self.db.commit()

        logger.info("auth.login.succeeded", user_id=str(user.id), org_id=str(org_id))
        return LoginResult(session_id=session_id, user_id=user.id, org_id=org_id)

    async def logout(self, context: AuthContext) -> None:
        """Revoke the current session. API-key contexts have nothing to revoke."""
        if context.strategy == STRATEGY_SESSION and context.session_id:
            await self.sessions.revoke(context.session_id)
            logger.info("auth.logout", user_id=str(context.user_id))

    # ─── Email verification ─────────────────────────────

    async def verify_email(self, raw_token: str) -> uuid.UUID:
        """Redeem a verification token and mark the user's email verified."""

        async def mark_verified(db: AsyncSession, user_id: uuid.UUID, now: datetime) -> None:
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(email_verified_at=now)
                .execution_options(synchronize_session=False)
            )

        user_id = await self.verifications.consume(raw_token, mark_verified)
        logger.info("auth.email.verified", user_id=str(user_id))
        return user_id

    async def resend_verification(self, email: str) -> Optional[str]:
        """Issue a fresh verification token for an unverified user. Silent otherwise."""
        user = await self.get_user_by_email(email)
        if user is None or user.email_verified_at is not None:
            return None

        raw = await self._issue_verification(user)
        await self.db.commit()
        deliver_link("email_verification", "verify-email", raw, user)
        return raw

    # ─── Password reset ─────────────────────────────────

    async def forgot_password(self, email: str) -> Optional[str]:
        """Issue a reset token if the account exists. Silent otherwise."""
        user = await self.get_user_by_email(email)
        if user is None:
            return None

        raw = await self.resets.issue(user.id, timedelta(hours=settings.password_reset_ttl_hours))
        await self.db.commit()
        deliver_link("password_reset", "reset-password", raw, user)
        return raw

    async def reset_password(self, raw_token: str, new_password: str) -> uuid.UUID:
        """Redeem a reset token: set the new password and revoke every session.

        The new password is only hashed once the token has been claimed.
        """
        sessions = self.sessions

        async def apply_reset(db: AsyncSession, user_id: uuid.UUID, now: datetime) -> None:
            password_hash = await run_in_threadpool(hash_password, new_password)
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(password_hash=password_hash)
                .execution_options(synchronize_session=False)
            )
            revoked = await sessions.revoke_all_for_user(user_id, now)
            logger.info("auth.sessions.revoked", user_id=str(user_id), count=revoked)

        user_id = await self.resets.consume(raw_token, apply_reset)
        logger.info("auth.password.reset", user_id=str(user_id))
        return user_id

    # ─── Identity ───────────────────────────────────────

    async def describe(self, context: AuthContext) -> dict:
        """Build the /auth/me payload for an authenticated context."""
        user = await self.db.get(User, context.user_id) if context.user_id else None
        org = await self.db.get(Organization, context.org_id) if context.org_id else None

        if context.strategy == STRATEGY_API_KEY:
            email_verified = True
        else:
            email_verified = bool(user and user.email_verified_at)

        return {
            "user": (
                {
                    "id": str(user.id),
                    "email": user.email,
                    "full_name": user.full_name,
                    "nickname": user.nickname,
                }
                if user
                else None
            ),
            "org": (
                {"id": str(org.id), "slug": org.slug, "name": org.name}
                if org
                else None
            ),
            "auth_strategy": context.strategy,
            "email_verified": email_verified,
        }

    async def _issue_verification(self, user: User) -> str:
        return await self.verifications.issue(
            user.id, timedelta(hours=settings.email_verification_ttl_hours)
        )
