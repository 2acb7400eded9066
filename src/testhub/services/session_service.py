"""Browser login sessions.

Learn: A session row is created at login (password or GitHub), read on every
cookie-authenticated request, and revoked at logout or en masse when the
user resets their password.

validate() is strict about order: a missing row, then a revoked one, then an
expired one. Any of them means the caller must clear the cookie. A live
session gets a best-effort lastSeenAt touch in the background.

create / revoke_all_for_user only flush: they run inside the caller's
transaction (login, OAuth callback, password reset), and the caller commits.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from testhub.auth.codec import generate_opaque_token
from testhub.auth.errors import SessionInvalid
from testhub.config import settings
from testhub.db.models import Session
from testhub.services import background

logger = structlog.get_logger()


class SessionService:
    """Create, validate, touch and revoke sessions."""

    def __init__(
        self,
        db: AsyncSession,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.db = db
        self.session_factory = session_factory

    async def create(
        self,
        user_id: uuid.UUID,
        org_id: uuid.UUID,
        ttl: Optional[timedelta] = None,
    ) -> str:
        """Persist a new session and return its id (the opaque token)."""
        now = datetime.now(timezone.utc)
        ttl = ttl or timedelta(days=settings.session_ttl_days)
        session = Session(
            id=generate_opaque_token(),
            user_id=user_id,
            org_id=org_id,
            created_at=now,
            expires_at=now + ttl,
            last_seen_at=now,
        )
        self.db.add(session)
        await self.db.flush()
        logger.info("auth.session.created", user_id=str(user_id), org_id=str(org_id))
        return session.id

    async def validate(self, session_id: str) -> Session:
        """Return the live session, or raise SessionInvalid(missing|revoked|expired)."""
        session = await self.db.get(Session, session_id)
        if session is None:
            raise SessionInvalid("missing")
        if session.revoked_at is not None:
            raise SessionInvalid("revoked")

        now = datetime.now(timezone.utc)
        if session.expires_at <= now:
            raise SessionInvalid("expired")

        if self.session_factory is not None:
            background.spawn(
                _touch_last_seen(self.session_factory, session.id, now),
                event="auth.session.touch_failed",
                session_user_id=str(session.user_id),
            )
        return session

    async def revoke(self, session_id: str) -> None:
        """Mark one session revoked (logout). Commits."""
        await self.db.execute(
            update(Session)
            .where(Session.id == session_id, Session.revoked_at.is_(None))
            .values(revoked_at=datetime.now(timezone.utc))
        )
        await self.db.commit()

    async def revoke_all_for_user(self, user_id: uuid.UUID, now: Optional[datetime] = None) -> int:
        """Revoke every live session of a user. Flushes only; the caller commits."""
        result = await self.db.execute(
            update(Session)
            .where(Session.user_id == user_id, Session.revoked_at.is_(None))
            .values(revoked_at=now or datetime.now(timezone.utc))
        )
        return result.rowcount


async def _touch_last_seen(
    session_factory: async_sessionmaker[AsyncSession], session_id: str, seen_at: datetime
) -> None:
    async with session_factory() as db:
        await db.execute(
            update(Session).where(Session.id == session_id).values(last_seen_at=seen_at)
        )
        await db.commit()
