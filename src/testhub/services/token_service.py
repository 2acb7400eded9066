"""Single-use tokens for email verification and password reset.

Learn: State machine per token:

    pending ──consume──▶ consumed
       │
       └──time passes──▶ expired

Only sha256(raw) is stored. The raw value goes into a link and nowhere else.

consume() runs as ONE transaction:
1. look up by hash, classify: unknown / expired / already used
2. claim the row with a conditional UPDATE (consumed_at IS NULL AND
   expires_at > now). Two concurrent redemptions race here and exactly one
   wins; the loser sees rowcount 0 and gets TokenAlreadyUsed.
3. apply the token's effect (mark email verified / set password + revoke
   every session)
4. force-consume every other pending token of the same kind for the same
   user, so an older link can't be replayed after a newer one was used
5. commit (or roll back everything on error)
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from testhub.auth.codec import generate_opaque_token, hash_opaque
from testhub.auth.errors import ExpiredToken, InvalidToken, TokenAlreadyUsed
from testhub.db.models import EmailVerificationToken, PasswordResetToken

logger = structlog.get_logger()

TokenModel = Union[type[EmailVerificationToken], type[PasswordResetToken]]
TokenEffect = Callable[[AsyncSession, uuid.UUID, datetime], Awaitable[None]]


class TokenService:
    """Issue and consume single-use tokens of one kind."""

    def __init__(self, db: AsyncSession, model: TokenModel):
        self.db = db
        self.model = model

    @property
    def kind(self) -> str:
        return self.model.__tablename__

    async def issue(self, user_id: uuid.UUID, ttl: timedelta) -> str:
        """Store a new token hash and return the raw token. Flushes only."""
        raw = generate_opaque_token()
        token = self.model(
            user_id=user_id,
            token_hash=hash_opaque(raw),
            expires_at=datetime.now(timezone.utc) + ttl,
        )
        self.db.add(token)
        await self.db.flush()
        logger.info("auth.token.issued", kind=self.kind, user_id=str(user_id))
        return raw

    async def consume(self, raw: str, effect: TokenEffect) -> uuid.UUID:
        """Redeem a raw token, apply `effect`, and return the user id.

        Raises InvalidToken, ExpiredToken or TokenAlreadyUsed.
        """
        now = datetime.now(timezone.utc)
        model = self.model

        result = await self.db.execute(
            select(model)
            .where(model.token_hash == hash_opaque(raw))
            .execution_options(populate_existing=True)
        )
        token = result.scalars().first()

        if token is None:
            self._reject("invalid_token")
            raise InvalidToken()
        if token.expires_at <= now:
            self._reject("expired_token")
            raise ExpiredToken()
        if token.consumed_at is not None:
            self._reject("already_used")
            raise TokenAlreadyUsed()

        token_id, user_id = token.id, token.user_id

        claimed = await self.db.execute(
            update(model)
            .where(
                model.id == token_id,
                model.consumed_at.is_(None),
                model.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            # Lost the race against a concurrent redemption.
            self._reject("already_used")
            raise TokenAlreadyUsed()

        try:
            await effect(self.db, user_id, now)
            await self.db.execute(
                update(model)
                .where(model.user_id == user_id, model.consumed_at.is_(None))
                .values(consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("auth.token.consumed", kind=self.kind, user_id=str(user_id))
        return user_id

    def _reject(self, reason: str) -> None:
        logger.warning("auth.token.rejected", kind=self.kind, reason_code=reason)
