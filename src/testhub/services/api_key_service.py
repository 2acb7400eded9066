"""API key authentication.

Learn: The x-api-key header carries "<prefix>.<secret>". Checks, in order:

    malformed → unknown prefix → revoked → expired → hash mismatch

Every one of them raises ApiKeyInvalid, which the client sees as the same
401 "Invalid API key"; the reason only goes to the logs. Otherwise a caller
could probe which prefixes exist.

On success lastUsedAt is updated in the background.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from testhub.auth.codec import constant_time_equal_hex, hash_opaque, parse_api_key
from testhub.auth.context import AuthContext
from testhub.auth.errors import ApiKeyInvalid
from testhub.db.models import ApiKey
from testhub.services import background

logger = structlog.get_logger()


class ApiKeyService:
    """Authenticate presented API keys."""

    def __init__(
        self,
        db: AsyncSession,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.db = db
        self.session_factory = session_factory

    async def authenticate(self, header_value: Optional[str]) -> Optional[AuthContext]:
        """Resolve a header value to an API-key AuthContext.

        Returns None when no key was presented (absent header or empty value).
        Raises ApiKeyInvalid for any presented key that doesn't check out.
        """
        if header_value is None or not header_value.strip():
            return None

        parsed = parse_api_key(header_value)
        if parsed is None:
            raise self._reject("malformed")

        result = await self.db.execute(select(ApiKey).where(ApiKey.prefix == parsed.prefix))
        api_key = result.scalars().first()
        now = datetime.now(timezone.utc)

        if api_key is None:
            raise self._reject("unknown", prefix=parsed.prefix)
        if api_key.revoked_at is not None:
            raise self._reject("revoked", prefix=parsed.prefix)
        if api_key.expires_at is not None and api_key.expires_at <= now:
            raise self._reject("expired", prefix=parsed.prefix)
        if not constant_time_equal_hex(api_key.hash, hash_opaque(parsed.secret)):
            raise self._reject("mismatch", prefix=parsed.prefix)

        if self.session_factory is not None:
            background.spawn(
                _touch_last_used(self.session_factory, api_key.id, now),
                event="auth.api_key.touch_failed",
                api_key_id=str(api_key.id),
            )

        return AuthContext.for_api_key(
            api_key_id=api_key.id,
            prefix=api_key.prefix,
            org_id=api_key.org_id,
            user_id=api_key.user_id,
        )

    def _reject(self, reason: str, prefix: Optional[str] = None) -> ApiKeyInvalid:
        logger.warning("auth.api_key.rejected", reason_code=reason, prefix=prefix)
        return ApiKeyInvalid(reason)


async def _touch_last_used(
    session_factory: async_sessionmaker[AsyncSession], api_key_id, used_at: datetime
) -> None:
    async with session_factory() as db:
        await db.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=used_at))
        await db.commit()
