"""The resolved identity of a request.

Learn: AuthContext is a value, not request state. The resolver returns one
per request and FastAPI hands it to whichever handlers and dependencies
ask for it. Nothing mutates it afterwards.

States:  anonymous → session | api_key
"""

import uuid
from dataclasses import dataclass
from typing import Optional

STRATEGY_NONE = "none"
STRATEGY_SESSION = "session"
STRATEGY_API_KEY = "api_key"


@dataclass(frozen=True)
class AuthContext:
    strategy: str = STRATEGY_NONE
    user_id: Optional[uuid.UUID] = None
    org_id: Optional[uuid.UUID] = None

    # Credential material
    session_id: Optional[str] = None
    api_key_id: Optional[uuid.UUID] = None
    api_key_prefix: Optional[str] = None

    # A session cookie was presented but didn't resolve; the response
    # should clear it.
    clear_session_cookie: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.strategy != STRATEGY_NONE

    @classmethod
    def anonymous(cls, clear_session_cookie: bool = False) -> "AuthContext":
        return cls(clear_session_cookie=clear_session_cookie)

    @classmethod
    def for_session(
        cls, session_id: str, user_id: uuid.UUID, org_id: uuid.UUID
    ) -> "AuthContext":
        return cls(
            strategy=STRATEGY_SESSION,
            user_id=user_id,
            org_id=org_id,
            session_id=session_id,
        )

    @classmethod
    def for_api_key(
        cls,
        api_key_id: uuid.UUID,
        prefix: str,
        org_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        clear_session_cookie: bool = False,
    ) -> "AuthContext":
        return cls(
            strategy=STRATEGY_API_KEY,
            user_id=user_id,
            org_id=org_id,
            api_key_id=api_key_id,
            api_key_prefix=prefix,
            clear_session_cookie=clear_session_cookie,
        )
