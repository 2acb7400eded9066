"""Signed cookies: session and OAuth state.

Learn: Cookie values are wrapped in a compact HS256 JWT keyed by the
cookie secret. A tampered or forged cookie fails signature verification,
and the embedded expiry matches the cookie max-age so a replayed old
cookie stops verifying even if the browser kept it.

The signature only proves the value came from us. Whether the session it
names is still alive is decided by SessionService against the database.
"""

from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Response

from testhub.config import settings

_ALGORITHM = "HS256"


class CookieSignatureError(Exception):
    """Raised when a cookie value fails verification."""


def sign_value(value: str, max_age: int) -> str:
    """Sign a cookie value so it is valid for max_age seconds."""
    now = datetime.now(timezone.utc)
    payload = {
        "v": value,
        "iat": now,
        "exp": now + timedelta(seconds=max_age),
    }
    return jwt.encode(payload, settings.cookie_secret, algorithm=_ALGORITHM)


def unsign_value(token: str) -> str:
    """Verify a signed cookie value and return the original value.

    Raises CookieSignatureError on failure.
    """
    try:
        payload = jwt.decode(token, settings.cookie_secret, algorithms=[_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise CookieSignatureError("Cookie has expired")
    except jwt.InvalidTokenError as e:
        raise CookieSignatureError(f"Invalid cookie: {e}")

    value = payload.get("v")
    if not isinstance(value, str) or not value:
        raise CookieSignatureError("Invalid cookie: missing value")
    return value


# ─── Response helpers ───────────────────────────────────


def session_max_age() -> int:
    return settings.session_ttl_days * 24 * 60 * 60


def _set_signed_cookie(response: Response, key: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=key,
        value=sign_value(value, max_age),
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def _clear_cookie(response: Response, key: str) -> None:
    response.delete_cookie(
        key=key,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def set_session_cookie(response: Response, session_id: str) -> None:
    _set_signed_cookie(response, settings.cookie_name, session_id, session_max_age())


def clear_session_cookie(response: Response) -> None:
    _clear_cookie(response, settings.cookie_name)


def set_state_cookie(response: Response, state: str) -> None:
    _set_signed_cookie(
        response, settings.state_cookie_name, state, settings.oauth_state_ttl_seconds
    )


def clear_state_cookie(response: Response) -> None:
    _clear_cookie(response, settings.state_cookie_name)


def clear_session_cookie_header() -> str:
    """Set-Cookie header value that clears the session cookie.

    Used where the clearing must ride on an error response that FastAPI
    builds from an HTTPException rather than a Response object.
    """
    response = Response()
    clear_session_cookie(response)
    return response.headers["set-cookie"]
