"""Typed auth errors.

Every failure is raised at the point of detection and rendered verbatim as
the HTTP response by the handler registered in testhub.main. No retries:
each of these is either bad client input or a security decision.

`reason` is a machine-readable code for logs. It is never sent to the
client, so e.g. every API key failure looks identical from outside.
"""

from typing import Optional


class AuthError(Exception):
    """Base auth exception with HTTP status."""

    status_code = 400

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason


class BadRequest(AuthError):
    status_code = 400


class Unauthorized(AuthError):
    status_code = 401


class Forbidden(AuthError):
    status_code = 403


class Conflict(AuthError):
    status_code = 409


class TooManyRequests(AuthError):
    status_code = 429


class BadGateway(AuthError):
    status_code = 502


class ServiceUnavailable(AuthError):
    status_code = 503


# ─── Single-use tokens ──────────────────────────────────

TOKEN_ERROR_MESSAGE = "Invalid or expired token"


class InvalidToken(BadRequest):
    def __init__(self):
        super().__init__(TOKEN_ERROR_MESSAGE, reason="invalid_token")


class ExpiredToken(BadRequest):
    def __init__(self):
        super().__init__(TOKEN_ERROR_MESSAGE, reason="expired_token")


class TokenAlreadyUsed(BadRequest):
    def __init__(self):
        super().__init__(TOKEN_ERROR_MESSAGE, reason="already_used")


# ─── Credentials ────────────────────────────────────────


class SessionInvalid(Unauthorized):
    """Session cookie did not resolve to a live session.

    reason: missing | revoked | expired | bad_signature
    """

    def __init__(self, reason: str):
        super().__init__("Invalid session", reason=reason)


class ApiKeyInvalid(Unauthorized):
    """Presented API key was rejected.

    reason: malformed | unknown | revoked | expired | mismatch
    """

    def __init__(self, reason: str):
        super().__init__("Invalid API key", reason=reason)
