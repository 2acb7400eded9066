"""Security headers middleware.

Learn: Adds standard security headers to every response, including the
auth redirects and error bodies:
- X-Content-Type-Options: no MIME sniffing of JSON error bodies
- X-Frame-Options: the login endpoints can't be framed (clickjacking)
- Referrer-Policy: verification / reset links carry a token in the query
  string, so don't leak full URLs to third parties
- Cache-Control on /auth: identity responses are never cached
- Strict-Transport-Security: when the public base URL is https
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from testhub.config import settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith("/auth/"):
            response.headers["Cache-Control"] = "no-store"
        if request.url.scheme == "https" or settings.cookie_secure:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response
