"""FastAPI application factory.

Learn: App factory pattern. create_app() returns a configured FastAPI
instance; tests build a fresh one per test so nothing leaks between them
(the rate limiter lives on app.state, not in a module global).

Lifespan manages shutdown: outstanding background touches are drained
before the engine is disposed.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from testhub import __version__
from testhub.api import api_router
from testhub.auth.errors import AuthError
from testhub.auth.rate_limit import InMemoryRateLimiter, RateLimiter
from testhub.config import settings
from testhub.services import background

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(
        "testhub.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        github_enabled=settings.github_enabled,
        allow_signup=settings.allow_signup,
    )

    yield

    logger.info("testhub.shutdown")
    await background.drain()

    from testhub.db.engine import engine
    await engine.dispose()


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError as {"detail": message}. The reason code only goes to the log."""
    logger.info(
        "auth.request.rejected",
        status=exc.status_code,
        reason_code=exc.reason,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(rate_limiter: Optional[RateLimiter] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="TestHub API",
        description="Test-results tracking service: authentication and credentials",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.rate_limiter = rate_limiter or InMemoryRateLimiter()

    # ── Middleware stack ──────────────────────────────────────
    # Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → Security → RequestId → handler

    from testhub.middleware.request_id import RequestIdMiddleware
    from testhub.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AuthError, auth_error_handler)
    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: testhub.main:app)
app = create_app()
