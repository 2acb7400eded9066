"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Routes are mounted at the root, not under a version prefix: the
browser follows /auth/verify-email and /auth/github/callback links
directly, and GitHub's registered redirect URI points at the callback.
Protection is per route (Depends(require_auth)) because most /auth
routes are used by anonymous callers.
"""

from fastapi import APIRouter

from testhub.api.auth import router as auth_router
from testhub.api.health import router as health_router

api_router = APIRouter()

api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
