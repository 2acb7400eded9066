"""Test fixtures: a throwaway SQLite database and a fresh app per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own database file under tmp_path, schema created
   from the models (same metadata the Alembic migration mirrors).
2. Every request gets its own session from that database's factory,
   exactly like production, so commits are real commits and the
   transaction boundaries in the services are actually exercised.
3. Background touches (lastSeenAt / lastUsedAt) open their own sessions
   from the same factory; they are drained before the engine is disposed.
4. The app is built per test with a fake clock in its rate limiter, so
   window tests move time instead of sleeping.

The links that would be emailed are written to the log in development;
tests read them back with structlog's capture_logs().
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from structlog.testing import capture_logs

from testhub.auth.rate_limit import InMemoryRateLimiter
from testhub.db.engine import get_db, get_session_factory
from testhub.db.models import Base
from testhub.main import create_app
from testhub.services import background

PASSWORD = "correct-horse-battery"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'testhub.db'}"


@pytest_asyncio.fixture()
async def engine(db_url):
    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await background.drain()
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    """A session for arranging and inspecting rows directly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def app(session_factory, clock):
    app = create_app(rate_limiter=InMemoryRateLimiter(clock=clock))

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    return app


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ─── Helpers ────────────────────────────────────────────


def token_from_logs(logs: list[dict], kind: str) -> str:
    """Raw token from the most recent link of `kind` written to the log."""
    links = [
        entry["link"]
        for entry in logs
        if entry.get("event") == "auth.link.issued" and entry.get("kind") == kind
    ]
    assert links, f"no {kind} link was issued"
    return parse_qs(urlparse(links[-1]).query)["token"][0]


async def register(client: AsyncClient, email: str, password: str = PASSWORD) -> str:
    """Register and return the raw email verification token."""
    with capture_logs() as logs:
        r = await client.post("/auth/register", json={"email": email, "password": password})
    assert r.status_code == 201, r.text
    return token_from_logs(logs, "email_verification")


async def register_verified(client: AsyncClient, email: str, password: str = PASSWORD) -> None:
    token = await register(client, email, password)
    r = await client.get("/auth/verify-email", params={"token": token})
    assert r.status_code == 302, r.text


async def login(client: AsyncClient, email: str, password: str = PASSWORD):
    return await client.post("/auth/login", json={"email": email, "password": password})


def past(**delta) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**delta)


async def make_user(db, email: str = "bob@example.com", verified: bool = True, password=None):
    """Insert a user with a personal org. Returns (user, org). Commits."""
    from testhub.auth.password import hash_password
    from testhub.db.models import Membership, MembershipRole, Organization, User

    user = User(
        email=email,
        password_hash=hash_password(password) if password else None,
        email_verified_at=datetime.now(timezone.utc) if verified else None,
    )
    org = Organization(name=f"Org of {email.split('@')[0]}", slug=email.split("@")[0])
    db.add_all([user, org])
    await db.flush()
    db.add(Membership(org_id=org.id, user_id=user.id, role=MembershipRole.ADMIN))
    await db.commit()
    return user, org
