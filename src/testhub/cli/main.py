"""TestHub CLI: provision and revoke API keys.

Usage:
    testhub create-api-key --org-slug demo-org --name "CI uploader"
    testhub create-api-key --org-slug acme --name nightly --user-email ci@acme.dev --expires-days 90
    testhub revoke-api-key 3f9a1c2b7d4e5f60

API keys are never created through the HTTP API. This command talks to the
database directly, prints the full key exactly once, and stores only
sha256(secret). Losing the printed value means creating a new key.
"""

import asyncio
import concurrent.futures
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import click
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from testhub import __version__
from testhub.auth.codec import GeneratedApiKey, generate_api_key
from testhub.config import settings
from testhub.db.models import ApiKey, Organization, User

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an async test) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


async def _with_session(database_url: str, fn):
    """Open a throwaway engine, run fn(session), dispose."""
    engine = create_async_engine(database_url)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with factory() as db:
            return await fn(db)
    finally:
        await engine.dispose()


class ProvisioningError(Exception):
    """Raised when a key can't be created or revoked as asked."""


async def provision_api_key(
    db: AsyncSession,
    org_slug: str,
    name: str,
    org_name: Optional[str] = None,
    user_email: Optional[str] = None,
    expires_days: Optional[int] = None,
) -> tuple[GeneratedApiKey, ApiKey]:
    """Upsert the org by slug and store a new key for it. Commits."""
    result = await db.execute(select(Organization).where(Organization.slug == org_slug))
    org = result.scalars().first()
    if org is None:
        org = Organization(slug=org_slug, name=org_name or org_slug)
        db.add(org)
        await db.flush()

    user_id = None
    if user_email:
        result = await db.execute(select(User).where(User.email == user_email.strip().lower()))
        user = result.scalars().first()
        if user is None:
            raise ProvisioningError(f"No user with email {user_email}")
        user_id = user.id

    expires_at = None
    if expires_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_days)

    generated = generate_api_key()
    api_key = ApiKey(
        name=name,
        prefix=generated.prefix,
        hash=generated.hash,
        org_id=org.id,
        user_id=user_id,
        expires_at=expires_at,
    )
    db.add(api_key)
    await db.commit()
    return generated, api_key


async def revoke_api_key_by_prefix(db: AsyncSession, prefix: str) -> None:
    """Mark the key with this prefix revoked. Commits."""
    result = await db.execute(
        update(ApiKey)
        .where(ApiKey.prefix == prefix, ApiKey.revoked_at.is_(None))
        .values(revoked_at=datetime.now(timezone.utc))
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ProvisioningError(f"No active API key with prefix {prefix}")
    await db.commit()


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="testhub")
def main():
    """TestHub: provision credentials for CI uploaders and scripts."""


@main.command("create-api-key")
@click.option("--org-slug", required=True, help="Organization slug (created if missing)")
@click.option("--name", required=True, help="Human-readable key name")
@click.option("--org-name", help="Name for a newly created organization")
@click.option("--user-email", help="Attach the key to this user (org-level key if omitted)")
@click.option("--expires-days", type=int, help="Expire in N days (never if omitted)")
@click.option("--database-url", default=None, help="Defaults to TESTHUB_DATABASE_URL")
def create_api_key(org_slug: str, name: str, org_name: Optional[str],
                   user_email: Optional[str], expires_days: Optional[int],
                   database_url: Optional[str]):
    """Create an API key and print it. The key is shown only once."""

    async def _create(db: AsyncSession):
        return await provision_api_key(db, org_slug, name, org_name, user_email, expires_days)

    try:
        generated, api_key = _run(_with_session(database_url or settings.database_url, _create))
    except ProvisioningError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    click.echo(f"x-api-key: {generated.plain_text}")
    click.echo(f"apiKeyId: {api_key.id}")
    click.secho("Store this key now; it cannot be shown again.", fg="yellow", err=True)


@main.command("revoke-api-key")
@click.argument("prefix")
@click.option("--database-url", default=None, help="Defaults to TESTHUB_DATABASE_URL")
def revoke_api_key(prefix: str, database_url: Optional[str]):
    """Revoke the API key whose public prefix is PREFIX."""

    async def _revoke(db: AsyncSession):
        await revoke_api_key_by_prefix(db, prefix)

    try:
        _run(_with_session(database_url or settings.database_url, _revoke))
    except ProvisioningError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)

    click.secho(f"Revoked {prefix}", fg="green")


if __name__ == "__main__":
    main()
