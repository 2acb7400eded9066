"""CLI tests: create-api-key / revoke-api-key against a real database file.

Learn: The CLI opens its own engine on --database-url, so these tests point
it at the per-test SQLite file (schema already created by the engine
fixture) and then use the printed key against the API.
"""

import pytest
from click.testing import CliRunner
from sqlalchemy import select

from conftest import make_user
from testhub.cli.main import main
from testhub.db.models import ApiKey, Organization


def _invoke(*args):
    return CliRunner().invoke(main, list(args))


def _printed_key(result) -> str:
    for line in result.stdout.splitlines():
        if line.startswith("x-api-key: "):
            return line.split(": ", 1)[1]
    raise AssertionError(f"no key printed: {result.output!r}")


@pytest.mark.asyncio
async def test_create_api_key_creates_org_and_authenticates(client, db_url, db_session):
    result = _invoke(
        "create-api-key", "--org-slug", "ci-org", "--name", "CI uploader",
        "--org-name", "CI Org", "--database-url", db_url,
    )
    assert result.exit_code == 0, result.output
    key = _printed_key(result)
    assert "apiKeyId: " in result.stdout

    org = (
        await db_session.execute(select(Organization).where(Organization.slug == "ci-org"))
    ).scalars().one()
    assert org.name == "CI Org"

    # Only the hash is stored
    row = (await db_session.execute(select(ApiKey))).scalars().one()
    assert row.prefix == key.split(".")[0]
    assert key.split(".")[1] not in row.hash
    await db_session.commit()

    r = await client.get("/auth/me", headers={"x-api-key": key})
    assert r.status_code == 200
    data = r.json()
    assert data["auth_strategy"] == "api_key"
    assert data["user"] is None
    assert data["org"]["slug"] == "ci-org"


@pytest.mark.asyncio
async def test_create_api_key_reuses_org_and_attaches_user(client, db_url, db_session):
    user, org = await make_user(db_session, "carol@example.com")

    result = _invoke(
        "create-api-key", "--org-slug", "carol", "--name", "nightly",
        "--user-email", "Carol@Example.com", "--expires-days", "90",
        "--database-url", db_url,
    )
    assert result.exit_code == 0, result.output

    rows = (await db_session.execute(select(Organization))).scalars().all()
    assert [o.id for o in rows] == [org.id]
    api_key = (await db_session.execute(select(ApiKey))).scalars().one()
    assert api_key.user_id == user.id
    assert api_key.expires_at is not None
    await db_session.commit()

    r = await client.get("/auth/me", headers={"x-api-key": _printed_key(result)})
    assert r.status_code == 200
    assert r.json()["user"]["email"] == "carol@example.com"


@pytest.mark.asyncio
async def test_create_api_key_unknown_user(db_url, engine):
    result = _invoke(
        "create-api-key", "--org-slug", "acme", "--name", "ci",
        "--user-email", "ghost@example.com", "--database-url", db_url,
    )
    assert result.exit_code == 1
    assert "No user with email ghost@example.com" in result.output


@pytest.mark.asyncio
async def test_revoke_api_key(client, db_url):
    created = _invoke("create-api-key", "--org-slug", "acme", "--name", "ci", "--database-url", db_url)
    key = _printed_key(created)
    prefix = key.split(".")[0]

    r = await client.get("/auth/me", headers={"x-api-key": key})
    assert r.status_code == 200

    result = _invoke("revoke-api-key", prefix, "--database-url", db_url)
    assert result.exit_code == 0, result.output
    assert f"Revoked {prefix}" in result.output

    r = await client.get("/auth/me", headers={"x-api-key": key})
    assert r.status_code == 401
    assert r.json() == {"detail": "Invalid API key"}

    # Already revoked
    result = _invoke("revoke-api-key", prefix, "--database-url", db_url)
    assert result.exit_code == 1


def test_missing_required_options():
    result = _invoke("create-api-key", "--name", "ci")
    assert result.exit_code == 2
    assert "--org-slug" in result.output
