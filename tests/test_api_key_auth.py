"""API key authentication: every rejection reason, and the lastUsedAt touch."""

import pytest
from sqlalchemy import update

from conftest import make_user, past
from testhub.auth.codec import generate_api_key
from testhub.auth.context import STRATEGY_API_KEY
from testhub.auth.errors import ApiKeyInvalid
from testhub.db.models import ApiKey
from testhub.services import background
from testhub.services.api_key_service import ApiKeyService


async def _store_key(db, org_id, user_id=None, **fields):
    generated = generate_api_key()
    api_key = ApiKey(
        name="ci",
        prefix=generated.prefix,
        hash=generated.hash,
        org_id=org_id,
        user_id=user_id,
        **fields,
    )
    db.add(api_key)
    await db.commit()
    return generated, api_key


def _flip_hex_char(value: str, index: int) -> str:
    c = value[index]
    flipped = "0" if c != "0" else "1"
    return value[:index] + flipped + value[index + 1:]


async def _reason(service, header):
    with pytest.raises(ApiKeyInvalid) as exc:
        await service.authenticate(header)
    assert exc.value.message == "Invalid API key"
    return exc.value.reason


@pytest.mark.asyncio
async def test_valid_key(db_session):
    user, org = await make_user(db_session)
    generated, api_key = await _store_key(db_session, org.id, user.id)

    context = await ApiKeyService(db_session).authenticate(generated.plain_text)
    assert context.strategy == STRATEGY_API_KEY
    assert context.is_authenticated
    assert context.org_id == org.id
    assert context.user_id == user.id
    assert context.api_key_id == api_key.id
    assert context.api_key_prefix == generated.prefix


@pytest.mark.asyncio
async def test_org_level_key_has_no_user(db_session):
    _, org = await make_user(db_session)
    generated, _ = await _store_key(db_session, org.id)

    context = await ApiKeyService(db_session).authenticate(generated.plain_text)
    assert context.user_id is None
    assert context.org_id == org.id


@pytest.mark.asyncio
async def test_absent_header_is_not_an_attempt(db_session):
    service = ApiKeyService(db_session)
    assert await service.authenticate(None) is None
    assert await service.authenticate("   ") is None


@pytest.mark.asyncio
async def test_malformed(db_session):
    service = ApiKeyService(db_session)
    assert await _reason(service, "not-a-key") == "malformed"
    assert await _reason(service, "short.0123456789abcdef") == "malformed"


@pytest.mark.asyncio
async def test_unknown_prefix(db_session):
    service = ApiKeyService(db_session)
    assert await _reason(service, generate_api_key().plain_text) == "unknown"


@pytest.mark.asyncio
async def test_revoked(db_session):
    _, org = await make_user(db_session)
    generated, _ = await _store_key(db_session, org.id, revoked_at=past(minutes=1))
    assert await _reason(ApiKeyService(db_session), generated.plain_text) == "revoked"


@pytest.mark.asyncio
async def test_expired(db_session):
    _, org = await make_user(db_session)
    generated, _ = await _store_key(db_session, org.id, expires_at=past(seconds=1))
    assert await _reason(ApiKeyService(db_session), generated.plain_text) == "expired"


@pytest.mark.asyncio
async def test_revoked_checked_before_expired(db_session):
    _, org = await make_user(db_session)
    generated, _ = await _store_key(
        db_session, org.id, revoked_at=past(minutes=1), expires_at=past(minutes=1)
    )
    assert await _reason(ApiKeyService(db_session), generated.plain_text) == "revoked"


@pytest.mark.asyncio
async def test_flipping_any_secret_hex_char_is_a_mismatch(db_session):
    _, org = await make_user(db_session)
    generated, _ = await _store_key(db_session, org.id)
    service = ApiKeyService(db_session)
    secret_start = len(generated.prefix) + 1

    for index in range(secret_start, len(generated.plain_text)):
        tampered = _flip_hex_char(generated.plain_text, index)
        assert await _reason(service, tampered) == "mismatch"


@pytest.mark.asyncio
async def test_authentication_touches_last_used(db_session, session_factory):
    _, org = await make_user(db_session)
    generated, api_key = await _store_key(db_session, org.id)
    assert api_key.last_used_at is None

    await ApiKeyService(db_session, session_factory).authenticate(generated.plain_text)
    await background.drain()

    async with session_factory() as db:
        refreshed = await db.get(ApiKey, api_key.id)
        assert refreshed.last_used_at is not None


@pytest.mark.asyncio
async def test_expired_key_does_not_touch_last_used(db_session, session_factory):
    _, org = await make_user(db_session)
    generated, api_key = await _store_key(db_session, org.id)
    await db_session.execute(
        update(ApiKey).where(ApiKey.id == api_key.id).values(expires_at=past(seconds=1))
    )
    await db_session.commit()

    with pytest.raises(ApiKeyInvalid):
        await ApiKeyService(db_session, session_factory).authenticate(generated.plain_text)
    await background.drain()

    async with session_factory() as db:
        assert (await db.get(ApiKey, api_key.id)).last_used_at is None
