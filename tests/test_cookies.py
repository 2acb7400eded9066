"""Signed cookie values and cookie attributes."""

import jwt
import pytest
from fastapi import Response

from testhub.auth.cookies import (
    CookieSignatureError,
    clear_session_cookie_header,
    set_session_cookie,
    set_state_cookie,
    sign_value,
    unsign_value,
)
from testhub.config import settings


def test_sign_and_unsign():
    signed = sign_value("session-id-123", max_age=60)
    assert signed != "session-id-123"
    assert unsign_value(signed) == "session-id-123"


def test_tampered_value_rejected():
    signed = sign_value("session-id-123", max_age=60)
    other = sign_value("session-id-456", max_age=60)
    head, payload, _ = signed.split(".")
    tampered = f"{head}.{payload}.{other.split('.')[2]}"
    with pytest.raises(CookieSignatureError):
        unsign_value(tampered)


def test_wrong_key_rejected():
    forged = jwt.encode({"v": "session-id-123"}, "not-the-secret", algorithm="HS256")
    with pytest.raises(CookieSignatureError):
        unsign_value(forged)


def test_expired_value_rejected():
    signed = sign_value("state", max_age=-1)
    with pytest.raises(CookieSignatureError):
        unsign_value(signed)


def test_plain_value_rejected():
    with pytest.raises(CookieSignatureError):
        unsign_value("just-a-session-id")


def test_missing_value_rejected():
    token = jwt.encode({"x": 1}, settings.cookie_secret, algorithm="HS256")
    with pytest.raises(CookieSignatureError):
        unsign_value(token)


def test_session_cookie_attributes():
    response = Response()
    set_session_cookie(response, "abc")
    header = response.headers["set-cookie"]
    assert header.startswith(f"{settings.cookie_name}=")
    assert "HttpOnly" in header
    assert "SameSite=lax" in header
    assert "Path=/" in header
    assert f"Max-Age={settings.session_ttl_days * 86400}" in header
    assert "Secure" not in header  # public base URL is http in tests


def test_session_cookie_secure_on_https(monkeypatch):
    monkeypatch.setattr(settings, "public_base_url", "https://testhub.example")
    response = Response()
    set_session_cookie(response, "abc")
    assert "Secure" in response.headers["set-cookie"]


def test_state_cookie_uses_state_name_and_short_ttl():
    response = Response()
    set_state_cookie(response, "xyz")
    header = response.headers["set-cookie"]
    assert header.startswith(f"{settings.cookie_name}_state=")
    assert "Max-Age=600" in header


def test_clear_header_expires_session_cookie():
    header = clear_session_cookie_header()
    assert header.startswith(f'{settings.cookie_name}=""')
    assert "Max-Age=0" in header
