"""Opaque tokens, constant-time comparison, API key parsing, password hashing."""

from argon2 import PasswordHasher

from testhub.auth.codec import (
    constant_time_equal_hex,
    generate_api_key,
    generate_opaque_token,
    hash_opaque,
    parse_api_key,
)
from testhub.auth.password import hash_password, needs_upgrade, verify_password


# ═══════════════════════════════════════════════════════════
# Opaque tokens
# ═══════════════════════════════════════════════════════════


def test_opaque_token_is_32_random_bytes_hex():
    a = generate_opaque_token()
    b = generate_opaque_token()
    assert len(a) == 64
    assert bytes.fromhex(a)
    assert a != b


def test_hash_opaque_is_sha256_hex():
    assert hash_opaque("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


# ═══════════════════════════════════════════════════════════
# Constant-time compare
# ═══════════════════════════════════════════════════════════


def test_constant_time_equal_hex_matches():
    digest = hash_opaque("secret")
    assert constant_time_equal_hex(digest, digest)


def test_constant_time_equal_hex_is_case_insensitive_on_bytes():
    """Comparison is on decoded bytes, not on the hex string."""
    assert constant_time_equal_hex("abcd", "ABCD")


def test_constant_time_equal_hex_length_mismatch():
    assert not constant_time_equal_hex("abcd", "abcdef")
    assert not constant_time_equal_hex("", "00")


def test_constant_time_equal_hex_invalid_hex():
    assert not constant_time_equal_hex("zz", "zz")
    assert not constant_time_equal_hex("abc", "abc")  # odd length


def test_constant_time_equal_hex_single_byte_difference():
    a = hash_opaque("secret")
    b = a[:-1] + ("0" if a[-1] != "0" else "1")
    assert not constant_time_equal_hex(a, b)


# ═══════════════════════════════════════════════════════════
# API key format
# ═══════════════════════════════════════════════════════════


def test_parse_api_key_valid():
    parsed = parse_api_key("abcdef12.0123456789abcdef")
    assert parsed is not None
    assert parsed.prefix == "abcdef12"
    assert parsed.secret == "0123456789abcdef"


def test_parse_api_key_strips_whitespace():
    parsed = parse_api_key("  abcdef.0123456789abcdef \n")
    assert parsed is not None
    assert parsed.prefix == "abcdef"


def test_parse_api_key_splits_on_first_separator():
    parsed = parse_api_key("abcdef.0123456789.abcdef")
    assert parsed is not None
    assert parsed.secret == "0123456789.abcdef"


def test_parse_api_key_rejects_bad_shapes():
    assert parse_api_key("no-separator-at-all-here") is None
    assert parse_api_key(".0123456789abcdef") is None
    assert parse_api_key("abcdef.") is None
    assert parse_api_key("abcde.0123456789abcdef") is None  # prefix < 6
    assert parse_api_key("abcdef.0123456789abcde") is None  # secret < 16
    assert parse_api_key("") is None


def test_parse_api_key_rejects_underscore_format():
    """The old "<prefix>_<secret>" shape carries no separator we accept."""
    assert parse_api_key("th_0123456789abcdef0123") is None


def test_generated_api_key_round_trips_through_parser():
    key = generate_api_key()
    parsed = parse_api_key(key.plain_text)
    assert parsed is not None
    assert parsed.prefix == key.prefix
    assert len(key.prefix) == 16
    assert hash_opaque(parsed.secret) == key.hash
    assert key.hash not in key.plain_text


# ═══════════════════════════════════════════════════════════
# Passwords
# ═══════════════════════════════════════════════════════════


def test_hash_and_verify_password():
    hashed = hash_password("hunter2-hunter2")
    assert hashed.startswith("$argon2id$")
    assert verify_password("hunter2-hunter2", hashed)
    assert not verify_password("hunter3-hunter3", hashed)


def test_password_hashes_are_salted():
    assert hash_password("same-password") != hash_password("same-password")


def test_verify_password_garbage_hash():
    assert not verify_password("whatever", "not-a-hash")


def test_weaker_argon2_hash_verifies_and_needs_upgrade():
    old = PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1).hash("old-password")
    assert verify_password("old-password", old)
    assert not verify_password("new-password", old)
    assert needs_upgrade(old)


def test_bcrypt_hash_is_not_accepted():
    bcrypt_hash = "$2b$04$abcdefghijklmnopqrstuu5FtbC5eUyM1Y2T3hXzXn0c0H0bFzqWm"
    assert not verify_password("old-password", bcrypt_hash)
    assert needs_upgrade(bcrypt_hash)


def test_current_argon2_hash_does_not_need_upgrade():
    assert not needs_upgrade(hash_password("fresh-password"))
