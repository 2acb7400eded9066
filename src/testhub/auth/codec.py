"""Opaque tokens, digests and API key parsing.

Learn: An opaque token is just 32 random bytes, hex-encoded. Its only
property is equality against a stored reference. It is used for:
- session ids (stored as-is server-side, wrapped in a signed cookie)
- email verification / password reset tokens (only sha256 stored)
- OAuth CSRF state

Any presented secret is compared to its stored digest with
constant_time_equal_hex, so response time never reveals how many
leading bytes matched.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

TOKEN_BYTES = 32

API_KEY_SEPARATOR = "."
API_KEY_MIN_PREFIX = 6
API_KEY_MIN_SECRET = 16


@dataclass(frozen=True)
class ParsedApiKey:
    prefix: str
    secret: str


@dataclass(frozen=True)
class GeneratedApiKey:
    """A freshly minted key. plain_text is shown once and never stored."""

    plain_text: str
    prefix: str
    hash: str


def generate_opaque_token() -> str:
    """Cryptographically random token, 32 bytes hex-encoded (64 chars)."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_opaque(raw: str) -> str:
    """sha256 hex digest of a raw token or secret."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def constant_time_equal_hex(a: str, b: str) -> bool:
    """Compare two hex digests in constant time.

    Returns False straight away when either value is not valid hex or the
    decoded byte lengths differ; only equal-length byte strings reach the
    constant-time comparison.
    """
    try:
        a_bytes = bytes.fromhex(a)
        b_bytes = bytes.fromhex(b)
    except ValueError:
        return False
    if len(a_bytes) != len(b_bytes):
        return False
    return secrets.compare_digest(a_bytes, b_bytes)


def parse_api_key(presented: str) -> Optional[ParsedApiKey]:
    """Split "<prefix>.<secret>", or None if it can't be a valid key.

    Rejected: no separator, empty prefix or secret, prefix shorter than
    6 chars, secret shorter than 16 chars.
    """
    value = presented.strip()
    i = value.find(API_KEY_SEPARATOR)
    if i <= 0 or i == len(value) - 1:
        return None

    prefix, secret = value[:i], value[i + 1:]
    if len(prefix) < API_KEY_MIN_PREFIX or len(secret) < API_KEY_MIN_SECRET:
        return None
    return ParsedApiKey(prefix=prefix, secret=secret)


def generate_api_key() -> GeneratedApiKey:
    """Mint a new API key: 16-char hex prefix, 64-char hex secret."""
    prefix = secrets.token_hex(8)
    secret = secrets.token_hex(TOKEN_BYTES)
    return GeneratedApiKey(
        plain_text=f"{prefix}{API_KEY_SEPARATOR}{secret}",
        prefix=prefix,
        hash=hash_opaque(secret),
    )
