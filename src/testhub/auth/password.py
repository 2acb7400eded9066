"""Password hashing utilities.

Learn: Uses argon2id (memory-hard) via argon2-cffi. The PasswordHasher
embeds its own salt and parameters in the encoded hash ("$argon2id$...").

When the hasher's parameters are raised, hashes made with the old ones
still verify, and are re-hashed on the next successful login.
Use needs_upgrade() to check whether a stored hash should be re-hashed.
"""

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    """Hash a password with argon2id."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash. Unparseable hashes never match."""
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def needs_upgrade(password_hash: str) -> bool:
    """Check if a password hash should be re-hashed with current parameters."""
    try:
        return _hasher.check_needs_rehash(password_hash)
    except InvalidHashError:
        return True
