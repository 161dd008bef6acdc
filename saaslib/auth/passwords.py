"""
Password hashing.

PBKDF2-SHA256 with a per-password random salt, stored as
``iterations$salt$hash``. Verification is constant-time.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets

ITERATIONS = 100_000

# Verified when a sign-in names an unknown email, so the response time
# does not reveal whether the account exists.
_DUMMY_HASH: str | None = None


def hash_password(password: str, iterations: int = ITERATIONS) -> str:
    """
    Hash a password using PBKDF2-SHA256.

    Returns: iterations$salt$hash format string
    """
    salt = secrets.token_hex(16)
    hash_bytes = hashlib.pbkdf2_hmac(
        'sha256',
        password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations=iterations,
    )
    return f"{iterations}${salt}${hash_bytes.hex()}"


def verify_password(password: str, password_hash: str | None) -> bool:
    """Verify a password against its hash."""
    if not password_hash:
        return False
    try:
        iterations, salt, stored_hash = password_hash.split('$')
        hash_bytes = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            salt.encode('utf-8'),
            iterations=int(iterations),
        )
        return secrets.compare_digest(hash_bytes.hex(), stored_hash)
    except (ValueError, AttributeError):
        return False


def dummy_hash() -> str:
    global _DUMMY_HASH
    if _DUMMY_HASH is None:
        _DUMMY_HASH = hash_password(secrets.token_hex(16))
    return _DUMMY_HASH


async def hash_password_async(password: str) -> str:
    """Hash off the event loop; PBKDF2 is CPU-bound."""
    return await asyncio.to_thread(hash_password, password)


async def verify_password_async(password: str, password_hash: str | None) -> bool:
    return await asyncio.to_thread(verify_password, password, password_hash)
