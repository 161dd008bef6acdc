"""
Shared utility functions for saaslib.

This module contains common utilities used across the codebase.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timezone


def generate_id(prefix: str = "") -> str:
    """
    Generate a unique ID with optional prefix.
    
    Args:
        prefix: Optional prefix (e.g., "user", "fam", "rt")
        
    Returns:
        A unique ID like "user_a1b2c3d4e5f6a7b8"
    """
    uid = uuid.uuid4().hex[:16]
    return f"{prefix}_{uid}" if prefix else uid


def generate_secret(nbytes: int = 32) -> str:
    """Generate an unguessable, URL-safe opaque token."""
    return secrets.token_urlsafe(nbytes)


def hash_secret(value: str) -> str:
    """
    SHA-256 digest of an opaque token.
    
    Refresh tokens and one-time codes are stored by digest only, so a
    leaked store does not yield usable credentials.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    """Case-normalize an email address for storage and lookup."""
    return email.strip().lower()


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)
