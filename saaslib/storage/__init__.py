"""
Storage abstractions.

Integration Points:
- CredentialStore   → users table / collection
- RefreshTokenStore → refresh_tokens table with a conditional-update rotate
- CodeStore         → one_time_codes table
- ResourceStore     → one table / collection per owned resource type
"""

from saaslib.storage.base import (
    CredentialStore,
    RefreshTokenStore,
    CodeStore,
    ResourceStore,
    StorageProvider,
    guarded,
)
from saaslib.storage.memory import create_memory_storage

__all__ = [
    "CredentialStore",
    "RefreshTokenStore",
    "CodeStore",
    "ResourceStore",
    "StorageProvider",
    "guarded",
    "create_memory_storage",
]
