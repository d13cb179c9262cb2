"""Credentials subsystem: scope keys, encrypted records, the in-memory cache."""

from publication_engine.credentials.cache import CredentialCache
from publication_engine.credentials.models import (
    CredentialRecord,
    EncryptedCredential,
    GlobalScope,
    Scope,
    TenantScope,
    scope_key,
)

__all__ = [
    "CredentialCache",
    "CredentialRecord",
    "EncryptedCredential",
    "GlobalScope",
    "Scope",
    "TenantScope",
    "scope_key",
]
