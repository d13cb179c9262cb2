"""
Credential data models: scopes, scope keys and credential records.

A credential is either global (one record per platform, shared by every
tenant) or tenant-scoped (one record per tenant and platform).  The scope is
a tagged value and ``scope_key()`` is the only place that turns it into the
string used by the cache maps and the credential store.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from publication_engine.exceptions import ValidationError
from publication_engine.utils import normalize_platform


# =============================================================================
# SCOPES
# =============================================================================


@dataclass(frozen=True)
class GlobalScope:
    """Credential shared by all tenants for one platform."""

    platform: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "platform", normalize_platform(self.platform))


@dataclass(frozen=True)
class TenantScope:
    """Credential owned by a single tenant for one platform."""

    tenant_id: str
    platform: str

    def __post_init__(self) -> None:
        if not self.tenant_id or not str(self.tenant_id).strip():
            raise ValidationError("tenant_id cannot be empty for a tenant scope")
        object.__setattr__(self, "platform", normalize_platform(self.platform))


Scope = Union[GlobalScope, TenantScope]


def scope_key(scope: Scope) -> str:
    """Return the canonical key for *scope*.

    ``"<platform>"`` for a global scope, ``"<tenant_id>:<platform>"`` for a
    tenant scope.  The tenant id is kept verbatim.
    """
    if isinstance(scope, TenantScope):
        return f"{scope.tenant_id}:{scope.platform}"
    return scope.platform


# =============================================================================
# RECORDS
# =============================================================================


@dataclass
class EncryptedCredential:
    """A credential row as stored: platform, optional owner, encrypted keys.

    Attributes:
        platform: Normalized platform identifier.
        ciphertext: ``"<iv hex>:<ciphertext hex>"`` token.
        tenant_id: Owning tenant (``user_id`` column), ``None`` when the
            row has no owner.
    """

    platform: str
    ciphertext: str
    tenant_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.platform = normalize_platform(self.platform)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EncryptedCredential":
        """Build a record from an ``api_configurations`` row."""
        return cls(
            platform=row["platform"],
            ciphertext=row["keys"],
            tenant_id=row.get("user_id"),
        )


@dataclass
class CredentialRecord:
    """A decrypted credential ready to hand to a dispatch adapter."""

    scope: Scope
    secret: Dict[str, Any] = field(repr=False)

    @property
    def key(self) -> str:
        return scope_key(self.scope)


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "GlobalScope",
    "TenantScope",
    "Scope",
    "scope_key",
    "EncryptedCredential",
    "CredentialRecord",
]
