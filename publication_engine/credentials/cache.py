"""
In-memory cache of decrypted platform credentials.

``CredentialCache`` keeps two maps, one for global credentials keyed by
platform and one for tenant credentials keyed by ``tenant_id:platform``.
Both maps are only ever replaced whole, so a reader always sees either the
old or the new snapshot and never a partially rebuilt one.

Misses are filled from the credential store one key at a time.  A full
reload (startup, change notification) rebuilds both maps from the store
and bumps a generation counter so a per-key fill that started before the
reload cannot write older data over the fresh snapshot.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from publication_engine.audit import AuditEventKind
from publication_engine.credentials.models import (
    CredentialRecord,
    GlobalScope,
    Scope,
    TenantScope,
    scope_key,
)
from publication_engine.exceptions import (
    CredentialNotFoundError,
    CredentialResolutionError,
    CredentialStoreError,
    EncryptionError,
    RetryExhaustedError,
    ValidationError,
)
from publication_engine.utils import normalize_platform

logger = logging.getLogger(__name__)


class CredentialCache:
    """Resolves the dispatch secret for a ``(tenant_id, platform)`` pair.

    Args:
        credential_store: Store with ``list_credentials()``,
            ``get_credential(scope)`` and ``subscribe_to_changes(callback)``
            (:class:`~publication_engine.database.SupabaseCredentialStore`).
        cipher: :class:`~publication_engine.encryption.CredentialCipher`
            used to decrypt stored keys.
        tenant_scoped_platforms: Platforms whose credentials belong to a
            tenant.  Read once here and never changed afterwards.
        audit_sink: Optional :class:`~publication_engine.audit.AuditSink`
            notified when a reload fails.
        store_timeout_seconds: Bound on every credential store call.
    """

    def __init__(
        self,
        credential_store: "SupabaseCredentialStore",  # noqa: F821
        cipher: "CredentialCipher",  # noqa: F821
        tenant_scoped_platforms: Iterable[str],
        audit_sink: Optional["AuditSink"] = None,  # noqa: F821
        store_timeout_seconds: float = 10.0,
    ) -> None:
        self.credential_store = credential_store
        self.cipher = cipher
        self.audit_sink = audit_sink
        self.store_timeout_seconds = store_timeout_seconds
        self._tenant_scoped: frozenset = frozenset(
            normalize_platform(p) for p in tenant_scoped_platforms
        )

        self._global: Dict[str, Dict[str, Any]] = {}
        self._tenant: Dict[str, Dict[str, Any]] = {}
        self._generation: int = 0
        self._reload_lock = asyncio.Lock()

        # Track pending reload tasks to prevent garbage collection
        self._pending_tasks: Set["asyncio.Task[None]"] = set()

    # ================================================================
    # SCOPE ROUTING
    # ================================================================

    def is_tenant_scoped(self, platform: str) -> bool:
        return normalize_platform(platform) in self._tenant_scoped

    def scope_for(self, tenant_id: Optional[str], platform: str) -> Scope:
        """Return the credential scope for a lookup.

        Raises:
            CredentialResolutionError: If *platform* is tenant-scoped and
                *tenant_id* is missing or blank.
        """
        platform = normalize_platform(platform)
        if platform not in self._tenant_scoped:
            return GlobalScope(platform)
        if not tenant_id or not str(tenant_id).strip():
            raise CredentialResolutionError(
                f"Platform '{platform}' requires a tenant but none was given"
            )
        return TenantScope(tenant_id, platform)

    # ================================================================
    # LOOKUP
    # ================================================================

    async def resolve(self, tenant_id: Optional[str], platform: str) -> Dict[str, Any]:
        """Return the decrypted secret for *tenant_id* on *platform*.

        Raises:
            CredentialNotFoundError: If the store has no record.
            CredentialResolutionError: If the store fails or times out, or
                the record cannot be decrypted.
        """
        scope = self.scope_for(tenant_id, platform)
        key = scope_key(scope)
        tenant_map = isinstance(scope, TenantScope)

        snapshot = self._tenant if tenant_map else self._global
        secret = snapshot.get(key)
        if secret is not None:
            return secret

        logger.debug("[CREDENTIALS] Cache miss for %s, loading from store", key)
        generation = self._generation
        try:
            record = await asyncio.wait_for(
                self.credential_store.get_credential(scope),
                timeout=self.store_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise CredentialResolutionError(
                f"Credential store timed out loading '{key}'"
            ) from exc
        except CredentialStoreError as exc:
            raise CredentialResolutionError(
                f"Credential store unavailable for '{key}': {exc}"
            ) from exc

        if record is None:
            raise CredentialNotFoundError(key)

        try:
            secret = self.cipher.decrypt_json(record.ciphertext)
        except EncryptionError as exc:
            raise CredentialResolutionError(
                f"Credential for '{key}' could not be decrypted"
            ) from exc

        if generation == self._generation:
            self._store_entry(key, secret, tenant_map)
        else:
            logger.debug(
                "[CREDENTIALS] Discarding fill for %s, cache was reloaded", key
            )
        return secret

    def prime(self, tenant_id: Optional[str], platform: str, secret: Dict[str, Any]) -> None:
        """Put a freshly written secret into the cache (e.g. a refreshed token)."""
        scope = self.scope_for(tenant_id, platform)
        self._store_entry(scope_key(scope), secret, isinstance(scope, TenantScope))

    def _store_entry(self, key: str, secret: Dict[str, Any], tenant_map: bool) -> None:
        # Copy-and-swap: readers holding the old dict are unaffected
        if tenant_map:
            updated = dict(self._tenant)
            updated[key] = secret
            self._tenant = updated
        else:
            updated = dict(self._global)
            updated[key] = secret
            self._global = updated

    # ================================================================
    # RELOAD
    # ================================================================

    async def reload(self) -> None:
        """Rebuild both maps from the credential store.

        On failure the previous maps stay in place, the failure is audited
        and ``CredentialStoreError`` is raised.
        """
        async with self._reload_lock:
            self._generation += 1
            try:
                records = await asyncio.wait_for(
                    self.credential_store.list_credentials(),
                    timeout=self.store_timeout_seconds,
                )
            except (asyncio.TimeoutError, CredentialStoreError, RetryExhaustedError) as exc:
                message = f"Credential reload failed: {str(exc) or 'timed out'}"
                logger.error("[CREDENTIALS] %s (keeping previous cache)", message)
                if self.audit_sink is not None:
                    await self.audit_sink.record(
                        None, AuditEventKind.CREDENTIAL_RELOAD_FAILED, message
                    )
                raise CredentialStoreError(message) from exc

            new_global: Dict[str, Dict[str, Any]] = {}
            new_tenant: Dict[str, Dict[str, Any]] = {}
            skipped = 0
            for record in records:
                tenant_scoped = record.platform in self._tenant_scoped
                try:
                    if tenant_scoped:
                        scope: Scope = TenantScope(record.tenant_id, record.platform)
                    else:
                        scope = GlobalScope(record.platform)
                except ValidationError as exc:
                    logger.warning(
                        "[CREDENTIALS] Skipping %s credential without owner: %s",
                        record.platform,
                        exc,
                    )
                    skipped += 1
                    continue

                try:
                    decrypted = CredentialRecord(
                        scope, self.cipher.decrypt_json(record.ciphertext)
                    )
                except EncryptionError as exc:
                    logger.error(
                        "[CREDENTIALS] Skipping undecryptable credential %s: %s",
                        scope_key(scope),
                        exc,
                    )
                    skipped += 1
                    continue

                target = new_tenant if tenant_scoped else new_global
                if decrypted.key in target:
                    # Rows arrive in id order; the newest row wins, as in resolve()
                    logger.warning(
                        "[CREDENTIALS] Duplicate credential rows for %s, using the latest",
                        decrypted.key,
                    )
                target[decrypted.key] = decrypted.secret

            self._global, self._tenant = new_global, new_tenant
            self._generation += 1

        logger.info(
            "[CREDENTIALS] Cache reloaded (global=%d, tenant=%d, skipped=%d)",
            len(new_global),
            len(new_tenant),
            skipped,
        )

    async def invalidate_all(self) -> None:
        """Drop every cached entry by rebuilding from the store."""
        await self.reload()

    # ================================================================
    # CHANGE FEED
    # ================================================================

    def handle_change_notification(self, payload: Any = None) -> None:
        """Change-feed callback: schedule a full reload.

        Must be called from the running event loop.
        """
        logger.info("[CREDENTIALS] Credential change detected, reloading cache")
        task = asyncio.create_task(self._reload_after_change())
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    async def _reload_after_change(self) -> None:
        try:
            await self.invalidate_all()
        except CredentialStoreError as exc:
            logger.warning("[CREDENTIALS] Serving stale cache after failed reload: %s", exc)

    async def subscribe(self) -> Any:
        """Register with the credential store's change feed."""
        return await self.credential_store.subscribe_to_changes(
            self.handle_change_notification
        )

    async def wait_for_pending(self) -> None:
        """Wait for reloads triggered by change notifications."""
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)

    # ================================================================
    # INTROSPECTION
    # ================================================================

    def cached_scope_keys(self) -> List[str]:
        """Scope keys currently cached (never the secrets)."""
        return sorted(list(self._global) + list(self._tenant))

    @property
    def size(self) -> int:
        return len(self._global) + len(self._tenant)


__all__ = [
    "CredentialCache",
]
