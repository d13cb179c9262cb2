"""
Engine wiring: builds every component from ``Settings`` and runs them.

Usage::

    settings = get_settings()
    client = await create_supabase_client()
    engine = build_engine(settings, client, CredentialCipher.from_env())
    await engine.start()
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from publication_engine.adapters.base import AdapterRegistry, build_adapter_registry
from publication_engine.audit import AuditSink
from publication_engine.config import Settings
from publication_engine.credentials.cache import CredentialCache
from publication_engine.database import (
    SupabaseAuditWriter,
    SupabaseCredentialStore,
    SupabaseJobStore,
)
from publication_engine.encryption import CredentialCipher
from publication_engine.exceptions import CredentialStoreError
from publication_engine.scheduling.lifecycle import JobLifecycle
from publication_engine.scheduling.publishing_scheduler import (
    PublishingScheduler,
    TickReport,
)
from publication_engine.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class PublicationEngine:
    """All engine components, wired together by :func:`build_engine`."""

    settings: Settings
    job_store: SupabaseJobStore
    credential_store: SupabaseCredentialStore
    credential_cache: CredentialCache
    adapters: AdapterRegistry
    audit_sink: AuditSink
    lifecycle: JobLifecycle
    scheduler: PublishingScheduler

    async def warm_cache(self) -> None:
        """Load every credential; on failure start with a cold cache."""
        try:
            await self.credential_cache.reload()
        except CredentialStoreError as exc:
            logger.warning("[ENGINE] Starting with a cold credential cache: %s", exc)

    async def start(self) -> None:
        """Warm the cache, subscribe to credential changes, run the scheduler.

        Returns when :meth:`stop` is called.
        """
        logger.info(
            "[ENGINE] Starting (platforms=%s, tick=%ds)",
            ", ".join(self.adapters.platforms),
            self.settings.tick_interval_seconds,
        )
        await self.warm_cache()
        try:
            await self.credential_cache.subscribe()
        except Exception:
            # Cache stays usable, only change notifications are lost
            logger.exception("[ENGINE] Credential change feed subscription failed")
        await self.scheduler.start()

    async def run_once(self) -> TickReport:
        """Warm the cache and run a single tick."""
        await self.warm_cache()
        try:
            return await self.scheduler.run_tick()
        finally:
            await self.audit_sink.flush()

    async def stop(self) -> None:
        """Stop the scheduler and flush pending audit writes."""
        await self.scheduler.stop()
        await self.credential_cache.wait_for_pending()
        await self.audit_sink.flush()
        logger.info("[ENGINE] Stopped")


def make_token_saver(
    credential_store: SupabaseCredentialStore,
    cipher: CredentialCipher,
    cache: CredentialCache,
    platform: str = "twitter",
) -> Callable[[str, Dict[str, Any]], Any]:
    """Return the callback that persists a refreshed OAuth bundle.

    The bundle is encrypted and written over the existing credential row,
    then put straight into the cache.
    """

    async def save(tenant_id: str, bundle: Dict[str, Any]) -> None:
        scope = cache.scope_for(tenant_id, platform)
        await credential_store.save_credential(scope, cipher.encrypt_json(bundle))
        cache.prime(tenant_id, platform, bundle)
        logger.info("[ENGINE] Refreshed %s token saved for tenant %s", platform, tenant_id)

    return save


def build_engine(
    settings: Settings,
    client: "AsyncClient",  # noqa: F821
    cipher: CredentialCipher,
    clock: Callable[[], datetime] = utc_now,
    ticker: Optional[object] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PublicationEngine:
    """Wire stores, cache, adapters, audit sink, lifecycle and scheduler.

    Args:
        settings: Engine settings.
        client: Supabase ``AsyncClient`` shared by all stores.
        cipher: Cipher for stored credentials.
        clock: Returns the current UTC time.
        ticker: Optional tick source replacing the interval ticker.
        transport: Optional ``httpx`` transport for every adapter.
    """
    job_store = SupabaseJobStore(client, table=settings.jobs_table)
    credential_store = SupabaseCredentialStore(client, table=settings.credentials_table)
    audit_sink = AuditSink(
        writer=SupabaseAuditWriter(client, table=settings.audit_table),
        log_dir=settings.audit_log_dir,
    )

    cache = CredentialCache(
        credential_store,
        cipher,
        settings.tenant_scoped_platforms,
        audit_sink=audit_sink,
        store_timeout_seconds=settings.store_timeout_seconds,
    )
    adapters = build_adapter_registry(
        settings,
        token_saver=make_token_saver(credential_store, cipher, cache),
        transport=transport,
    )
    lifecycle = JobLifecycle(
        job_store,
        audit_sink=audit_sink,
        store_timeout_seconds=settings.store_timeout_seconds,
        clock=clock,
    )
    scheduler = PublishingScheduler(
        job_store,
        lifecycle,
        cache,
        adapters,
        audit_sink=audit_sink,
        ticker=ticker,
        clock=clock,
        tick_interval_seconds=settings.tick_interval_seconds,
        max_concurrent_dispatches=settings.max_concurrent_dispatches,
        store_timeout_seconds=settings.store_timeout_seconds,
        dispatch_timeout_seconds=settings.dispatch_timeout_seconds,
        stuck_timeout_minutes=settings.stuck_timeout_minutes,
    )

    return PublicationEngine(
        settings=settings,
        job_store=job_store,
        credential_store=credential_store,
        credential_cache=cache,
        adapters=adapters,
        audit_sink=audit_sink,
        lifecycle=lifecycle,
        scheduler=scheduler,
    )


__all__ = [
    "PublicationEngine",
    "build_engine",
    "make_token_saver",
]
