from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Sequence

from .billing import PlatformBillingProvider, PlatformBillingSource
from .config import EngineConfig
from .models import EntitlementSnapshot, SnapshotSource, Tier, utcnow
from .overrides import AdminOverrideLayer
from .reconciler import UNVERIFIED_ERROR, AuditSink, SignalSource, SourceReconciler
from .remote import RemoteAuthorityClient, SessionCredentials
from .storage import KeyValueStore
from .store import LocalOverrideFlag, SnapshotStore

logger = logging.getLogger(__name__)

REFRESH_IN_PROGRESS_ERROR = "Entitlement refresh in progress"


class RefreshOrchestrator:
    """
    Public entry point: serve the cached snapshot or run a reconciliation pass.

    Every snapshot handed to a caller has passed through the admin override
    layer last. resolve() never raises for runtime failures; they come back
    as a stale snapshot with error set.

    Single-flight: while one resolve() is doing work, other callers get the
    last known snapshot instead of starting a second live pass.
    """

    def __init__(
        self,
        *,
        store: SnapshotStore,
        reconciler: SourceReconciler,
        overrides: AdminOverrideLayer,
        override_flag: LocalOverrideFlag,
        billing: Optional[PlatformBillingSource] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable = utcnow,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._overrides = overrides
        self._override_flag = override_flag
        self._billing = billing
        self._audit_sink = audit_sink or (lambda event, payload: None)
        self._clock = clock
        self._refreshing = False
        # Bumped by restore_purchases(); a pass started under an older value must not persist.
        self._restore_generation = 0
        self._last_known: Optional[EntitlementSnapshot] = None
        self._owned_resources: List = []

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        billing_provider: Optional[PlatformBillingProvider] = None,
        credentials: Optional[SessionCredentials] = None,
        extra_receipt_sources: Sequence[SignalSource] = (),
        audit_sink: Optional[AuditSink] = None,
    ) -> "RefreshOrchestrator":
        """Wire storage, signal sources and layers from an EngineConfig."""
        storage = KeyValueStore(config.redis_url)
        store = SnapshotStore(
            storage,
            namespace=config.namespace,
            staleness_window=config.staleness_window,
        )
        override_flag = LocalOverrideFlag(storage, namespace=config.namespace)
        billing = PlatformBillingSource(billing_provider, config.billing_api_key)

        receipt_sources: List[SignalSource] = []
        if billing.is_available:
            receipt_sources.append(billing)
        receipt_sources.extend(extra_receipt_sources)

        remote = None
        if config.status_url:
            remote = RemoteAuthorityClient(
                config.status_url,
                credentials,
                timeout_seconds=config.status_timeout_seconds,
                client_name=config.client_name,
                install_id=config.install_id,
            )

        orchestrator = cls(
            store=store,
            reconciler=SourceReconciler(
                receipt_sources=receipt_sources,
                authority=remote,
                override_flag=override_flag,
                audit_sink=audit_sink,
            ),
            overrides=AdminOverrideLayer(storage, namespace=config.namespace, audit_sink=audit_sink),
            override_flag=override_flag,
            billing=billing,
            audit_sink=audit_sink,
        )
        orchestrator._owned_resources = [r for r in (remote, storage) if r is not None]
        return orchestrator

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    @property
    def last_known(self) -> Optional[EntitlementSnapshot]:
        """Last snapshot produced by this instance, before admin override."""
        return self._last_known

    async def close(self) -> None:
        for resource in self._owned_resources:
            await resource.close()

    async def resolve(self, *, force_refresh: bool = False) -> EntitlementSnapshot:
        # Check-and-set happens before the first await, so it is atomic on the loop.
        if self._refreshing:
            logger.debug("Resolve requested during in-flight refresh; serving last known")
            return await self._overrides.apply(await self._best_known())

        self._refreshing = True
        generation = self._restore_generation
        try:
            snapshot = await self._resolve_unguarded(force_refresh, generation)
        except Exception as e:
            logger.exception("Entitlement resolution failed", extra={"force_refresh": force_refresh})
            snapshot = await self._failure_snapshot(str(e) or type(e).__name__)
        finally:
            self._refreshing = False

        self._last_known = snapshot
        return await self._overrides.apply(snapshot)

    async def _resolve_unguarded(self, force_refresh: bool, generation: int) -> EntitlementSnapshot:
        now = self._clock()
        cached = await self._store.read()
        fresh = self._store.is_fresh(cached, now)

        if fresh and not force_refresh:
            return await self._serve_cached(cached, now)

        snapshot = await self._reconciler.reconcile(previous=cached if fresh else None, now=now)
        if self._restore_generation != generation and self._last_known is not None:
            logger.info("Live pass superseded by restored purchases; keeping restored snapshot")
            return self._last_known
        if not await self._store.write(snapshot):
            logger.warning("Entitlement snapshot not persisted", extra={"tier": snapshot.tier.value})
        logger.info("Entitlements resolved", extra={
            "tier": snapshot.tier.value,
            "source": snapshot.source.value,
            "is_stale": snapshot.is_stale,
            "force_refresh": force_refresh,
        })
        return snapshot

    async def _serve_cached(self, cached: EntitlementSnapshot, now) -> EntitlementSnapshot:
        served = cached.relabel(source=SnapshotSource.CACHE, is_stale=False)
        if not await self._override_flag.is_set():
            return served

        # Bounded revalidation so an expired code grant is enforced even on the fast path.
        result = await self._reconciler.check_authority()
        if result is not None and result.authoritative:
            if result.is_pro:
                return served.relabel(tier=Tier.PRO, error=None)

            # Revoked. A billing-sourced tier is independent of the code grant.
            keeps_tier = cached.source is SnapshotSource.PLATFORM_BILLING
            revoked = EntitlementSnapshot(
                tier=cached.tier if keeps_tier else Tier.FREE,
                checked_at=now,
                source=cached.source if keeps_tier else SnapshotSource.NONE,
            )
            await self._store.write(revoked)
            return revoked.relabel(source=SnapshotSource.CACHE)

        error = (result.error if result is not None else None) or UNVERIFIED_ERROR
        return served.relabel(tier=Tier.PRO, is_stale=True, error=error)

    async def _best_known(self, error: str = REFRESH_IN_PROGRESS_ERROR) -> EntitlementSnapshot:
        """Last known snapshot, else a fresh cached one, else Free marked stale with error."""
        if self._last_known is not None:
            return self._last_known
        try:
            cached = await self._store.read()
        except Exception:
            logger.exception("Entitlement snapshot read failed while serving best known")
            cached = None
        if cached is not None and self._store.is_fresh(cached, self._clock()):
            return cached.relabel(source=SnapshotSource.CACHE)
        return EntitlementSnapshot(
            tier=Tier.FREE,
            checked_at=self._clock(),
            source=SnapshotSource.NONE,
            is_stale=True,
            error=error,
        )

    async def _failure_snapshot(self, message: str) -> EntitlementSnapshot:
        base = await self._best_known(error=message)
        return base.relabel(is_stale=True, error=message)

    async def restore_purchases(self) -> EntitlementSnapshot:
        """
        Restore platform receipts, then resolve.

        Falls back to a plain resolve() when billing is not configured. An empty
        restore runs a full live pass rather than overwriting other grants.
        Provider errors propagate to the caller. A restore that lands while a
        live pass is in flight wins over that pass's result.
        """
        if self._billing is None or not self._billing.is_available:
            return await self.resolve()

        active = await self._billing.restore_purchases()
        if active is None or not (active.pro or active.pro_trial):
            return await self.resolve(force_refresh=True)

        snapshot = EntitlementSnapshot(
            tier=Tier.PRO if active.pro else Tier.PRO_TRIAL,
            checked_at=self._clock(),
            source=SnapshotSource.PLATFORM_BILLING,
        )
        self._restore_generation += 1
        self._last_known = snapshot
        await self._store.write(snapshot)
        return await self._overrides.apply(snapshot)

    async def grant_local_override(self) -> None:
        """Record a redeemed one-time code. Subsequent resolves grant Pro until revoked."""
        await self._override_flag.grant()
        logger.info("Local override granted")
        self._audit_sink("entitlements.local_override.granted", {"occurred_at": utcnow().isoformat()})

    async def clear_local_override(self) -> None:
        await self._override_flag.clear()
        cached = await self._store.read()
        if cached is not None and cached.source is SnapshotSource.LOCAL_OVERRIDE:
            # The cached grant came only from the flag; force a live pass next time.
            await self._store.clear()
            self._last_known = None
        logger.info("Local override cleared")
        self._audit_sink("entitlements.local_override.cleared", {"occurred_at": utcnow().isoformat()})

    async def get_admin_override_tier(self):
        return await self._overrides.get_tier()

    async def set_admin_override_tier(self, tier, *, actor_roles: Iterable[str]):
        return await self._overrides.set_tier(tier, actor_roles=actor_roles)

    async def clear_admin_override_tier(self) -> None:
        await self._overrides.clear_tier()

    async def reset(self) -> None:
        """Sign-out: drop the persisted snapshot and the local override flag."""
        await self._store.clear()
        await self._override_flag.clear()
        self._last_known = None
        logger.info("Entitlement state reset")
        self._audit_sink("entitlements.reset", {"occurred_at": utcnow().isoformat()})
