"""
Source reconciliation: merge live signals into one EntitlementSnapshot.

Precedence, strongest first:

1. A receipt source (platform billing and any other receipt-backed source)
   reports Pro -> Pro from that source.
2. The remote authority answers cleanly with isPro=true -> Pro.
   A clean isPro=false is an authoritative negative: the local override
   flag is cleared before anything below is considered.
3. Local override flag set and no authoritative negative -> Pro.
4. Sticky Pro: the previous fresh snapshot was Pro and no authoritative
   negative was seen -> Pro, stale, carrying the underlying error.
5. A receipt source reports an active trial -> ProTrial.
6. Free.

Pro always beats ProTrial. Trial status is never sticky; it only comes from
a receipt source on the current pass.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence

from .models import EntitlementSnapshot, SignalCheck, SnapshotSource, Tier, utcnow
from .store import LocalOverrideFlag

logger = logging.getLogger(__name__)

NO_SOURCES_ERROR = "No entitlement signal sources configured"
UNVERIFIED_ERROR = "Pro status check unavailable; using last-known tier"

AuditSink = Callable[[str, dict], None]


class SignalSource(Protocol):
    """Anything that can be asked for an entitlement signal."""

    async def check(self) -> SignalCheck:
        ...


class SourceReconciler:
    """One parameterized reconciliation pass over injectable signal sources."""

    def __init__(
        self,
        *,
        receipt_sources: Sequence[SignalSource] = (),
        authority: Optional[SignalSource] = None,
        override_flag: LocalOverrideFlag,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self._receipt_sources = list(receipt_sources)
        self._authority = authority
        self._override_flag = override_flag
        self._audit_sink = audit_sink or (lambda event, payload: None)

    @property
    def has_sources(self) -> bool:
        return bool(self._receipt_sources) or self._authority is not None

    async def check_authority(self) -> Optional[SignalCheck]:
        """
        Ask only the remote authority and apply its revocation rule.

        Used by the orchestrator's bounded revalidation of the local override
        on the cache fast path.
        """
        if self._authority is None:
            return None
        result = await self._authority.check()
        if result.is_authoritative_negative:
            await self._revoke_local_override()
        return result

    async def reconcile(
        self,
        previous: Optional[EntitlementSnapshot] = None,
        now: Optional[datetime] = None,
    ) -> EntitlementSnapshot:
        """
        Run one live pass.

        Args:
            previous: Last persisted snapshot if still inside the staleness
                window; consulted only for sticky Pro
            now: Timestamp for the new snapshot
        """
        checked_at = now or utcnow()
        errors: List[str] = []

        if not self.has_sources:
            override_set = await self._override_flag.is_set()
            logger.warning("Reconciling with no signal sources configured")
            return EntitlementSnapshot(
                tier=Tier.PRO if override_set else Tier.FREE,
                checked_at=checked_at,
                source=SnapshotSource.LOCAL_OVERRIDE if override_set else SnapshotSource.NONE,
                is_stale=True,
                error=NO_SOURCES_ERROR,
            )

        trial_source: Optional[SnapshotSource] = None
        receipts_answered = False
        for receipt_source in self._receipt_sources:
            result = await receipt_source.check()
            receipts_answered = receipts_answered or result.authoritative
            if result.error:
                errors.append(result.error)
            if result.is_pro:
                return EntitlementSnapshot(
                    tier=Tier.PRO,
                    checked_at=checked_at,
                    source=result.source,
                )
            if result.is_trial and trial_source is None:
                trial_source = result.source

        authoritative_negative = False
        authority = await self.check_authority()
        # Without a remote authority, a clean receipt answer is the confirmation.
        verified = authority is None and receipts_answered
        if authority is not None:
            if authority.authoritative:
                verified = True
                if authority.is_pro:
                    return EntitlementSnapshot(
                        tier=Tier.PRO,
                        checked_at=checked_at,
                        source=SnapshotSource.REMOTE_AUTHORITY,
                    )
                authoritative_negative = True
            elif authority.error:
                errors.append(authority.error)

        error = "; ".join(errors) if errors else None

        # Past this point a clean remote answer can only have been a negative.
        if not authoritative_negative:
            if await self._override_flag.is_set():
                return EntitlementSnapshot(
                    tier=Tier.PRO,
                    checked_at=checked_at,
                    source=SnapshotSource.LOCAL_OVERRIDE,
                    is_stale=True,
                    error=error or UNVERIFIED_ERROR,
                )

            if _is_sticky_pro(previous):
                logger.info("Retaining last-known Pro across unverified pass", extra={
                    "previous_source": previous.source.value,
                    "error": error,
                })
                return EntitlementSnapshot(
                    tier=Tier.PRO,
                    checked_at=checked_at,
                    source=SnapshotSource.CACHE,
                    is_stale=True,
                    error=error or UNVERIFIED_ERROR,
                )

        if trial_source is not None:
            return EntitlementSnapshot(
                tier=Tier.PRO_TRIAL,
                checked_at=checked_at,
                source=trial_source,
                is_stale=not verified,
                error=error,
            )

        if not verified and error is None:
            error = UNVERIFIED_ERROR
        return EntitlementSnapshot(
            tier=Tier.FREE,
            checked_at=checked_at,
            source=SnapshotSource.NONE,
            is_stale=not verified,
            error=error,
        )

    async def _revoke_local_override(self) -> None:
        if not await self._override_flag.is_set():
            return
        await self._override_flag.clear()
        logger.info("Local override revoked by authoritative negative")
        self._audit_sink("entitlements.local_override.revoked", {
            "occurred_at": utcnow().isoformat(),
        })


def _is_sticky_pro(previous: Optional[EntitlementSnapshot]) -> bool:
    # Admin-forced tiers are display-only and never carry over.
    return (
        previous is not None
        and previous.is_pro
        and previous.source is not SnapshotSource.ADMIN_OVERRIDE
    )
