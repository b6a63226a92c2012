from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from .errors import SnapshotDecodeError

SNAPSHOT_SCHEMA_VERSION = 1

# Entitlement identifiers reported by the platform billing SDK.
PRO_ENTITLEMENT_ID = "pro"
PRO_TRIAL_ENTITLEMENT_ID = "pro_tools_trial"


class Tier(str, Enum):
    """Resolved entitlement level."""
    FREE = "free"
    PRO_TRIAL = "pro_trial"
    PRO = "pro"


class SnapshotSource(str, Enum):
    """Provenance of a snapshot."""
    PLATFORM_BILLING = "platform_billing"
    REMOTE_AUTHORITY = "remote_authority"
    LOCAL_OVERRIDE = "local_override"
    ADMIN_OVERRIDE = "admin_override"
    CACHE = "cache"
    NONE = "none"


class AdminOverrideTier(str, Enum):
    """Operator-forced tier. REAL means no override."""
    REAL = "real"
    FREE = "free"
    TRIAL = "trial"
    PRO = "pro"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "AdminOverrideTier":
        """Lenient parse for persisted values; anything unknown is REAL."""
        normalized = str(raw or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.REAL

    def forced_tier(self) -> Optional[Tier]:
        return _ADMIN_TIER_MAP.get(self)


_ADMIN_TIER_MAP = {
    AdminOverrideTier.FREE: Tier.FREE,
    AdminOverrideTier.TRIAL: Tier.PRO_TRIAL,
    AdminOverrideTier.PRO: Tier.PRO,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EntitlementSnapshot:
    """One resolution result. Superseded by the next one, never mutated."""

    tier: Tier
    checked_at: datetime
    source: SnapshotSource
    is_stale: bool = False
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.checked_at.tzinfo is None:
            raise ValueError("checked_at must be timezone-aware")
        object.__setattr__(self, "tier", Tier(self.tier))
        object.__setattr__(self, "source", SnapshotSource(self.source))

    @property
    def is_pro(self) -> bool:
        return self.tier is Tier.PRO

    @property
    def is_pro_trial(self) -> bool:
        return self.tier is Tier.PRO_TRIAL

    def relabel(self, **changes) -> "EntitlementSnapshot":
        return replace(self, **changes)


@dataclass(frozen=True)
class ActiveEntitlements:
    """What the platform billing provider currently reports as active."""

    pro: bool = False
    pro_trial: bool = False

    @classmethod
    def from_active_ids(cls, active_ids: Iterable[str]) -> "ActiveEntitlements":
        ids = {str(i).strip() for i in active_ids}
        return cls(pro=PRO_ENTITLEMENT_ID in ids, pro_trial=PRO_TRIAL_ENTITLEMENT_ID in ids)


@dataclass(frozen=True)
class SignalCheck:
    """
    Outcome of asking one signal source about entitlement.

    authoritative is False when the source could not give a trustworthy
    answer (not configured, unreachable, bad status, malformed body).
    """

    source: SnapshotSource
    authoritative: bool
    is_pro: bool = False
    is_trial: bool = False
    error: Optional[str] = None

    @property
    def is_authoritative_negative(self) -> bool:
        return self.authoritative and not self.is_pro and not self.is_trial


def encode_snapshot(snapshot: EntitlementSnapshot) -> dict:
    return {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "tier": snapshot.tier.value,
        "checked_at": snapshot.checked_at.isoformat(),
        "source": snapshot.source.value,
        "is_stale": snapshot.is_stale,
        "error": snapshot.error,
    }


def decode_snapshot(raw: object) -> EntitlementSnapshot:
    if not isinstance(raw, dict):
        raise SnapshotDecodeError("snapshot payload must be an object")
    try:
        version = int(raw.get("schema_version", SNAPSHOT_SCHEMA_VERSION))
    except (TypeError, ValueError) as exc:
        raise SnapshotDecodeError(f"malformed snapshot schema version: {exc}") from exc
    if version != SNAPSHOT_SCHEMA_VERSION:
        raise SnapshotDecodeError("Unsupported snapshot schema version")

    try:
        checked_at = datetime.fromisoformat(raw["checked_at"])
        if checked_at.tzinfo is None:
            checked_at = checked_at.replace(tzinfo=timezone.utc)
        error = raw.get("error")
        return EntitlementSnapshot(
            tier=Tier(raw["tier"]),
            checked_at=checked_at,
            source=SnapshotSource(raw["source"]),
            is_stale=bool(raw.get("is_stale", False)),
            error=error if isinstance(error, str) else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SnapshotDecodeError(f"malformed snapshot: {exc}") from exc
