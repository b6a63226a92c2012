"""
Admin override tier. Governance: internal operators only.

A persisted tier (real/free/trial/pro) that replaces the reconciled tier on
the way out to callers. It is a display/testing override, never a trust
signal: snapshots are persisted before it is applied, and the reconciler
ignores admin-sourced snapshots for sticky Pro.
"""

import logging
from typing import Callable, Iterable, Optional

from .config import DEFAULT_NAMESPACE
from .errors import AdminOverrideError
from .models import AdminOverrideTier, EntitlementSnapshot, SnapshotSource, utcnow
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

ADMIN_OVERRIDE_KEY = "admin_override:v1"

# Role names that may set an admin override tier
ALLOWED_OVERRIDE_ROLES = frozenset({"super_admin"})


def can_manage_admin_override(roles: Iterable[str]) -> bool:
    """True if the actor holds an operator role."""
    return any(str(r).strip().lower() in ALLOWED_OVERRIDE_ROLES for r in roles)


class AdminOverrideLayer:
    """Persisted admin tier plus the apply() transformation."""

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        audit_sink: Optional[Callable[[str, dict], None]] = None,
    ) -> None:
        self._storage = storage
        self._key = f"{namespace}:{ADMIN_OVERRIDE_KEY}"
        self._audit_sink = audit_sink or (lambda event, payload: None)

    async def get_tier(self) -> AdminOverrideTier:
        return AdminOverrideTier.parse(await self._storage.get(self._key))

    async def set_tier(self, tier, *, actor_roles: Iterable[str]) -> AdminOverrideTier:
        """Persist an override tier. Raises if the actor is not an operator or the tier is unknown."""
        if not can_manage_admin_override(actor_roles):
            raise AdminOverrideError(
                "Only super admins can set the admin override tier",
                error_code="ADMIN_OVERRIDE_FORBIDDEN",
            )
        try:
            parsed = AdminOverrideTier(str(getattr(tier, "value", tier)).strip().lower())
        except ValueError as e:
            raise AdminOverrideError(f"Unknown admin override tier: {tier!r}") from e

        if parsed is AdminOverrideTier.REAL:
            await self.clear_tier()
            return parsed

        await self._storage.set(self._key, parsed.value)
        logger.info("Admin override tier set", extra={"tier": parsed.value})
        self._audit_sink("entitlements.admin_override.set", {
            "tier": parsed.value,
            "occurred_at": utcnow().isoformat(),
        })
        return parsed

    async def clear_tier(self) -> None:
        await self._storage.delete(self._key)
        logger.info("Admin override tier cleared")
        self._audit_sink("entitlements.admin_override.cleared", {
            "occurred_at": utcnow().isoformat(),
        })

    async def apply(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        """Return snapshot with the forced tier (checked_at preserved), or unchanged when REAL."""
        forced = (await self.get_tier()).forced_tier()
        if forced is None:
            return snapshot
        return snapshot.relabel(tier=forced, source=SnapshotSource.ADMIN_OVERRIDE)
