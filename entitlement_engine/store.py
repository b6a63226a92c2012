"""
Persistence for the last resolved snapshot and the local override flag.

Pure storage: no reconciliation rules live here. A corrupt or unparseable
persisted snapshot reads back as None.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from .config import DEFAULT_NAMESPACE, DEFAULT_STALENESS_DAYS
from .errors import SnapshotDecodeError
from .models import EntitlementSnapshot, decode_snapshot, encode_snapshot, utcnow
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "snapshot:v1"
LOCAL_OVERRIDE_KEY = "local_override:v1"


def _namespaced(namespace: str, key: str) -> str:
    return f"{namespace}:{key}"


class SnapshotStore:
    """Last resolved EntitlementSnapshot with age-bounded freshness."""

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        staleness_window: timedelta = timedelta(days=DEFAULT_STALENESS_DAYS),
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._storage = storage
        self._key = _namespaced(namespace, SNAPSHOT_KEY)
        self.staleness_window = staleness_window
        self._ttl_seconds = ttl_seconds

    async def read(self) -> Optional[EntitlementSnapshot]:
        raw = await self._storage.get(self._key)
        if not raw:
            return None
        try:
            return decode_snapshot(json.loads(raw))
        except (ValueError, SnapshotDecodeError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning("Discarding unreadable entitlement snapshot", extra={"error": str(e)})
            return None

    async def write(self, snapshot: EntitlementSnapshot) -> bool:
        payload = json.dumps(encode_snapshot(snapshot))
        return await self._storage.set(self._key, payload, ttl_seconds=self._ttl_seconds)

    async def clear(self) -> None:
        await self._storage.delete(self._key)

    @staticmethod
    def age_of(snapshot: EntitlementSnapshot, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - snapshot.checked_at

    def is_fresh(self, snapshot: Optional[EntitlementSnapshot], now: Optional[datetime] = None) -> bool:
        """Within the staleness window. A checked_at in the future is never fresh."""
        if snapshot is None:
            return False
        age = self.age_of(snapshot, now)
        return timedelta(0) <= age <= self.staleness_window


class LocalOverrideFlag:
    """
    Advisory Pro grant persisted after a one-time unlock code is redeemed.

    Stored as the literal "true"/"false"; anything else reads as unset.
    """

    def __init__(self, storage: KeyValueStore, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._storage = storage
        self._key = _namespaced(namespace, LOCAL_OVERRIDE_KEY)

    async def is_set(self) -> bool:
        raw = await self._storage.get(self._key)
        return (raw or "").strip().lower() == "true"

    async def grant(self) -> None:
        await self._storage.set(self._key, "true")

    async def clear(self) -> None:
        await self._storage.set(self._key, "false")
