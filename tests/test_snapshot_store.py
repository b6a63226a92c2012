from __future__ import annotations

import json
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from entitlement_engine.errors import SnapshotDecodeError
from entitlement_engine.models import (
    SNAPSHOT_SCHEMA_VERSION,
    EntitlementSnapshot,
    SnapshotSource,
    Tier,
    decode_snapshot,
    encode_snapshot,
)
from entitlement_engine.storage import KeyValueStore
from entitlement_engine.store import LocalOverrideFlag, SnapshotStore


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value):
        self.store[key] = value

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self.store.pop(key, None)

    async def aclose(self):
        pass


class _BrokenRedis(_FakeRedis):
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value):
        raise RedisConnectionError("connection refused")


def _snapshot(now, **kwargs):
    fields = dict(tier=Tier.PRO, checked_at=now, source=SnapshotSource.PLATFORM_BILLING)
    fields.update(kwargs)
    return EntitlementSnapshot(**fields)


@pytest.mark.asyncio
async def test_write_then_read_returns_equal_snapshot(snapshot_store, now):
    snapshot = _snapshot(now, is_stale=True, error="remote unreachable")

    assert await snapshot_store.write(snapshot) is True
    assert await snapshot_store.read() == snapshot


@pytest.mark.asyncio
async def test_read_empty_store_returns_none(snapshot_store):
    assert await snapshot_store.read() is None


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [
    "{not json",
    "[]",
    '{"tier": "gold", "checked_at": "2026-01-01T00:00:00+00:00", "source": "cache"}',
    '{"tier": "pro", "source": "cache"}',
    '{"schema_version": 99, "tier": "pro", "checked_at": "2026-01-01T00:00:00+00:00", "source": "cache"}',
    '{"schema_version": null, "tier": "pro", "checked_at": "2026-01-01T00:00:00+00:00", "source": "cache"}',
    '{"schema_version": [1], "tier": "pro", "checked_at": "2026-01-01T00:00:00+00:00", "source": "cache"}',
    '{"schema_version": "v1", "tier": "pro", "checked_at": "2026-01-01T00:00:00+00:00", "source": "cache"}',
])
async def test_corrupt_payload_reads_as_none(storage, snapshot_store, raw):
    await storage.set("entitlements:snapshot:v1", raw)

    assert await snapshot_store.read() is None


def test_decode_rejects_schema_mismatch(now):
    payload = encode_snapshot(_snapshot(now))
    assert payload["schema_version"] == SNAPSHOT_SCHEMA_VERSION

    payload["schema_version"] = 999
    with pytest.raises(SnapshotDecodeError):
        decode_snapshot(payload)


def test_decode_assumes_utc_for_naive_timestamp():
    snapshot = decode_snapshot({
        "tier": "pro_trial",
        "checked_at": "2026-01-01T00:00:00",
        "source": "platform_billing",
    })

    assert snapshot.checked_at.tzinfo is not None
    assert snapshot.tier is Tier.PRO_TRIAL
    assert snapshot.is_stale is False


def test_snapshot_requires_aware_timestamp(now):
    with pytest.raises(ValueError, match="timezone-aware"):
        EntitlementSnapshot(tier=Tier.FREE, checked_at=now.replace(tzinfo=None), source=SnapshotSource.NONE)


@pytest.mark.parametrize("age,fresh", [
    (timedelta(hours=1), True),
    (timedelta(days=7), True),
    (timedelta(days=7, seconds=1), False),
    (timedelta(minutes=-5), False),
])
def test_freshness_window(snapshot_store, now, age, fresh):
    snapshot = _snapshot(now - age)

    assert SnapshotStore.age_of(snapshot, now) == age
    assert snapshot_store.is_fresh(snapshot, now) is fresh


def test_missing_snapshot_is_not_fresh(snapshot_store, now):
    assert snapshot_store.is_fresh(None, now) is False


@pytest.mark.asyncio
async def test_clear_removes_snapshot(snapshot_store, now):
    await snapshot_store.write(_snapshot(now))

    await snapshot_store.clear()

    assert await snapshot_store.read() is None


@pytest.mark.asyncio
async def test_namespaces_are_isolated(storage, now):
    device_a = SnapshotStore(storage, namespace="device-a")
    device_b = SnapshotStore(storage, namespace="device-b")

    await device_a.write(_snapshot(now))

    assert await device_b.read() is None
    assert json.loads(await storage.get("device-a:snapshot:v1"))["tier"] == "pro"


# ============================================================================
# Local override flag
# ============================================================================


@pytest.mark.asyncio
async def test_override_flag_lifecycle(override_flag):
    assert await override_flag.is_set() is False

    await override_flag.grant()
    assert await override_flag.is_set() is True

    await override_flag.clear()
    assert await override_flag.is_set() is False


@pytest.mark.asyncio
@pytest.mark.parametrize("raw,expected", [(" TRUE ", True), ("1", False), ("yes", False)])
async def test_override_flag_parses_only_literal_true(storage, raw, expected):
    await storage.set("entitlements:local_override:v1", raw)

    assert await LocalOverrideFlag(storage).is_set() is expected


# ============================================================================
# Key-value backends
# ============================================================================


@pytest.mark.asyncio
async def test_redis_backend_round_trip_with_ttl(now):
    fake = _FakeRedis()
    storage = KeyValueStore(client=fake)
    store = SnapshotStore(storage, ttl_seconds=3600)
    snapshot = _snapshot(now)

    await store.write(snapshot)

    assert storage.is_durable is True
    assert fake.ttls["entitlements:snapshot:v1"] == 3600
    assert await store.read() == snapshot


@pytest.mark.asyncio
async def test_redis_failures_degrade_to_miss(now):
    storage = KeyValueStore(client=_BrokenRedis())
    store = SnapshotStore(storage)

    assert await store.write(_snapshot(now)) is False
    assert await store.read() is None


@pytest.mark.asyncio
async def test_memory_backend_honors_ttl(monkeypatch):
    storage = KeyValueStore()
    clock = {"t": 1000.0}
    monkeypatch.setattr("entitlement_engine.storage.time.time", lambda: clock["t"])

    await storage.set("k", "v", ttl_seconds=10)
    assert await storage.get("k") == "v"

    clock["t"] += 11
    assert await storage.get("k") is None
