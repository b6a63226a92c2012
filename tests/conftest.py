import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from entitlement_engine.models import SignalCheck, SnapshotSource
from entitlement_engine.overrides import AdminOverrideLayer
from entitlement_engine.storage import KeyValueStore
from entitlement_engine.store import LocalOverrideFlag, SnapshotStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class CountingSource:
    """Signal source returning a canned check (or raising) and counting calls."""

    def __init__(self, result, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.calls = 0

    async def check(self) -> SignalCheck:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def storage():
    return KeyValueStore()


@pytest.fixture
def snapshot_store(storage):
    return SnapshotStore(storage, staleness_window=timedelta(days=7))


@pytest.fixture
def override_flag(storage):
    return LocalOverrideFlag(storage)


@pytest.fixture
def admin_layer(storage):
    return AdminOverrideLayer(storage)


@pytest.fixture
def billing_check():
    def _make(pro: bool = False, trial: bool = False) -> CountingSource:
        return CountingSource(SignalCheck(
            source=SnapshotSource.PLATFORM_BILLING,
            authoritative=True,
            is_pro=pro,
            is_trial=trial,
        ))
    return _make


@pytest.fixture
def remote_check():
    def _make(is_pro=None, error: str = "Pro status request timed out", delay: float = 0.0) -> CountingSource:
        # is_pro=None models a non-authoritative answer
        if is_pro is None:
            result = SignalCheck(source=SnapshotSource.REMOTE_AUTHORITY, authoritative=False, error=error)
        else:
            result = SignalCheck(source=SnapshotSource.REMOTE_AUTHORITY, authoritative=True, is_pro=is_pro)
        return CountingSource(result, delay=delay)
    return _make


@pytest.fixture
def raising_source():
    def _make(exc: Exception) -> CountingSource:
        return CountingSource(exc)
    return _make
