import pytest

from entitlement_engine.billing import PlatformBillingSource
from entitlement_engine.models import ActiveEntitlements, SnapshotSource


class _FakeProvider:
    def __init__(self, active=None, error=None):
        self.active = active or ActiveEntitlements()
        self.error = error
        self.configured_with = []

    def configure(self, api_key):
        self.configured_with.append(api_key)

    async def get_active_entitlements(self):
        if self.error:
            raise self.error
        return self.active

    async def restore_purchases(self):
        return self.active


@pytest.mark.asyncio
async def test_provider_configured_once_across_checks():
    provider = _FakeProvider(ActiveEntitlements(pro=True))
    source = PlatformBillingSource(provider, "rc-key")

    await source.check()
    await source.check()
    await source.restore_purchases()

    assert provider.configured_with == ["rc-key"]
    assert source.is_initialized is True


@pytest.mark.asyncio
@pytest.mark.parametrize("provider,api_key", [(None, "rc-key"), (_FakeProvider(), None), (_FakeProvider(), "  ")])
async def test_missing_provider_or_key_is_no_signal(provider, api_key):
    source = PlatformBillingSource(provider, api_key)

    check = await source.check()

    assert source.is_available is False
    assert check.authoritative is False
    assert check.error is None
    assert await source.restore_purchases() is None


@pytest.mark.asyncio
async def test_active_pro_reported():
    check = await PlatformBillingSource(_FakeProvider(ActiveEntitlements(pro=True)), "k").check()

    assert check.source is SnapshotSource.PLATFORM_BILLING
    assert check.authoritative is True
    assert check.is_pro is True
    assert check.is_trial is False


@pytest.mark.asyncio
async def test_pro_and_trial_together_reports_pro_only():
    check = await PlatformBillingSource(_FakeProvider(ActiveEntitlements(pro=True, pro_trial=True)), "k").check()

    assert check.is_pro is True
    assert check.is_trial is False


@pytest.mark.asyncio
async def test_nothing_active_is_authoritative_empty_answer():
    check = await PlatformBillingSource(_FakeProvider(), "k").check()

    assert check.authoritative is True
    assert check.is_authoritative_negative is True


@pytest.mark.asyncio
async def test_sdk_failure_is_non_authoritative_with_error():
    provider = _FakeProvider(error=RuntimeError("store unavailable"))

    check = await PlatformBillingSource(provider, "k").check()

    assert check.authoritative is False
    assert check.error == "Platform billing check failed: store unavailable"


def test_active_ids_mapping():
    active = ActiveEntitlements.from_active_ids(["pro_tools_trial", "unrelated"])

    assert active.pro is False
    assert active.pro_trial is True
    assert ActiveEntitlements.from_active_ids([" pro "]).pro is True
