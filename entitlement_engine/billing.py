"""
Platform billing signal.

Wraps the platform subscription SDK (receipt-backed). The SDK is optional:
with no provider or no API key the source reports "no signal" instead of
failing, and the engine degrades to remote-authority-only behavior.
"""

import logging
from typing import Optional, Protocol

from .models import ActiveEntitlements, SignalCheck, SnapshotSource

logger = logging.getLogger(__name__)


class PlatformBillingProvider(Protocol):
    """
    Protocol for platform billing SDK adapters.

    configure() is called at most once per source instance, before any other
    call.
    """

    def configure(self, api_key: str) -> None:
        ...

    async def get_active_entitlements(self) -> ActiveEntitlements:
        ...

    async def restore_purchases(self) -> ActiveEntitlements:
        ...


class PlatformBillingSource:
    """Signal source backed by a PlatformBillingProvider."""

    def __init__(
        self,
        provider: Optional[PlatformBillingProvider] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self._provider = provider
        self._api_key = (api_key or "").strip() or None
        self._initialized = False

    @property
    def is_available(self) -> bool:
        return self._provider is not None and self._api_key is not None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _ensure_initialized(self) -> bool:
        if self._initialized:
            return True
        if not self.is_available:
            return False
        self._provider.configure(self._api_key)
        self._initialized = True
        logger.info("Platform billing provider configured")
        return True

    async def check(self) -> SignalCheck:
        if not self.is_available:
            return SignalCheck(source=SnapshotSource.PLATFORM_BILLING, authoritative=False)

        try:
            self._ensure_initialized()
            active = await self._provider.get_active_entitlements()
        except Exception as e:  # SDK failures are a missing signal, not an engine error
            logger.warning("Platform billing check failed", extra={"error": str(e)})
            return SignalCheck(
                source=SnapshotSource.PLATFORM_BILLING,
                authoritative=False,
                error=f"Platform billing check failed: {e}",
            )

        return SignalCheck(
            source=SnapshotSource.PLATFORM_BILLING,
            authoritative=True,
            is_pro=bool(active.pro),
            is_trial=bool(active.pro_trial and not active.pro),
        )

    async def restore_purchases(self) -> Optional[ActiveEntitlements]:
        """Restore receipts through the provider. None when billing is not configured."""
        if not self._ensure_initialized():
            return None
        return await self._provider.restore_purchases()
