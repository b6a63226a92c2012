"""
Client-side entitlement resolution: Free, ProTrial or Pro.

This module provides:
- RefreshOrchestrator: public entry point (resolve, override management)
- SourceReconciler: merges billing, remote authority and local override signals
- AdminOverrideLayer: operator-forced tier applied last
- SnapshotStore / LocalOverrideFlag: persisted state
- PlatformBillingSource / RemoteAuthorityClient: live signal sources
- EngineConfig: environment configuration

Cached snapshots are served for up to 7 days (configurable) before a live
pass is required.
"""

from .billing import PlatformBillingProvider, PlatformBillingSource
from .config import EngineConfig
from .errors import AdminOverrideError, EntitlementError, RemoteAuthorityError, SnapshotDecodeError
from .models import (
    ActiveEntitlements,
    AdminOverrideTier,
    EntitlementSnapshot,
    SignalCheck,
    SnapshotSource,
    Tier,
)
from .overrides import AdminOverrideLayer, can_manage_admin_override
from .reconciler import SignalSource, SourceReconciler
from .remote import RemoteAuthorityClient, RemoteStatus, SessionCredentials
from .service import RefreshOrchestrator
from .storage import KeyValueStore
from .store import LocalOverrideFlag, SnapshotStore

__all__ = [
    # Orchestration
    "RefreshOrchestrator",
    "SourceReconciler",
    "AdminOverrideLayer",
    "can_manage_admin_override",
    # Models
    "ActiveEntitlements",
    "AdminOverrideTier",
    "EntitlementSnapshot",
    "SignalCheck",
    "SnapshotSource",
    "Tier",
    # Signal sources
    "SignalSource",
    "PlatformBillingProvider",
    "PlatformBillingSource",
    "RemoteAuthorityClient",
    "RemoteStatus",
    "SessionCredentials",
    # Persistence
    "KeyValueStore",
    "SnapshotStore",
    "LocalOverrideFlag",
    # Config
    "EngineConfig",
    # Errors
    "EntitlementError",
    "AdminOverrideError",
    "RemoteAuthorityError",
    "SnapshotDecodeError",
]
