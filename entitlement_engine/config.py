"""
Engine configuration loaded from the environment.

Every setting has a safe default so the engine can start with nothing
configured; it then runs on in-memory storage with no live signal sources
and resolves to Free until a source is wired in.
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_DAYS = 7
DEFAULT_STATUS_TIMEOUT_SECONDS = 10.0
DEFAULT_NAMESPACE = "entitlements"
DEFAULT_CLIENT_NAME = "entitlement-engine"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid numeric setting, using default", extra={"setting": name, "value": raw})
        return default
    if value <= 0:
        logger.warning("Non-positive setting, using default", extra={"setting": name, "value": raw})
        return default
    return value


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip() or None


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings for the entitlement engine."""
    staleness_window: timedelta = timedelta(days=DEFAULT_STALENESS_DAYS)
    status_url: Optional[str] = None
    status_timeout_seconds: float = DEFAULT_STATUS_TIMEOUT_SECONDS
    redis_url: Optional[str] = None
    billing_api_key: Optional[str] = None
    namespace: str = DEFAULT_NAMESPACE
    client_name: str = DEFAULT_CLIENT_NAME
    install_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        config = cls(
            staleness_window=timedelta(days=_env_float("ENTITLEMENTS_STALENESS_DAYS", DEFAULT_STALENESS_DAYS)),
            status_url=_env_str("PRO_STATUS_URL"),
            status_timeout_seconds=_env_float("PRO_STATUS_TIMEOUT_SECONDS", DEFAULT_STATUS_TIMEOUT_SECONDS),
            redis_url=_env_str("REDIS_URL"),
            billing_api_key=_env_str("BILLING_API_KEY"),
            namespace=_env_str("ENTITLEMENTS_NAMESPACE") or DEFAULT_NAMESPACE,
            client_name=_env_str("ENTITLEMENTS_CLIENT_NAME") or DEFAULT_CLIENT_NAME,
            install_id=_env_str("ENTITLEMENTS_INSTALL_ID"),
        )

        if not config.status_url:
            logger.warning("Remote status service not configured; remote checks will be skipped")
        if not config.billing_api_key:
            logger.info("Billing API key not set; platform billing signal disabled")
        return config
