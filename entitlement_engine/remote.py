"""
Remote Authority Service client.

Single endpoint: POST {base_url}/status with a bearer credential, returning
{"isPro": bool, "expiresAt": str | null} on success.

Only a 2xx response with a well-formed body is authoritative. Everything
else (missing credential, transport failure, timeout, non-2xx, malformed
body) is reported as a non-authoritative status and must never on its own
revoke entitlement.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError

from .config import DEFAULT_CLIENT_NAME, DEFAULT_STATUS_TIMEOUT_SECONDS
from .errors import RemoteAuthorityError
from .models import SignalCheck, SnapshotSource

logger = logging.getLogger(__name__)


class SessionCredentials(Protocol):
    """Session/auth collaborator supplying the bearer credential."""

    async def get_access_token(self) -> Optional[str]:
        ...

    async def refresh_access_token(self) -> Optional[str]:
        ...


class ProStatusPayload(BaseModel):
    """Success body of the status endpoint."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_pro: StrictBool = Field(alias="isPro")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")


@dataclass(frozen=True)
class RemoteStatus:
    """Classified result of one status call."""
    authoritative: bool
    is_pro: bool = False
    expires_at: Optional[datetime] = None
    http_status: Optional[int] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None


def _parse_expiry(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparseable expiresAt", extra={"expires_at": raw})
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _error_from_body(response: httpx.Response) -> tuple[str, Optional[str]]:
    message = "Unable to check Pro status"
    code = None
    try:
        data = response.json()
    except ValueError:
        return message, code
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        if isinstance(error.get("message"), str):
            message = error["message"]
        if isinstance(error.get("code"), str):
            code = error["code"]
    return message, code


class RemoteAuthorityClient:
    """
    Async client for the Pro status endpoint.

    Usable as a signal source through check(). A 401 is retried once when
    the session collaborator can refresh the credential.
    """

    def __init__(
        self,
        base_url: Optional[str],
        credentials: Optional[SessionCredentials] = None,
        *,
        timeout_seconds: float = DEFAULT_STATUS_TIMEOUT_SECONDS,
        client_name: str = DEFAULT_CLIENT_NAME,
        install_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Service base URL; None disables the call entirely
            credentials: Session collaborator; None means no bearer credential
            timeout_seconds: Upper bound for one request, the only cancellation bound
            client_name: Sent as x-client for server-side diagnostics
            install_id: Sent as x-install-id when known
            http_client: Injected client (tests); otherwise one is created
        """
        self.status_url = f"{base_url.rstrip('/')}/status" if base_url else None
        self._credentials = credentials

        headers = {"Content-Type": "application/json", "x-client": client_name}
        if install_id:
            headers["x-install-id"] = install_id

        self._client = http_client or httpx.AsyncClient(headers=headers, timeout=timeout_seconds)

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def check(self) -> SignalCheck:
        status = await self.fetch_status()
        return SignalCheck(
            source=SnapshotSource.REMOTE_AUTHORITY,
            authoritative=status.authoritative,
            is_pro=status.authoritative and status.is_pro,
            error=status.error_message,
        )

    async def fetch_status(self) -> RemoteStatus:
        """Call the status endpoint and classify the outcome. Never raises."""
        try:
            return await self._request_status()
        except RemoteAuthorityError as e:
            logger.warning("Pro status check non-authoritative", extra={
                "http_status": e.http_status,
                "error_code": e.error_code,
                "error": e.message,
            })
            return RemoteStatus(
                authoritative=False,
                http_status=e.http_status,
                error_message=e.message,
                error_code=e.error_code,
            )

    async def _request_status(self) -> RemoteStatus:
        if not self.status_url:
            raise RemoteAuthorityError("Pro status service not configured", error_code="NOT_CONFIGURED")

        token = await self._access_token()
        if not token:
            raise RemoteAuthorityError("Missing session token", error_code="NO_CREDENTIAL")

        response = await self._post_status(token)
        if response.status_code == 401:
            refreshed = await self._refreshed_token()
            if refreshed:
                response = await self._post_status(refreshed)

        if not response.is_success:
            message, code = _error_from_body(response)
            raise RemoteAuthorityError(message, http_status=response.status_code, error_code=code)

        try:
            payload = ProStatusPayload.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RemoteAuthorityError(
                f"Malformed status response: {e}",
                http_status=response.status_code,
                error_code="MALFORMED_STATUS_BODY",
            ) from e

        return RemoteStatus(
            authoritative=True,
            is_pro=payload.is_pro,
            expires_at=_parse_expiry(payload.expires_at),
            http_status=response.status_code,
        )

    async def _post_status(self, token: str) -> httpx.Response:
        try:
            return await self._client.post(
                self.status_url,
                json={},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise RemoteAuthorityError("Pro status request timed out", error_code="TIMEOUT") from e
        except httpx.RequestError as e:
            raise RemoteAuthorityError(f"Request failed: {e}", error_code="NETWORK_ERROR") from e

    async def _access_token(self) -> Optional[str]:
        if self._credentials is None:
            return None
        try:
            return await self._credentials.get_access_token()
        except Exception as e:
            logger.warning("Session credential lookup failed", extra={"error": str(e)})
            return None

    async def _refreshed_token(self) -> Optional[str]:
        if self._credentials is None:
            return None
        try:
            return await self._credentials.refresh_access_token()
        except Exception as e:
            logger.warning("Session credential refresh failed", extra={"error": str(e)})
            return None
