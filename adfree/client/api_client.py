"""
Entitlement API client - the app's connection to the entitlement server.

NO DICTIONARIES - Responses are parsed into the shared API models.

Requests carry the signed-in user's access token. With no token there is no
user, which is a valid outcome: status is not ad-free and nothing is sent.
"""

import asyncio
from collections.abc import Awaitable, Callable

import httpx
from pydantic import ValidationError
from structlog import get_logger

from adfree.client.platform import PlatformPurchase
from adfree.config import Settings
from adfree.exceptions import EntitlementSyncError
from adfree.models.api import (
    EntitlementStatusResponse,
    RecordPurchaseRequest,
    RecordPurchaseResponse,
)
from adfree.models.domain import DerivedStatus
from adfree.services.retry import retry_with_backoff

logger = get_logger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]


class EntitlementAPIClient:
    """HTTP client for /v1/entitlements with bounded timeouts and retries."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._token_provider = token_provider
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        token_provider: TokenProvider,
        client: httpx.AsyncClient | None = None,
    ) -> "EntitlementAPIClient":
        return cls(
            base_url=settings.entitlement_api_url,
            token_provider=token_provider,
            client=client,
            timeout_seconds=settings.http_timeout_seconds,
            retry_attempts=settings.retry_attempts,
            retry_base_delay=settings.retry_base_delay_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def has_user(self) -> bool:
        return bool(await self._token_provider())

    async def _request(
        self, method: str, path: str, token: str, body: dict[str, object] | None = None
    ) -> httpx.Response:
        """Send with retries on transport errors and 5xx; 4xx responses are returned."""

        async def attempt() -> httpx.Response:
            response = await self._client.request(
                method,
                f"{self._base_url}{path}",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_with_backoff(
                attempt,
                attempts=self._retry_attempts,
                base_delay=self._retry_base_delay,
                retry_on=(httpx.TransportError, httpx.HTTPStatusError),
                operation_name=f"{method} {path}",
                sleep=self._sleep,
            )
        except httpx.HTTPError as exc:
            raise EntitlementSyncError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401:
            raise EntitlementSyncError("Session is no longer valid")
        if response.status_code >= 400:
            raise EntitlementSyncError(f"{method} {path} returned HTTP {response.status_code}")
        return response

    async def get_status(self) -> DerivedStatus:
        """
        Server-side status for the signed-in user.

        Raises:
            EntitlementSyncError: Server unreachable or failing
        """
        token = await self._token_provider()
        if not token:
            return DerivedStatus.not_ad_free()

        response = await self._request("GET", "/v1/entitlements/status", token)
        try:
            return EntitlementStatusResponse.model_validate_json(response.content).to_status()
        except ValidationError as exc:
            raise EntitlementSyncError(f"Malformed status response: {exc.error_count()} errors") from exc

    async def record_purchase(self, purchase: PlatformPurchase) -> RecordPurchaseResponse | None:
        """
        Ask the server to verify and record a purchase.

        Returns None when no user is signed in or the purchase carries no
        evidence to verify.

        Raises:
            EntitlementSyncError: Server unreachable or failing
        """
        token = await self._token_provider()
        if not token:
            return None
        if not purchase.has_evidence():
            logger.warning("purchase_without_evidence", transaction_id=purchase.transaction_id)
            return None

        request = RecordPurchaseRequest(
            product_id=purchase.product_id,
            transaction_id=purchase.transaction_id,
            receipt_data=None if purchase.signed_transaction else purchase.transaction_receipt,
            signed_transaction=purchase.signed_transaction,
        )
        response = await self._request(
            "POST",
            "/v1/entitlements/records",
            token,
            body=request.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        try:
            return RecordPurchaseResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise EntitlementSyncError(f"Malformed record response: {exc.error_count()} errors") from exc
