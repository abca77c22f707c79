"""
Receipt Verifier - Validates App Store purchase evidence.

NO DICTIONARIES - Results are returned as VerificationResult dataclasses.

Two kinds of evidence are accepted:
- Legacy app receipts (StoreKit 1), checked with Apple's verifyReceipt endpoint.
- StoreKit 2 signed transactions, checked locally with the JWS verifier.

Neither path raises to the caller. Every failure (network, malformed response,
non-success status, bad signature) becomes valid=False with an error reason.
"""

import asyncio
import base64
import time
from collections.abc import Awaitable, Callable
from datetime import datetime

import httpx
from structlog import get_logger

from adfree.config import Settings
from adfree.exceptions import SignatureVerificationError, VerificationTransportError
from adfree.models.apple import ReceiptStatus, datetime_from_ms
from adfree.models.domain import ProductKind, StoreEnvironment, TransactionInfo, VerificationResult
from adfree.observability.metrics import metrics
from adfree.services.jws import SignedPayloadVerifier
from adfree.services.products import ProductCatalog
from adfree.services.reconciliation import utc_now
from adfree.services.retry import retry_with_backoff

logger = get_logger(__name__)


class ReceiptVerifier:
    """
    Verifies purchase evidence against the App Store.

    The endpoint for the configured environment is tried first. A 21007
    (sandbox receipt sent to production) or 21008 (the reverse) answer is
    retried exactly once against the other endpoint.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: ProductCatalog,
        signed_payloads: SignedPayloadVerifier,
        client: httpx.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._catalog = catalog
        self._signed_payloads = signed_payloads
        self._client = client
        self._sleep = sleep
        self._clock = clock

    def _endpoint(self, environment: StoreEnvironment) -> str:
        if environment is StoreEnvironment.SANDBOX:
            return self._settings.apple_verify_receipt_sandbox_url
        return self._settings.apple_verify_receipt_production_url

    async def verify(self, receipt_blob: bytes | str) -> VerificationResult:
        """
        Verify a legacy app receipt.

        Args:
            receipt_blob: Raw receipt bytes, or the base64 text the app sends

        Returns:
            VerificationResult; valid iff at least one recognized transaction
            is neither expired nor cancelled
        """
        started = time.perf_counter()
        result = await self._verify_receipt(receipt_blob)
        metrics.record_verification(_outcome(result), time.perf_counter() - started)
        return result

    async def _verify_receipt(self, receipt_blob: bytes | str) -> VerificationResult:
        if isinstance(receipt_blob, bytes):
            receipt_data = base64.b64encode(receipt_blob).decode("ascii")
        else:
            receipt_data = receipt_blob.strip()

        if not receipt_data:
            return VerificationResult.failure("Empty receipt")

        payload: dict[str, object] = {
            "receipt-data": receipt_data,
            "exclude-old-transactions": True,
        }
        if self._settings.apple_shared_secret:
            payload["password"] = self._settings.apple_shared_secret

        first = StoreEnvironment.parse(self._settings.apple_environment)

        try:
            body = await self._post(self._endpoint(first), payload)
            status = _status_of(body)

            if (
                status == ReceiptStatus.SANDBOX_RECEIPT_ON_PRODUCTION
                and first is StoreEnvironment.PRODUCTION
            ):
                logger.info("receipt_redirected_to_sandbox")
                body = await self._post(self._endpoint(StoreEnvironment.SANDBOX), payload)
                status = _status_of(body)
            elif (
                status == ReceiptStatus.PRODUCTION_RECEIPT_ON_SANDBOX
                and first is StoreEnvironment.SANDBOX
            ):
                logger.info("receipt_redirected_to_production")
                body = await self._post(self._endpoint(StoreEnvironment.PRODUCTION), payload)
                status = _status_of(body)
        except VerificationTransportError as exc:
            logger.warning(
                "receipt_verification_unavailable",
                error=exc.message,
                status_code=exc.status_code,
            )
            return VerificationResult.failure(exc.message, status_code=exc.status_code)
        except ValueError as exc:
            logger.warning("receipt_verification_malformed_response", error=str(exc))
            return VerificationResult.failure(f"Malformed verification response: {exc}")

        # 21006: receipt is valid but the subscription has expired; the body
        # still carries the transactions, which then all classify as expired.
        if status not in (ReceiptStatus.OK, ReceiptStatus.SUBSCRIPTION_EXPIRED):
            logger.warning("receipt_verification_rejected", status=status)
            return VerificationResult.failure(
                f"App Store rejected receipt with status {status}", status_code=status
            )

        environment = StoreEnvironment.parse(str(body.get("environment", first.value)))
        transactions = self._parse_transactions(body, environment)
        valid = any(tx.grants_access() for tx in transactions)

        logger.info(
            "receipt_verified",
            valid=valid,
            environment=environment.value,
            transactions=len(transactions),
        )

        return VerificationResult(
            valid=valid,
            transactions=tuple(transactions),
            status_code=status,
            environment=environment,
            error=None if valid else "No active ad-free purchase in receipt",
        )

    async def _post(self, url: str, payload: dict[str, object]) -> dict[str, object]:
        """POST to verifyReceipt, retrying transient failures with backoff."""

        async def attempt() -> dict[str, object]:
            try:
                response = await self._client.post(
                    url, json=payload, timeout=self._settings.http_timeout_seconds
                )
            except httpx.HTTPError as exc:
                raise VerificationTransportError(
                    f"{type(exc).__name__}: {exc}"
                ) from exc

            if response.status_code >= 500:
                raise VerificationTransportError(
                    f"App Store returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise ValueError(f"HTTP {response.status_code}")

            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("response body is not a JSON object")

            status = _status_of(body)
            if ReceiptStatus.is_transient(status):
                raise VerificationTransportError(
                    f"App Store temporarily unavailable (status {status})",
                    status_code=status,
                )
            return body

        return await retry_with_backoff(
            attempt,
            attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            retry_on=(VerificationTransportError,),
            operation_name="verify_receipt",
            sleep=self._sleep,
        )

    def _parse_transactions(
        self, body: dict[str, object], environment: StoreEnvironment
    ) -> list[TransactionInfo]:
        entries = body.get("latest_receipt_info")
        if not isinstance(entries, list):
            receipt = body.get("receipt")
            entries = receipt.get("in_app") if isinstance(receipt, dict) else None
        if not isinstance(entries, list):
            return []

        now = self._clock()
        transactions: list[TransactionInfo] = []

        for entry in entries:
            if not isinstance(entry, dict):
                continue

            product_id = str(entry.get("product_id", ""))
            kind = self._catalog.classify(product_id)
            if kind is None:
                continue

            transaction_id = str(entry.get("transaction_id", ""))
            purchase_date = datetime_from_ms(entry.get("purchase_date_ms"))
            if not transaction_id or purchase_date is None:
                continue

            if entry.get("cancellation_date_ms"):
                logger.info(
                    "receipt_transaction_cancelled",
                    transaction_id=transaction_id,
                    product_id=product_id,
                )
                continue

            # Missing or "0" expires_date_ms marks a non-expiring purchase
            expires_date = datetime_from_ms(entry.get("expires_date_ms"))
            if kind is ProductKind.SUBSCRIPTION and expires_date is None:
                logger.warning(
                    "receipt_subscription_without_expiry",
                    transaction_id=transaction_id,
                    expires_date_ms=str(entry.get("expires_date_ms")),
                )
                continue

            transactions.append(
                TransactionInfo(
                    transaction_id=transaction_id,
                    original_transaction_id=str(
                        entry.get("original_transaction_id") or transaction_id
                    ),
                    product_id=product_id,
                    purchase_date=purchase_date,
                    original_purchase_date=datetime_from_ms(
                        entry.get("original_purchase_date_ms")
                    )
                    or purchase_date,
                    expires_date=expires_date,
                    environment=environment,
                    kind=kind,
                    expired=expires_date is not None and expires_date <= now,
                )
            )

        return transactions

    async def verify_signed_transaction(self, signed_transaction: str) -> VerificationResult:
        """
        Verify a StoreKit 2 signed transaction (JWS).

        Returns the same result shape as verify(); never raises.
        """
        started = time.perf_counter()
        result = self._verify_signed(signed_transaction)
        metrics.record_verification(_outcome(result), time.perf_counter() - started)
        return result

    def _verify_signed(self, signed_transaction: str) -> VerificationResult:
        try:
            transaction = self._signed_payloads.verify_transaction(signed_transaction)
        except SignatureVerificationError as exc:
            logger.warning("signed_transaction_rejected", error=exc.message)
            return VerificationResult.failure(exc.message)

        environment = StoreEnvironment.parse(transaction.environment)
        kind = self._catalog.classify(transaction.product_id)
        if kind is None:
            logger.info("signed_transaction_unknown_product", product_id=transaction.product_id)
            return VerificationResult(
                valid=False,
                environment=environment,
                error=f"Unrecognized product {transaction.product_id}",
            )
        if kind is ProductKind.SUBSCRIPTION and transaction.expires_date is None:
            logger.warning(
                "signed_subscription_without_expiry", transaction_id=transaction.transaction_id
            )
            return VerificationResult(
                valid=False,
                environment=environment,
                error="Subscription transaction has no expiry date",
            )

        info = TransactionInfo(
            transaction_id=transaction.transaction_id,
            original_transaction_id=transaction.original_transaction_id,
            product_id=transaction.product_id,
            purchase_date=transaction.purchase_date,
            original_purchase_date=transaction.original_purchase_date,
            expires_date=transaction.expires_date,
            environment=environment,
            kind=kind,
            expired=(
                transaction.expires_date is not None
                and transaction.expires_date <= self._clock()
            ),
            revocation_date=transaction.revocation_date,
            app_account_token=transaction.app_account_token,
        )
        valid = info.grants_access()

        if not valid:
            error = "Transaction was revoked" if info.revocation_date else "Transaction has expired"
        else:
            error = None

        return VerificationResult(
            valid=valid,
            transactions=(info,),
            status_code=ReceiptStatus.OK,
            environment=environment,
            error=error,
        )


def _status_of(body: dict[str, object]) -> int:
    status = body.get("status")
    if status is None:
        raise ValueError("response has no status field")
    try:
        return int(status)  # type: ignore[call-overload]
    except TypeError as exc:
        raise ValueError(f"status {status!r} is not a number") from exc


def _outcome(result: VerificationResult) -> str:
    if result.valid:
        return "valid"
    if result.transactions:
        return "inactive"
    return "failed"
