"""
Notification Ingestor - App Store Server Notifications v2.

NO DICTIONARIES - Notifications are decoded into typed dataclasses.

The notification type selects the transition:

| notificationType                                  | effect                          |
|---------------------------------------------------|---------------------------------|
| SUBSCRIBED, DID_RENEW, RENEWAL_EXTENDED,          | upsert active record, recompute |
| ONE_TIME_CHARGE, OFFER_REDEEMED, REFUND_REVERSED  |                                 |
| DID_FAIL_TO_RENEW, EXPIRED, GRACE_PERIOD_EXPIRED  | deactivate(EXPIRED), recompute  |
| REFUND, REVOKE                                    | deactivate(type), recompute     |
| DID_CHANGE_RENEWAL_STATUS                         | audit fields only               |
| TEST, anything else                               | log, no-op                      |

Nothing is written unless both the outer signedPayload and the inner
signedTransactionInfo verify. Redeliveries are harmless: writes are keyed by
transaction_id and ordered by the notification's signedDate.
"""

from collections.abc import Callable
from datetime import datetime
from enum import Enum

from pydantic import ValidationError
from structlog import get_logger

from adfree.exceptions import EnvironmentConflictError, WebhookPayloadError
from adfree.models.api import AppleWebhookBody
from adfree.models.apple import AppleNotification, AppleSignedTransaction, NotificationType
from adfree.models.domain import (
    DeactivationReason,
    EntitlementRecord,
    StoreEnvironment,
    TransactionInfo,
    VerificationStatus,
)
from adfree.observability.logging import log_context
from adfree.observability.metrics import metrics
from adfree.observability.tracing import get_tracer
from adfree.services.entitlement_store import EntitlementStore
from adfree.services.jws import SignedPayloadVerifier
from adfree.services.products import ProductCatalog
from adfree.services.reconciliation import as_utc, utc_now

logger = get_logger(__name__)
tracer = get_tracer(__name__)


class IngestOutcome(str, Enum):
    """Result of ingesting one notification. All of them are acknowledged with 200."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"  # Replay, or older than what is already stored


ACTIVATING_TYPES = frozenset(
    {
        NotificationType.SUBSCRIBED,
        NotificationType.DID_RENEW,
        NotificationType.RENEWAL_EXTENDED,
        NotificationType.ONE_TIME_CHARGE,
        NotificationType.OFFER_REDEEMED,
        NotificationType.REFUND_REVERSED,
    }
)

EXPIRING_TYPES = frozenset(
    {
        NotificationType.DID_FAIL_TO_RENEW,
        NotificationType.EXPIRED,
        NotificationType.GRACE_PERIOD_EXPIRED,
    }
)

REVOKING_TYPES = {
    NotificationType.REFUND: DeactivationReason.REFUND,
    NotificationType.REVOKE: DeactivationReason.REVOKE,
}

AUDIT_ONLY_TYPES = frozenset({NotificationType.DID_CHANGE_RENEWAL_STATUS})


def _parse_type(value: str) -> NotificationType | None:
    try:
        return NotificationType(value)
    except ValueError:
        return None


class NotificationIngestor:
    """Applies verified store notifications to the entitlement store."""

    def __init__(
        self,
        store: EntitlementStore,
        verifier: SignedPayloadVerifier,
        catalog: ProductCatalog,
        accept_sandbox: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._verifier = verifier
        self._catalog = catalog
        self._accept_sandbox = accept_sandbox
        self._clock = clock

    def decode(self, body: bytes) -> AppleNotification:
        """
        Parse the request body and verify every signed part of it.

        Raises:
            WebhookPayloadError: Body is not a notification envelope
            SignatureVerificationError: A signed part does not verify
        """
        try:
            envelope = AppleWebhookBody.model_validate_json(body)
        except ValidationError as exc:
            raise WebhookPayloadError(f"expected JSON with signedPayload ({exc.error_count()} errors)") from exc

        if envelope.signed_payload.count(".") != 2:
            raise WebhookPayloadError("signedPayload is not a compact JWS token")

        return self._verifier.verify_notification(envelope.signed_payload)

    async def ingest(self, body: bytes) -> IngestOutcome:
        """
        Verify and apply one notification.

        Raises:
            WebhookPayloadError: Malformed body (respond 400)
            SignatureVerificationError: Unauthenticated payload (respond 400)
            StorageError: Store failure (respond 5xx so the store redelivers)
        """
        notification = self.decode(body)
        transaction = notification.transaction

        with (
            log_context(
                notification_uuid=notification.notification_uuid,
                notification_type=notification.notification_type,
                transaction_id=transaction.transaction_id if transaction else None,
            ),
            tracer.start_as_current_span("ingest_notification") as span,
        ):
            span.set_attribute("notification.type", notification.notification_type)
            try:
                outcome = await self._apply(notification)
            except EnvironmentConflictError as exc:
                # Redelivery cannot fix this, so acknowledge it
                logger.warning(
                    "notification_environment_conflict",
                    stored=exc.stored,
                    incoming=exc.incoming,
                )
                outcome = IngestOutcome.DUPLICATE

            span.set_attribute("notification.outcome", outcome.value)
            metrics.record_notification(notification.notification_type, outcome.value)
            logger.info("notification_ingested", outcome=outcome.value, subtype=notification.subtype)
            return outcome

    async def _apply(self, notification: AppleNotification) -> IngestOutcome:
        if notification.is_test():
            logger.info("test_notification_received")
            return IngestOutcome.IGNORED

        if notification.is_sandbox() and not self._accept_sandbox:
            logger.info("sandbox_notification_ignored")
            return IngestOutcome.IGNORED

        notification_type = _parse_type(notification.notification_type)
        if notification_type is None or not (
            notification_type in ACTIVATING_TYPES
            or notification_type in EXPIRING_TYPES
            or notification_type in REVOKING_TYPES
            or notification_type in AUDIT_ONLY_TYPES
        ):
            logger.info("notification_type_not_handled")
            return IngestOutcome.IGNORED

        transaction = notification.transaction
        if transaction is None:
            logger.warning("notification_without_transaction")
            return IngestOutcome.IGNORED

        if not self._catalog.is_known(transaction.product_id):
            logger.info("notification_for_unknown_product", product_id=transaction.product_id)
            return IngestOutcome.IGNORED

        event_at = notification.signed_date
        existing = await self._store.get(transaction.transaction_id)
        duplicate = existing is not None and self._is_replay_or_stale(existing, notification)

        if notification_type in AUDIT_ONLY_TYPES:
            await self._store.touch(
                transaction.transaction_id, notification.notification_type, event_at
            )
            return IngestOutcome.DUPLICATE if duplicate else IngestOutcome.PROCESSED

        evidence = await self._record_from(transaction, notification)

        if notification_type in ACTIVATING_TYPES:
            stored = await self._store.upsert(evidence)
            if stored.user_id:
                await self._store.recompute(stored.user_id)
            else:
                logger.info("notification_stored_without_user")
        else:
            reason = REVOKING_TYPES.get(notification_type, DeactivationReason.EXPIRED)
            await self._store.deactivate(
                transaction.transaction_id,
                reason,
                event_at,
                evidence=evidence,
                notification_type=notification.notification_type,
            )

        return IngestOutcome.DUPLICATE if duplicate else IngestOutcome.PROCESSED

    @staticmethod
    def _is_replay_or_stale(existing: EntitlementRecord, notification: AppleNotification) -> bool:
        stored_at = as_utc(existing.last_notification_date)
        if stored_at is None:
            return False
        event_at = as_utc(notification.signed_date)
        if stored_at > event_at:  # type: ignore[operator]
            return True
        return stored_at == event_at and existing.last_notification_type == notification.notification_type

    async def _resolve_user(self, transaction: AppleSignedTransaction) -> str | None:
        """Owner of the chain if known, else the appAccountToken the app set at purchase."""
        user_id = await self._store.find_user_for_original_transaction(
            transaction.original_transaction_id
        )
        return user_id or transaction.app_account_token

    async def _record_from(
        self, transaction: AppleSignedTransaction, notification: AppleNotification
    ) -> EntitlementRecord:
        kind = self._catalog.classify(transaction.product_id)
        info = TransactionInfo(
            transaction_id=transaction.transaction_id,
            original_transaction_id=transaction.original_transaction_id,
            product_id=transaction.product_id,
            purchase_date=transaction.purchase_date,
            original_purchase_date=transaction.original_purchase_date,
            expires_date=transaction.expires_date,
            environment=StoreEnvironment.parse(transaction.environment),
            kind=kind,  # type: ignore[arg-type]
            expired=False,
            revocation_date=transaction.revocation_date,
            app_account_token=transaction.app_account_token,
        )
        return EntitlementRecord.from_transaction(
            info,
            user_id=await self._resolve_user(transaction),
            event_type=notification.notification_type,
            event_date=notification.signed_date,
            verification_status=VerificationStatus.NOTIFICATION,
            verified_at=self._clock(),
        )
