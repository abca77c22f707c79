"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Field names are camelCase on the wire to match the mobile client.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from adfree.models.domain import DerivedStatus, ProductKind


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Entitlement Status Models
# ============================================================================


class EntitlementStatusResponse(CamelModel):
    """GET /v1/entitlements/status response."""

    is_ad_free: bool
    product_type: ProductKind | None = None
    expires_at: datetime | None = None
    active_product_ids: list[str] = Field(default_factory=list)

    @classmethod
    def from_status(cls, status: DerivedStatus) -> "EntitlementStatusResponse":
        return cls(
            is_ad_free=status.is_ad_free,
            product_type=status.product_type,
            expires_at=status.expires_at,
            active_product_ids=list(status.active_product_ids),
        )

    def to_status(self) -> DerivedStatus:
        return DerivedStatus(
            is_ad_free=self.is_ad_free,
            product_type=self.product_type,
            expires_at=self.expires_at,
            active_product_ids=tuple(self.active_product_ids),
        )


# ============================================================================
# Purchase Record Models
# ============================================================================


class RecordPurchaseRequest(CamelModel):
    """POST /v1/entitlements/records request body.

    Carries either a legacy app receipt (StoreKit 1) or a StoreKit 2
    signed transaction as evidence.
    """

    product_id: str = Field(..., min_length=1, max_length=255)
    transaction_id: str | None = Field(None, max_length=255)
    receipt_data: str | None = Field(None, min_length=1)
    signed_transaction: str | None = Field(None, min_length=1)

    @model_validator(mode="after")
    def require_evidence(self) -> "RecordPurchaseRequest":
        """Exactly one kind of purchase evidence is required."""
        if bool(self.receipt_data) == bool(self.signed_transaction):
            raise ValueError("Provide exactly one of receiptData or signedTransaction")
        return self


class RecordPurchaseResponse(CamelModel):
    """POST /v1/entitlements/records response."""

    verified: bool
    status: EntitlementStatusResponse
    recorded_transaction_ids: list[str] = Field(default_factory=list)
    reason: str | None = None


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAck(BaseModel):
    """Response body returned to the App Store on accepted notifications."""

    success: bool = True
    outcome: str | None = None


class AppleWebhookBody(BaseModel):
    """App Store Server Notifications v2 request body."""

    signed_payload: str = Field(..., alias="signedPayload", min_length=1)


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
