"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A SQLite-backed entitlement store (aiosqlite, schema from the ORM models)
- A locally generated App Store style certificate chain and JWS signer
- Product catalog and fixed clock
- API test client with service overrides
"""

import base64
import json
import os
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# Set required environment variables BEFORE importing adfree modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_adfree.db")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-supabase-secret-key-min-32-characters")
os.environ.setdefault("APPLE_BUNDLE_ID", "com.cybersimply.app")
os.environ.setdefault("TRACING_ENABLED", "false")

from adfree.config import settings
from adfree.db.models import Base, EntitlementRecordRow
from adfree.models.domain import (
    EntitlementRecord,
    ProductKind,
    StoreEnvironment,
    TransactionInfo,
    VerificationStatus,
)
from adfree.services.entitlement_store import EntitlementStore
from adfree.services.jws import SignedPayloadVerifier
from adfree.services.products import ProductCatalog

NOW = datetime(2025, 10, 8, 12, 0, 0, tzinfo=UTC)
BUNDLE_ID = "com.cybersimply.app"
LIFETIME = "com.cybersimply.adfree.lifetime.2025"
MONTHLY = "com.cybersimply.adfree.monthly.2025"
APP_APPLE_ID = 1234567890

# Marker extensions App Store signing certificates carry
APPLE_LEAF_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")
APPLE_INTERMEDIATE_MARKER_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")


def to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


# ============================================================================
# Clock and Catalog Fixtures
# ============================================================================


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def catalog() -> ProductCatalog:
    return ProductCatalog.from_settings(settings)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the schema created from the ORM models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def count_rows(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Number of stored entitlement records."""
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(EntitlementRecordRow)) or 0


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession],
    catalog: ProductCatalog,
    clock: Callable[[], datetime],
) -> EntitlementStore:
    return EntitlementStore(session_factory, catalog, clock=clock)


def make_record(
    transaction_id: str = "1000000001",
    *,
    product_id: str = MONTHLY,
    original_transaction_id: str | None = None,
    user_id: str | None = "user-1",
    purchase_date: datetime = NOW - timedelta(days=1),
    expires_date: datetime | None = NOW + timedelta(days=29),
    is_active: bool = True,
    environment: StoreEnvironment = StoreEnvironment.PRODUCTION,
    event_type: str = "SUBSCRIBED",
    event_date: datetime = NOW,
) -> EntitlementRecord:
    """Entitlement record built the way the ingestor and routes build them."""
    transaction = TransactionInfo(
        transaction_id=transaction_id,
        original_transaction_id=original_transaction_id or transaction_id,
        product_id=product_id,
        purchase_date=purchase_date,
        original_purchase_date=purchase_date,
        expires_date=expires_date,
        environment=environment,
        kind=ProductKind.LIFETIME if expires_date is None else ProductKind.SUBSCRIPTION,
        expired=False,
    )
    record = EntitlementRecord.from_transaction(
        transaction,
        user_id=user_id,
        event_type=event_type,
        event_date=event_date,
        verification_status=VerificationStatus.NOTIFICATION,
        verified_at=NOW,
    )
    return record if is_active else record.with_changes(is_active=False)


@pytest.fixture
def record_factory() -> Callable[..., EntitlementRecord]:
    return make_record


# ============================================================================
# Signed Payload Fixtures
# ============================================================================


def _build_cert(
    common_name: str,
    issuer: x509.Certificate | None,
    public_key: ec.EllipticCurvePublicKey,
    signing_key: ec.EllipticCurvePrivateKey,
    *,
    ca: bool,
    marker_oid: x509.ObjectIdentifier | None = None,
    not_before: datetime = datetime(2020, 1, 1, tzinfo=UTC),
    not_after: datetime = datetime(2040, 1, 1, tzinfo=UTC),
) -> x509.Certificate:
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.subject if issuer is not None else subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=not ca,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
    )
    if issuer is not None:
        builder = builder.add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer.public_key()),  # type: ignore[arg-type]
            critical=False,
        )
    if marker_oid is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(marker_oid, b"\x05\x00"), critical=False
        )
    return builder.sign(signing_key, hashes.SHA256())


@dataclass
class SigningChain:
    """Root -> intermediate -> leaf chain that signs App Store style JWS tokens."""

    root: x509.Certificate
    intermediate: x509.Certificate
    leaf: x509.Certificate
    leaf_key: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(
        cls,
        *,
        leaf_marker: bool = True,
        leaf_not_after: datetime = datetime(2040, 1, 1, tzinfo=UTC),
    ) -> "SigningChain":
        root_key = ec.generate_private_key(ec.SECP256R1())
        intermediate_key = ec.generate_private_key(ec.SECP256R1())
        leaf_key = ec.generate_private_key(ec.SECP256R1())

        root = _build_cert("Test Root CA - G3", None, root_key.public_key(), root_key, ca=True)
        intermediate = _build_cert(
            "Test WWDR Intermediate",
            root,
            intermediate_key.public_key(),
            root_key,
            ca=True,
            marker_oid=APPLE_INTERMEDIATE_MARKER_OID,
        )
        leaf = _build_cert(
            "Test App Store Signing",
            intermediate,
            leaf_key.public_key(),
            intermediate_key,
            ca=False,
            marker_oid=APPLE_LEAF_MARKER_OID if leaf_marker else None,
            not_after=leaf_not_after,
        )
        return cls(root=root, intermediate=intermediate, leaf=leaf, leaf_key=leaf_key)

    def x5c(self) -> list[str]:
        return [
            base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
            for cert in (self.leaf, self.intermediate, self.root)
        ]

    def sign(self, payload: dict[str, Any]) -> str:
        return jwt.encode(payload, self.leaf_key, algorithm="ES256", headers={"x5c": self.x5c()})

    def root_pem(self) -> bytes:
        return self.root.public_bytes(serialization.Encoding.PEM)


def transaction_payload(
    transaction_id: str = "2000000001",
    *,
    product_id: str = MONTHLY,
    original_transaction_id: str | None = None,
    purchase_date: datetime = NOW - timedelta(days=1),
    expires_date: datetime | None = NOW + timedelta(days=29),
    environment: str = "Production",
    revocation_date: datetime | None = None,
    app_account_token: str | None = None,
    bundle_id: str = BUNDLE_ID,
) -> dict[str, Any]:
    """Decoded JWSTransaction payload."""
    payload: dict[str, Any] = {
        "transactionId": transaction_id,
        "originalTransactionId": original_transaction_id or transaction_id,
        "productId": product_id,
        "bundleId": bundle_id,
        "purchaseDate": to_ms(purchase_date),
        "originalPurchaseDate": to_ms(purchase_date),
        "environment": environment,
        "type": "Non-Consumable" if expires_date is None else "Auto-Renewable Subscription",
        "signedDate": to_ms(NOW),
    }
    if expires_date is not None:
        payload["expiresDate"] = to_ms(expires_date)
    if revocation_date is not None:
        payload["revocationDate"] = to_ms(revocation_date)
        payload["revocationReason"] = 0
    if app_account_token is not None:
        payload["appAccountToken"] = app_account_token
    return payload


@pytest.fixture
def signing_chain() -> SigningChain:
    return SigningChain.generate()


@pytest.fixture
def signed_payload_verifier(signing_chain: SigningChain) -> SignedPayloadVerifier:
    """Trusts only the generated root; offline, so chains are checked at signedDate."""
    return SignedPayloadVerifier(
        [signing_chain.root_pem()],
        BUNDLE_ID,
        app_apple_id=APP_APPLE_ID,
        enable_online_checks=False,
    )


@dataclass
class NotificationFactory:
    """Builds signed App Store Server Notification v2 webhook bodies."""

    chain: SigningChain

    def signed_transaction(self, **fields: Any) -> str:
        return self.chain.sign(transaction_payload(**fields))

    def body(
        self,
        notification_type: str,
        *,
        signed_date: datetime = NOW,
        subtype: str | None = None,
        environment: str = "Production",
        bundle_id: str = BUNDLE_ID,
        notification_uuid: str | None = None,
        app_apple_id: int = APP_APPLE_ID,
        **transaction_fields: Any,
    ) -> bytes:
        data: dict[str, Any] = {
            "bundleId": bundle_id,
            "environment": environment,
            "appAppleId": app_apple_id,
        }
        if notification_type != "TEST":
            transaction_fields.setdefault("environment", environment)
            data["signedTransactionInfo"] = self.signed_transaction(**transaction_fields)
        payload: dict[str, Any] = {
            "notificationType": notification_type,
            "notificationUUID": notification_uuid or str(uuid4()),
            "data": data,
            "version": "2.0",
            "signedDate": to_ms(signed_date),
        }
        if subtype:
            payload["subtype"] = subtype
        return json.dumps({"signedPayload": self.chain.sign(payload)}).encode()


@pytest.fixture
def notifications(signing_chain: SigningChain) -> NotificationFactory:
    return NotificationFactory(signing_chain)


# ============================================================================
# Auth Fixtures
# ============================================================================


def make_access_token(
    user_id: str = "user-1",
    *,
    secret: str | None = None,
    expires_in: timedelta = timedelta(hours=1),
    audience: str = "authenticated",
) -> str:
    """Supabase-style HS256 access token."""
    issued = datetime.now(UTC)
    return jwt.encode(
        {
            "sub": user_id,
            "aud": audience,
            "email": f"{user_id}@example.com",
            "iat": issued,
            "exp": issued + expires_in,
        },
        secret or settings.supabase_jwt_secret,
        algorithm="HS256",
    )


@pytest.fixture
def access_token() -> str:
    return make_access_token()
