"""
Tests for API Routes.

Requests go through the ASGI app with a service container built on the
SQLite store; failure paths swap single services with dependency_overrides.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import jwt
import pytest

from adfree.api.dependencies import (
    ServiceContainer,
    decode_access_token,
    get_ingestor,
    get_store,
)
from adfree.config import settings
from adfree.exceptions import AuthenticationError, StorageError
from adfree.main import app
from adfree.services.notification_ingestor import NotificationIngestor
from adfree.services.receipt_verifier import ReceiptVerifier
from conftest import (
    LIFETIME,
    NOW,
    count_rows,
    make_access_token,
    to_ms,
    transaction_payload,
)


def lifetime_receipt_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "status": 0,
            "environment": "Production",
            "latest_receipt_info": [
                {
                    "transaction_id": "3000",
                    "original_transaction_id": "3000",
                    "product_id": LIFETIME,
                    "purchase_date_ms": str(to_ms(NOW - timedelta(days=2))),
                }
            ],
        },
    )


@pytest.fixture
async def services(engine, session_factory, catalog, store, signed_payload_verifier, clock):
    async def no_sleep(delay: float) -> None:
        return None

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lifetime_receipt_response))
    container = ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        catalog=catalog,
        store=store,
        verifier=ReceiptVerifier(
            settings, catalog, signed_payload_verifier, http_client, sleep=no_sleep, clock=clock
        ),
        ingestor=NotificationIngestor(store, signed_payload_verifier, catalog, clock=clock),
    )
    app.state.services = container
    yield container
    del app.state.services
    app.dependency_overrides.clear()
    await http_client.aclose()


@pytest.fixture
async def client(services):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestStatusEndpoint:
    async def test_no_user_is_not_ad_free(self, client):
        response = await client.get("/v1/entitlements/status")

        assert response.status_code == 200
        assert response.json() == {
            "isAdFree": False,
            "productType": None,
            "expiresAt": None,
            "activeProductIds": [],
        }

    async def test_invalid_token_is_rejected(self, client):
        response = await client.get(
            "/v1/entitlements/status", headers=bearer(make_access_token(secret="x" * 40))
        )

        assert response.status_code == 401

    async def test_expired_token_is_rejected(self, client):
        token = make_access_token(expires_in=-timedelta(minutes=5))

        response = await client.get("/v1/entitlements/status", headers=bearer(token))

        assert response.status_code == 401
        assert response.json()["detail"] == "Token has expired"

    async def test_user_status_from_store(self, client, store, access_token, record_factory):
        await store.upsert(record_factory("t1", product_id=LIFETIME, expires_date=None))
        await store.recompute("user-1")

        response = await client.get("/v1/entitlements/status", headers=bearer(access_token))

        assert response.status_code == 200
        body = response.json()
        assert body["isAdFree"] is True
        assert body["productType"] == "lifetime"
        assert body["activeProductIds"] == [LIFETIME]

    async def test_storage_failure_is_503(self, client, access_token):
        failing = MagicMock()
        failing.get_status = AsyncMock(side_effect=StorageError("get_status", "db down"))
        app.dependency_overrides[get_store] = lambda: failing

        response = await client.get("/v1/entitlements/status", headers=bearer(access_token))

        assert response.status_code == 503


class TestRecordPurchaseEndpoint:
    async def test_requires_user(self, client):
        response = await client.post(
            "/v1/entitlements/records",
            json={"productId": LIFETIME, "receiptData": "abc"},
        )

        assert response.status_code == 401

    async def test_signed_transaction_is_recorded(self, client, signing_chain, access_token):
        token = signing_chain.sign(
            transaction_payload("4000", product_id=LIFETIME, expires_date=None)
        )

        response = await client.post(
            "/v1/entitlements/records",
            json={"productId": LIFETIME, "transactionId": "4000", "signedTransaction": token},
            headers=bearer(access_token),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["verified"] is True
        assert body["recordedTransactionIds"] == ["4000"]
        assert body["status"]["isAdFree"] is True
        assert body["status"]["productType"] == "lifetime"

        status = await client.get("/v1/entitlements/status", headers=bearer(access_token))
        assert status.json()["isAdFree"] is True

    async def test_receipt_is_verified_with_app_store(self, client, store, access_token):
        response = await client.post(
            "/v1/entitlements/records",
            json={"productId": LIFETIME, "receiptData": "MIIT...base64"},
            headers=bearer(access_token),
        )

        assert response.status_code == 200
        assert response.json()["recordedTransactionIds"] == ["3000"]
        record = await store.get("3000")
        assert record is not None
        assert record.user_id == "user-1"
        assert record.receipt_data == "MIIT...base64"
        assert record.verification_status == "verified"

    async def test_refunded_purchase_is_not_restored_by_device_evidence(
        self, client, notifications, signing_chain, store, access_token
    ):
        purchase = {
            "transaction_id": "9001",
            "product_id": LIFETIME,
            "expires_date": None,
            "app_account_token": "user-1",
        }
        # The device keeps the JWS it received at purchase time
        device_copy = signing_chain.sign(transaction_payload(**purchase))
        await client.post(
            "/v1/webhooks/apple", content=notifications.body("ONE_TIME_CHARGE", **purchase)
        )
        refunded_at = NOW + timedelta(hours=1)
        refund = await client.post(
            "/v1/webhooks/apple",
            content=notifications.body(
                "REFUND", signed_date=refunded_at, revocation_date=refunded_at, **purchase
            ),
        )
        assert refund.json()["outcome"] == "processed"

        response = await client.post(
            "/v1/entitlements/records",
            json={"productId": LIFETIME, "transactionId": "9001", "signedTransaction": device_copy},
            headers=bearer(access_token),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["verified"] is False
        assert body["recordedTransactionIds"] == []
        assert body["status"]["isAdFree"] is False
        stored = await store.get("9001")
        assert stored is not None
        assert stored.is_active is False
        assert stored.deactivation_reason == "REFUND"
        assert stored.last_notification_type == "REFUND"
        status = await client.get("/v1/entitlements/status", headers=bearer(access_token))
        assert status.json()["isAdFree"] is False

    async def test_unverifiable_evidence_records_nothing(self, client, session_factory, access_token):
        response = await client.post(
            "/v1/entitlements/records",
            json={"productId": LIFETIME, "signedTransaction": "a.b.c"},
            headers=bearer(access_token),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["verified"] is False
        assert body["recordedTransactionIds"] == []
        assert body["reason"]
        assert body["status"]["isAdFree"] is False
        assert await count_rows(session_factory) == 0

    @pytest.mark.parametrize(
        "payload",
        [
            {"productId": LIFETIME},
            {"productId": LIFETIME, "receiptData": "r", "signedTransaction": "a.b.c"},
            {"receiptData": "r"},
        ],
    )
    async def test_evidence_must_be_exactly_one(self, client, access_token, payload):
        response = await client.post(
            "/v1/entitlements/records", json=payload, headers=bearer(access_token)
        )

        assert response.status_code == 422


class TestAppleWebhook:
    async def test_verified_notification_is_processed(self, client, notifications, store):
        body = notifications.body(
            "ONE_TIME_CHARGE",
            transaction_id="5000",
            product_id=LIFETIME,
            expires_date=None,
            app_account_token="user-9",
        )

        response = await client.post("/v1/webhooks/apple", content=body)

        assert response.status_code == 200
        assert response.json() == {"success": True, "outcome": "processed"}
        assert (await store.get_status("user-9")).is_ad_free is True

    async def test_redelivery_is_acknowledged(self, client, notifications):
        body = notifications.body("SUBSCRIBED", transaction_id="5001")

        first = await client.post("/v1/webhooks/apple", content=body)
        second = await client.post("/v1/webhooks/apple", content=body)

        assert first.status_code == second.status_code == 200
        assert second.json()["outcome"] == "duplicate"

    @pytest.mark.parametrize(
        "content",
        [b"not json", json.dumps({"signedPayload": "x.y.z"}).encode()],
    )
    async def test_bad_payload_is_400(self, client, content):
        response = await client.post("/v1/webhooks/apple", content=content)

        assert response.status_code == 400

    async def test_invalid_jose_header_is_400(self, client, notifications):
        signed_payload = json.loads(notifications.body("SUBSCRIBED"))["signedPayload"]
        _, payload, signature = signed_payload.split(".")
        header = jwt.utils.base64url_encode(json.dumps({"alg": "ES256", "kid": 5}).encode()).decode()

        response = await client.post(
            "/v1/webhooks/apple", json={"signedPayload": f"{header}.{payload}.{signature}"}
        )

        assert response.status_code == 400

    async def test_storage_failure_is_500(self, client, notifications):
        failing = MagicMock()
        failing.ingest = AsyncMock(side_effect=StorageError("upsert", "db down"))
        app.dependency_overrides[get_ingestor] = lambda: failing

        response = await client.post(
            "/v1/webhooks/apple", content=notifications.body("SUBSCRIBED")
        )

        assert response.status_code == 500


class TestOperationalEndpoints:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"

    async def test_root(self, client):
        response = await client.get("/")

        assert response.json()["status"] == "running"

    async def test_metrics(self, client):
        await client.get("/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "adfree_http_requests_total" in response.text

    async def test_services_missing_is_503(self):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get("/health")

        assert response.status_code == 503


class TestDecodeAccessToken:
    def test_valid_token(self):
        identity = decode_access_token(make_access_token("abc"), settings)

        assert identity.user_id == "abc"
        assert identity.email == "abc@example.com"

    def test_wrong_audience(self):
        with pytest.raises(AuthenticationError):
            decode_access_token(make_access_token(audience="anon"), settings)

    def test_missing_secret(self):
        config = settings.model_copy(update={"supabase_jwt_secret": ""})

        with pytest.raises(AuthenticationError, match="not configured"):
            decode_access_token(make_access_token(), config)
