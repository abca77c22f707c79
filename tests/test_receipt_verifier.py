"""
Tests for ReceiptVerifier.

The verifyReceipt endpoints are served by httpx.MockTransport; backoff sleeps
are recorded instead of awaited.
"""

import json
from datetime import timedelta

import httpx
import pytest

from adfree.config import settings
from adfree.models.apple import datetime_from_ms
from adfree.models.domain import ProductKind, StoreEnvironment
from adfree.services.receipt_verifier import ReceiptVerifier
from conftest import LIFETIME, MONTHLY, NOW, to_ms, transaction_payload

PRODUCTION_URL = settings.apple_verify_receipt_production_url
SANDBOX_URL = settings.apple_verify_receipt_sandbox_url


def receipt_entry(
    transaction_id: str,
    product_id: str = MONTHLY,
    *,
    expires_in: timedelta | None = timedelta(days=20),
    cancelled: bool = False,
) -> dict:
    entry = {
        "transaction_id": transaction_id,
        "original_transaction_id": transaction_id,
        "product_id": product_id,
        "purchase_date_ms": str(to_ms(NOW - timedelta(days=10))),
        "original_purchase_date_ms": str(to_ms(NOW - timedelta(days=10))),
    }
    if expires_in is not None:
        entry["expires_date_ms"] = str(to_ms(NOW + expires_in))
    if cancelled:
        entry["cancellation_date_ms"] = str(to_ms(NOW - timedelta(days=1)))
    return entry


class FakeAppStore:
    """Scripted verifyReceipt responses, consumed in order."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def urls(self) -> list[str]:
        return [str(r.url) for r in self.requests]


def ok(body: dict) -> httpx.Response:
    return httpx.Response(200, json=body)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_verifier(catalog, signed_payload_verifier, clock, sleeps):
    clients: list[httpx.AsyncClient] = []

    def _make(store: FakeAppStore, **overrides) -> ReceiptVerifier:
        async def record_sleep(delay: float) -> None:
            sleeps.append(delay)

        config = settings.model_copy(update={"apple_shared_secret": "shh", **overrides})
        client = httpx.AsyncClient(transport=httpx.MockTransport(store))
        clients.append(client)
        return ReceiptVerifier(
            config, catalog, signed_payload_verifier, client, sleep=record_sleep, clock=clock
        )

    return _make


class TestVerifyReceipt:
    async def test_active_subscription_is_valid(self, make_verifier):
        store = FakeAppStore(
            ok({"status": 0, "environment": "Production", "latest_receipt_info": [receipt_entry("1")]})
        )

        result = await make_verifier(store).verify("base64-receipt")

        assert result.valid is True
        assert result.environment is StoreEnvironment.PRODUCTION
        assert [tx.product_id for tx in result.transactions] == [MONTHLY]
        assert result.transactions[0].kind is ProductKind.SUBSCRIPTION
        assert result.transactions[0].expired is False

    async def test_request_body_carries_secret_and_exclusion_flag(self, make_verifier):
        store = FakeAppStore(ok({"status": 0, "latest_receipt_info": []}))

        await make_verifier(store).verify("base64-receipt")

        body = json.loads(store.requests[0].content)
        assert body == {
            "receipt-data": "base64-receipt",
            "password": "shh",
            "exclude-old-transactions": True,
        }

    async def test_raw_bytes_are_base64_encoded(self, make_verifier):
        store = FakeAppStore(ok({"status": 0, "latest_receipt_info": []}))

        await make_verifier(store).verify(b"\x01\x02receipt")

        assert json.loads(store.requests[0].content)["receipt-data"] == "AQJyZWNlaXB0"

    async def test_lifetime_marker_zero_expiry(self, make_verifier):
        entry = receipt_entry("9", LIFETIME, expires_in=None)
        entry["expires_date_ms"] = "0"
        store = FakeAppStore(ok({"status": 0, "receipt": {"in_app": [entry]}}))

        result = await make_verifier(store).verify("r")

        assert result.valid is True
        assert result.transactions[0].kind is ProductKind.LIFETIME
        assert result.transactions[0].expires_date is None

    async def test_expired_only_receipt_is_invalid(self, make_verifier):
        store = FakeAppStore(
            ok(
                {
                    "status": 0,
                    "latest_receipt_info": [
                        receipt_entry("1", expires_in=-timedelta(days=1)),
                        receipt_entry("2", expires_in=-timedelta(days=31)),
                    ],
                }
            )
        )

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert len(result.transactions) == 2
        assert all(tx.expired for tx in result.transactions)
        assert result.error

    async def test_unknown_products_are_filtered(self, make_verifier):
        store = FakeAppStore(
            ok({"status": 0, "latest_receipt_info": [receipt_entry("1", "com.other.coins")]})
        )

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert result.transactions == ()

    async def test_cancelled_transactions_are_ignored(self, make_verifier):
        store = FakeAppStore(
            ok({"status": 0, "latest_receipt_info": [receipt_entry("1", LIFETIME, expires_in=None, cancelled=True)]})
        )

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert result.transactions == ()

    async def test_sandbox_receipt_is_retried_once_against_sandbox(self, make_verifier):
        store = FakeAppStore(
            ok({"status": 21007}),
            ok({"status": 0, "environment": "Sandbox", "latest_receipt_info": [receipt_entry("1")]}),
        )

        result = await make_verifier(store).verify("r")

        assert result.valid is True
        assert result.environment is StoreEnvironment.SANDBOX
        assert store.urls() == [PRODUCTION_URL, SANDBOX_URL]
        assert result.transactions[0].environment is StoreEnvironment.SANDBOX

    async def test_production_receipt_on_sandbox_build_is_retried(self, make_verifier):
        store = FakeAppStore(
            ok({"status": 21008}),
            ok({"status": 0, "environment": "Production", "latest_receipt_info": [receipt_entry("1")]}),
        )

        result = await make_verifier(store, apple_environment="sandbox").verify("r")

        assert result.valid is True
        assert store.urls() == [SANDBOX_URL, PRODUCTION_URL]

    async def test_redirect_happens_only_once(self, make_verifier):
        store = FakeAppStore(ok({"status": 21007}), ok({"status": 21008}))

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert result.status_code == 21008
        assert len(store.requests) == 2

    async def test_malformed_receipt_status(self, make_verifier):
        store = FakeAppStore(ok({"status": 21002}))

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert result.status_code == 21002
        assert "21002" in (result.error or "")

    async def test_network_failure_is_retried_then_invalid(self, make_verifier, sleeps):
        store = FakeAppStore(
            httpx.ConnectError("boom"),
            httpx.ReadTimeout("slow"),
            httpx.ConnectError("boom"),
        )

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert result.error
        assert len(store.requests) == 3
        assert sleeps == [0.5, 1.0]

    async def test_transient_status_recovers(self, make_verifier, sleeps):
        store = FakeAppStore(
            ok({"status": 21005}),
            httpx.Response(503),
            ok({"status": 0, "latest_receipt_info": [receipt_entry("1")]}),
        )

        result = await make_verifier(store).verify("r")

        assert result.valid is True
        assert sleeps == [0.5, 1.0]

    async def test_non_json_response_is_invalid(self, make_verifier):
        store = FakeAppStore(httpx.Response(200, text="<html>oops</html>"))

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert "Malformed" in (result.error or "")

    @pytest.mark.parametrize("status", [{"code": 0}, [0], "zero"])
    async def test_non_numeric_status_is_invalid(self, make_verifier, status):
        store = FakeAppStore(ok({"status": status}))

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert "Malformed" in (result.error or "")

    async def test_out_of_range_dates_are_dropped(self, make_verifier):
        unbounded = receipt_entry("1")
        unbounded["expires_date_ms"] = "99999999999999999999"
        undated = receipt_entry("2", LIFETIME, expires_in=None)
        undated["purchase_date_ms"] = "99999999999999999999"
        store = FakeAppStore(ok({"status": 0, "latest_receipt_info": [unbounded, undated]}))

        result = await make_verifier(store).verify("r")

        assert result.valid is False
        assert result.transactions == ()

    async def test_empty_receipt_makes_no_request(self, make_verifier):
        store = FakeAppStore()

        result = await make_verifier(store).verify("   ")

        assert result.valid is False
        assert store.requests == []


class TestVerifySignedTransaction:
    async def test_active_signed_transaction_is_valid(self, make_verifier, signing_chain):
        token = signing_chain.sign(transaction_payload("77", product_id=LIFETIME, expires_date=None))

        result = await make_verifier(FakeAppStore()).verify_signed_transaction(token)

        assert result.valid is True
        assert result.transactions[0].transaction_id == "77"
        assert result.transactions[0].kind is ProductKind.LIFETIME

    async def test_revoked_transaction_is_invalid(self, make_verifier, signing_chain):
        token = signing_chain.sign(
            transaction_payload("78", revocation_date=NOW - timedelta(hours=1))
        )

        result = await make_verifier(FakeAppStore()).verify_signed_transaction(token)

        assert result.valid is False
        assert result.error == "Transaction was revoked"

    async def test_expired_transaction_is_invalid(self, make_verifier, signing_chain):
        token = signing_chain.sign(
            transaction_payload("79", expires_date=NOW - timedelta(days=2))
        )

        result = await make_verifier(FakeAppStore()).verify_signed_transaction(token)

        assert result.valid is False
        assert result.transactions[0].expired is True

    async def test_bad_signature_never_raises(self, make_verifier):
        result = await make_verifier(FakeAppStore()).verify_signed_transaction("x.y.z")

        assert result.valid is False
        assert result.error

    async def test_subscription_without_expiry_is_invalid(self, make_verifier, signing_chain):
        token = signing_chain.sign(transaction_payload("81", product_id=MONTHLY, expires_date=None))

        result = await make_verifier(FakeAppStore()).verify_signed_transaction(token)

        assert result.valid is False
        assert "no expiry" in (result.error or "")

    async def test_unknown_product_is_invalid(self, make_verifier, signing_chain):
        token = signing_chain.sign(transaction_payload("80", product_id="com.other.coins"))

        result = await make_verifier(FakeAppStore()).verify_signed_transaction(token)

        assert result.valid is False
        assert "Unrecognized product" in (result.error or "")


@pytest.mark.parametrize(
    "value, expected",
    [
        (to_ms(NOW), NOW),
        (str(to_ms(NOW)), NOW),
        (None, None),
        ("", None),
        ("0", None),
        ("soon", None),
        ({"ms": 1}, None),
        ("99999999999999999999", None),
        (-(10**20), None),
    ],
)
def test_datetime_from_ms(value, expected):
    assert datetime_from_ms(value) == expected
