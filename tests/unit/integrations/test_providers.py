"""Unit tests for the settlement provider clients."""

import json
from decimal import Decimal

import httpx
import pytest

from ussd_wallet.errors import ExternalFailure, ExternalTimeout, UnsupportedCurrency
from ussd_wallet.integrations.http import request_json
from ussd_wallet.integrations.providers import (
    KotaniPayClient,
    LegKind,
    ProviderRegistry,
    ProviderStatus,
    YellowCardClient,
)
from ussd_wallet.integrations.providers.base import normalize_status
from ussd_wallet.integrations.providers.yellowcard import YELLOWCARD_STATUSES, YellowCardAuth

PHONE = "254712345678"
CALLBACK = "https://wallet.test/api/v1/webhooks/kotanipay"


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response | Exception]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.routes.get((request.method, request.url.path))
        if outcome is None:
            return httpx.Response(404, json={"message": "not found"})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def kotani(recorder: Recorder) -> KotaniPayClient:
    client = httpx.Client(
        base_url="https://kotani.test/api/v3", transport=httpx.MockTransport(recorder)
    )
    return KotaniPayClient(
        base_url="https://kotani.test/api/v3",
        api_key="kp_key",
        integrator_id="integrator-1",
        http_client=client,
    )


def yellowcard(recorder: Recorder) -> YellowCardClient:
    client = httpx.Client(
        base_url="https://yc.test",
        auth=YellowCardAuth("yc_key", "yc_secret"),
        transport=httpx.MockTransport(recorder),
    )
    return YellowCardClient(
        base_url="https://yc.test",
        api_key="yc_key",
        secret_key="yc_secret",
        http_client=client,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Shared helpers
# ─────────────────────────────────────────────────────────────────────────────

class TestNormalizeStatus:
    """Tests for provider status mapping."""

    def test_known_values(self):
        """Should map case-insensitively with surrounding spaces."""
        assert normalize_status(" Completed ", YELLOWCARD_STATUSES) is ProviderStatus.COMPLETED
        assert normalize_status("expired", YELLOWCARD_STATUSES) is ProviderStatus.FAILED

    def test_unknown_counts_as_pending(self):
        """Should never treat an unknown status as final."""
        assert normalize_status("on_hold", YELLOWCARD_STATUSES) is ProviderStatus.PENDING
        assert normalize_status(None, YELLOWCARD_STATUSES) is ProviderStatus.PENDING


class TestRequestJson:
    """Tests for transport error mapping."""

    def make_client(self, handler) -> httpx.Client:
        return httpx.Client(base_url="https://peer.test", transport=httpx.MockTransport(handler))

    def test_read_timeout_is_unknown_outcome(self):
        """Should raise ExternalTimeout when the peer may have acted."""
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ExternalTimeout):
            request_json(self.make_client(handler), "POST", "/v1/mint", "custody")

    def test_connect_error_is_failure(self):
        """Should raise ExternalFailure when the request never left."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalFailure) as exc_info:
            request_json(self.make_client(handler), "POST", "/v1/mint", "custody")
        assert not isinstance(exc_info.value, ExternalTimeout)

    def test_http_error(self):
        """Should raise ExternalFailure with the status code."""
        client = self.make_client(lambda request: httpx.Response(503, text="down"))

        with pytest.raises(ExternalFailure, match="custody returned 503"):
            request_json(client, "GET", "/v1/balances/0xabc", "custody")

    def test_not_found_allowed(self):
        """Should return an empty dict for an allowed 404."""
        client = self.make_client(lambda request: httpx.Response(404))

        assert request_json(client, "GET", "/x", "peer", allow_not_found=True) == {}

    def test_body_shapes(self):
        """Should wrap lists and accept empty bodies."""
        assert request_json(
            self.make_client(lambda request: httpx.Response(200, json=[1, 2])), "GET", "/x", "peer"
        ) == {"data": [1, 2]}
        assert request_json(
            self.make_client(lambda request: httpx.Response(204)), "GET", "/x", "peer"
        ) == {}

    def test_non_json_body(self):
        """Should reject a body that is not JSON."""
        client = self.make_client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(ExternalFailure, match="non-JSON"):
            request_json(client, "GET", "/x", "peer")


# ─────────────────────────────────────────────────────────────────────────────
# Kotani Pay
# ─────────────────────────────────────────────────────────────────────────────

class TestKotaniPayClient:
    """Tests for the Kotani Pay client."""

    def test_collection_with_existing_customer(self):
        """Should reuse the customer key and post the collection."""
        recorder = Recorder({
            ("GET", f"/api/v3/customer/mobile-money/phone/{PHONE}"): httpx.Response(
                200, json={"data": {"customer_key": "ck_1"}}
            ),
            ("POST", "/api/v3/deposit/mobile-money"): httpx.Response(
                200, json={"data": {"transaction_id": "kp-1", "status": "initiated"}}
            ),
        })

        result = kotani(recorder).initiate_collection(
            PHONE, Decimal("1000"), "kes", CALLBACK, reference="tx-1"
        )

        assert result.provider_tx_id == "kp-1"
        assert result.status is ProviderStatus.PENDING
        body = recorder.body()
        assert body["customer_key"] == "ck_1"
        assert body["amount"] == "1000"
        assert body["currency"] == "KES"
        assert body["reference_id"] == "tx-1"
        assert body["callback_url"] == CALLBACK
        assert recorder.requests[-1].headers["Authorization"] == "Bearer kp_key"

    def test_creates_missing_customer(self):
        """Should create the customer on first use."""
        recorder = Recorder({
            ("POST", "/api/v3/customer/mobile-money"): httpx.Response(
                201, json={"data": {"customer_key": "ck_new"}}
            ),
            ("POST", "/api/v3/withdraw/mobile-money"): httpx.Response(
                200, json={"data": {"id": "kp-2", "status": "successful"}}
            ),
        })

        result = kotani(recorder).initiate_disbursement(
            PHONE, Decimal("6500"), "KES", CALLBACK, reference="tx-2"
        )

        assert result.status is ProviderStatus.COMPLETED
        assert recorder.body(1) == {
            "phone": PHONE,
            "country": "KE",
            "integrator_id": "integrator-1",
        }
        assert recorder.body()["customer_key"] == "ck_new"

    def test_unsupported_currency(self):
        """Should refuse before calling the API."""
        recorder = Recorder({})

        with pytest.raises(UnsupportedCurrency):
            kotani(recorder).initiate_collection(PHONE, Decimal("10"), "ZAR", CALLBACK, "tx-3")
        assert recorder.requests == []

    def test_missing_transaction_id(self):
        """Should fail when the response has no reference."""
        recorder = Recorder({
            ("GET", f"/api/v3/customer/mobile-money/phone/{PHONE}"): httpx.Response(
                200, json={"customer_key": "ck_1"}
            ),
            ("POST", "/api/v3/deposit/mobile-money"): httpx.Response(200, json={"status": "pending"}),
        })

        with pytest.raises(ExternalFailure, match="missing transaction id"):
            kotani(recorder).initiate_collection(PHONE, Decimal("10"), "KES", CALLBACK, "tx-4")

    def test_query_status(self):
        """Should query the leg-specific status endpoint."""
        recorder = Recorder({
            ("GET", "/api/v3/withdraw/mobile-money/status/kp-9"): httpx.Response(
                200, json={"data": {"status": "reversed"}}
            ),
        })

        status = kotani(recorder).query_status("kp-9", LegKind.DISBURSEMENT)

        assert status is ProviderStatus.FAILED

    def test_parse_withdrawal_webhook(self):
        """Should map a withdrawal callback to a disbursement event."""
        event = kotani(Recorder({})).parse_webhook({
            "transaction_id": "kp-2",
            "type": "withdrawal",
            "status": "failed",
            "amount": 6500,
            "currency": "KES",
            "phone": PHONE,
        })

        assert event.event_type == "disbursement.failed"
        assert event.kind is LegKind.DISBURSEMENT
        assert event.amount == Decimal("6500")
        assert event.customer_phone == PHONE

    def test_parse_nested_deposit_webhook(self):
        """Should read the data envelope and default to collections."""
        event = kotani(Recorder({})).parse_webhook(
            {"data": {"id": "kp-1", "status": "success"}}
        )

        assert event.event_type == "collection.completed"
        assert event.amount is None

    def test_webhook_without_id(self):
        """Should reject a callback without a reference."""
        with pytest.raises(ValueError):
            kotani(Recorder({})).parse_webhook({"status": "success"})


# ─────────────────────────────────────────────────────────────────────────────
# Yellow Card
# ─────────────────────────────────────────────────────────────────────────────

class TestYellowCardClient:
    """Tests for the Yellow Card client."""

    def test_collection_is_signed(self):
        """Should sign the request with the HMAC scheme."""
        recorder = Recorder({
            ("POST", "/business/collections"): httpx.Response(
                200, json={"id": "yc-1", "status": "created"}
            ),
        })

        result = yellowcard(recorder).initiate_collection(
            PHONE, Decimal("1300"), "KES", CALLBACK, reference="tx-1"
        )

        assert result.provider_tx_id == "yc-1"
        assert result.status is ProviderStatus.PENDING
        request = recorder.requests[-1]
        timestamp = request.headers["X-YC-Timestamp"]
        expected = YellowCardAuth("yc_key", "yc_secret").sign(
            timestamp, "/business/collections", "POST", request.content
        )
        assert request.headers["Authorization"] == f"YcHmacV1 yc_key:{expected}"

        body = recorder.body()
        assert body["customer"] == {"phoneNumber": f"+{PHONE}"}
        assert body["country"] == "KE"
        assert body["sequenceId"] == "tx-1"

    def test_disbursement_names_beneficiary(self):
        """Should post payouts with a beneficiary."""
        recorder = Recorder({
            ("POST", "/business/payments"): httpx.Response(
                200, json={"id": "yc-2", "status": "processing"}
            ),
        })

        yellowcard(recorder).initiate_disbursement(PHONE, Decimal("6500"), "KES", CALLBACK, "tx-2")

        assert "beneficiary" in recorder.body()
        assert "customer" not in recorder.body()

    def test_signature_covers_body(self):
        """Should change the signature when the body changes."""
        auth = YellowCardAuth("yc_key", "yc_secret")
        ts = "2026-01-01T00:00:00+00:00"

        first = auth.sign(ts, "/business/payments", "POST", b'{"amount":"1"}')
        second = auth.sign(ts, "/business/payments", "POST", b'{"amount":"2"}')

        assert first != second
        assert auth.sign(ts, "/x", "GET", b"") == auth.sign(ts, "/x", "GET", b"ignored")

    def test_query_status(self):
        """Should read the payment status."""
        recorder = Recorder({
            ("GET", "/business/payments/yc-2"): httpx.Response(200, json={"status": "complete"}),
        })

        assert yellowcard(recorder).query_status("yc-2", LegKind.DISBURSEMENT) is ProviderStatus.COMPLETED

    def test_parse_webhook(self):
        """Should take the status from the event suffix."""
        event = yellowcard(Recorder({})).parse_webhook({
            "event_type": "collection.completed",
            "data": {
                "id": "yc-1",
                "status": "processing",
                "amount": "1300.00",
                "currency": "KES",
                "customer_phone": f"+{PHONE}",
            },
        })

        assert event.event_type == "collection.completed"
        assert event.status is ProviderStatus.COMPLETED
        assert event.amount == Decimal("1300.00")
        assert event.customer_phone == PHONE

    @pytest.mark.parametrize("payload", [
        {"data": {"id": "yc-1"}},
        {"event_type": "collection.completed", "data": {}},
        {"event_type": "refund.completed", "data": {"id": "yc-1"}},
    ])
    def test_rejects_malformed_webhooks(self, payload):
        """Should raise ValueError for unusable payloads."""
        with pytest.raises(ValueError):
            yellowcard(Recorder({})).parse_webhook(payload)


class TestProviderRegistry:
    """Tests for the provider registry."""

    def test_lookup(self):
        """Should find providers by name in registration order."""
        kp, yc = kotani(Recorder({})), yellowcard(Recorder({}))
        registry = ProviderRegistry([kp, yc])

        assert registry.names() == ["kotanipay", "yellowcard"]
        assert registry.get("yellowcard") is yc
        assert "mpesa" not in registry

    def test_unknown_provider(self):
        """Should raise KeyError naming the provider."""
        with pytest.raises(KeyError, match="mpesa"):
            ProviderRegistry().get("mpesa")

    def test_close(self, mocker):
        """Should close every provider."""
        kp = kotani(Recorder({}))
        close = mocker.patch.object(kp, "close")

        ProviderRegistry([kp]).close()

        close.assert_called_once_with()
