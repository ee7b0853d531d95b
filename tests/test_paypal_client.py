import json
from decimal import Decimal

import httpx
import pytest

from conftest import completed_order_body, issue_body, pending_order_body
from payments_service.application.errors import (
    GatewayAuthError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from payments_service.infrastructure.paypal import (
    LIVE_BASE_URL,
    SANDBOX_BASE_URL,
    AccessToken,
    CaptureAlreadyDone,
    CapturePending,
    CaptureRejected,
    CaptureSucceeded,
    PayPalClient,
    ReturnUrls,
    base_url_for,
)

TOKEN = AccessToken("A21-token")
URLS = ReturnUrls("https://shop.test/return", "https://shop.test/cancel")


def client_for(handler) -> PayPalClient:
    return PayPalClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), base_url=SANDBOX_BASE_URL)


def test_base_url_per_environment():
    assert base_url_for("live") == LIVE_BASE_URL
    assert base_url_for("sandbox") == SANDBOX_BASE_URL


async def test_authenticate_uses_client_credentials_grant():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={"access_token": "tok", "token_type": "Bearer", "expires_in": 100})

    token = await client_for(handler).authenticate("id", "secret")
    assert token.value == "tok"
    assert token.expires_in == 100
    assert seen["auth"].startswith("Basic ")
    assert seen["body"] == "grant_type=client_credentials"


async def test_authenticate_rejected_credentials():
    def handler(request):
        return httpx.Response(401, json={"error": "invalid_client", "error_description": "Client Authentication failed"})

    with pytest.raises(GatewayAuthError) as exc:
        await client_for(handler).authenticate("id", "wrong")
    assert exc.value.status_code == 400
    assert exc.value.code == "AUTH_FAILED"


async def test_authenticate_without_secret_makes_no_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(GatewayAuthError):
        await client_for(handler).authenticate("id", "")
    assert calls == []


async def test_create_remote_payment_request_shape():
    seen = {}

    def handler(request):
        seen["request_id"] = request.headers.get("PayPal-Request-Id")
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={
            "id": "PAYPAL-1",
            "status": "CREATED",
            "links": [{"href": "https://paypal.test/approve/PAYPAL-1", "rel": "approve"}],
        })

    remote = await client_for(handler).create_remote_payment(
        TOKEN, Decimal("26.666"), "USD", "MD-20261018-001", URLS, custom_id="7", brand_name="Maison Darin",
    )

    assert remote.remote_id == "PAYPAL-1"
    assert remote.approval_url == "https://paypal.test/approve/PAYPAL-1"
    assert seen["request_id"] == "MD-20261018-001-create"
    assert seen["auth"] == "Bearer A21-token"
    unit = seen["body"]["purchase_units"][0]
    assert seen["body"]["intent"] == "CAPTURE"
    assert unit["reference_id"] == "MD-20261018-001"
    assert unit["custom_id"] == "7"
    assert unit["amount"] == {"currency_code": "USD", "value": "26.67"}
    assert seen["body"]["application_context"]["return_url"] == "https://shop.test/return"


async def test_create_remote_payment_business_error_keeps_payload():
    def handler(request):
        return httpx.Response(422, json=issue_body("CURRENCY_NOT_SUPPORTED", "Currency not supported"))

    with pytest.raises(GatewayRequestError) as exc:
        await client_for(handler).create_remote_payment(TOKEN, Decimal("10"), "USD", "REF", URLS)
    assert exc.value.status_code == 400
    assert exc.value.issue == "CURRENCY_NOT_SUPPORTED"
    assert exc.value.payload["details"][0]["issue"] == "CURRENCY_NOT_SUPPORTED"


async def test_create_remote_payment_provider_outage_is_502():
    def handler(request):
        return httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})

    with pytest.raises(GatewayRequestError) as exc:
        await client_for(handler).create_remote_payment(TOKEN, Decimal("10"), "USD", "REF", URLS)
    assert exc.value.status_code == 502


async def test_timeout_and_network_errors():
    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayTimeoutError):
        await client_for(timeout).create_remote_payment(TOKEN, Decimal("10"), "USD", "REF", URLS)
    with pytest.raises(GatewayUnavailableError):
        await client_for(refused).capture_remote_payment(TOKEN, "PAYPAL-1")


async def test_capture_completed():
    seen = {}

    def handler(request):
        seen["request_id"] = request.headers.get("PayPal-Request-Id")
        return httpx.Response(201, json=completed_order_body("PAYPAL-1", "CAP-9", "26.67"))

    outcome = await client_for(handler).capture_remote_payment(TOKEN, "PAYPAL-1")
    assert isinstance(outcome, CaptureSucceeded)
    assert outcome.capture_id == "CAP-9"
    assert outcome.amount == {"currency_code": "USD", "value": "26.67"}
    assert seen["request_id"] == "capture-PAYPAL-1"


async def test_capture_already_captured_is_recognised():
    def handler(request):
        return httpx.Response(422, json=issue_body("ORDER_ALREADY_CAPTURED"))

    outcome = await client_for(handler).capture_remote_payment(TOKEN, "PAYPAL-1")
    assert isinstance(outcome, CaptureAlreadyDone)


@pytest.mark.parametrize("issue", ["INSTRUMENT_DECLINED", "ORDER_NOT_APPROVED", "COMPLIANCE_VIOLATION"])
async def test_capture_known_rejections_keep_issue(issue):
    def handler(request):
        return httpx.Response(422, json=issue_body(issue, "declined"))

    outcome = await client_for(handler).capture_remote_payment(TOKEN, "PAYPAL-1")
    assert isinstance(outcome, CaptureRejected)
    assert outcome.issue == issue
    assert outcome.provider_issue == issue
    assert outcome.description == "declined"


async def test_capture_unknown_rejection_maps_to_capture_failed():
    def handler(request):
        return httpx.Response(422, json=issue_body("MAX_NUMBER_OF_PAYMENT_ATTEMPTS_EXCEEDED"))

    outcome = await client_for(handler).capture_remote_payment(TOKEN, "PAYPAL-1")
    assert outcome.issue == "CAPTURE_FAILED"
    assert outcome.provider_issue == "MAX_NUMBER_OF_PAYMENT_ATTEMPTS_EXCEEDED"


async def test_capture_pending():
    def handler(request):
        return httpx.Response(201, json=pending_order_body("PAYPAL-1", "CAP-1"))

    outcome = await client_for(handler).capture_remote_payment(TOKEN, "PAYPAL-1")
    assert isinstance(outcome, CapturePending)
    assert outcome.capture_id == "CAP-1"
    assert outcome.reason == "PENDING_REVIEW"


async def test_capture_declined_capture_status():
    body = completed_order_body("PAYPAL-1")
    body["purchase_units"][0]["payments"]["captures"][0]["status"] = "DECLINED"

    def handler(request):
        return httpx.Response(201, json=body)

    outcome = await client_for(handler).capture_remote_payment(TOKEN, "PAYPAL-1")
    assert isinstance(outcome, CaptureRejected)
    assert outcome.issue == "CAPTURE_DENIED"


async def test_get_remote_order_parses_capture():
    def handler(request):
        assert request.method == "GET"
        body = completed_order_body("PAYPAL-1", "CAP-5")
        body["purchase_units"][0]["custom_id"] = "12"
        return httpx.Response(200, json=body)

    remote = await client_for(handler).get_remote_order(TOKEN, "PAYPAL-1")
    assert remote.status == "COMPLETED"
    assert remote.custom_id == "12"
    assert isinstance(remote.capture, CaptureSucceeded)
    assert remote.capture.capture_id == "CAP-5"


async def test_refund_capture_request_shape():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["request_id"] = request.headers.get("PayPal-Request-Id")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={
            "id": "REFUND-1", "status": "COMPLETED", "amount": {"currency_code": "USD", "value": "26.67"},
        })

    refund = await client_for(handler).refund_capture(TOKEN, "CAP-9", Decimal("26.670"), "USD", "Damaged on arrival")
    assert refund.refund_id == "REFUND-1"
    assert refund.status == "COMPLETED"
    assert refund.amount == {"currency_code": "USD", "value": "26.67"}
    assert seen["path"] == "/v2/payments/captures/CAP-9/refund"
    assert seen["request_id"] == "refund-CAP-9"
    assert seen["body"] == {
        "amount": {"currency_code": "USD", "value": "26.67"},
        "note_to_payer": "Damaged on arrival",
    }


async def test_refund_capture_already_refunded():
    def handler(request):
        return httpx.Response(422, json=issue_body("CAPTURE_FULLY_REFUNDED"))

    refund = await client_for(handler).refund_capture(TOKEN, "CAP-9", Decimal("26.67"), "USD")
    assert refund.refund_id is None
    assert refund.status == "COMPLETED"


async def test_refund_capture_failures():
    def rejected(request):
        return httpx.Response(422, json=issue_body("REFUND_NOT_ALLOWED", "Refund window closed"))

    with pytest.raises(GatewayRequestError) as exc:
        await client_for(rejected).refund_capture(TOKEN, "CAP-9", Decimal("26.67"), "USD")
    assert exc.value.status_code == 400
    assert exc.value.issue == "REFUND_NOT_ALLOWED"

    def cancelled(request):
        return httpx.Response(201, json={"id": "REFUND-2", "status": "CANCELLED"})

    with pytest.raises(GatewayRequestError) as exc:
        await client_for(cancelled).refund_capture(TOKEN, "CAP-9", Decimal("26.67"), "USD")
    assert exc.value.code == "REFUND_FAILED"


SIGNATURE_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2026-10-18T10:00:00Z",
}


async def test_verify_webhook_signature():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    event = {"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"}
    ok = await client_for(handler).verify_webhook_signature(TOKEN, "WEBHOOK-1", SIGNATURE_HEADERS, event)
    assert ok
    assert seen["body"]["webhook_id"] == "WEBHOOK-1"
    assert seen["body"]["transmission_id"] == "tx-1"
    assert seen["body"]["webhook_event"] == event


async def test_verify_webhook_signature_failure_and_missing_headers():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"verification_status": "FAILURE"})

    client = client_for(handler)
    assert not await client.verify_webhook_signature(TOKEN, "WEBHOOK-1", SIGNATURE_HEADERS, {})
    assert len(calls) == 1
    assert not await client.verify_webhook_signature(TOKEN, "WEBHOOK-1", {}, {})
    assert len(calls) == 1
