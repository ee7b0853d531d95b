import asyncio
import dataclasses
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import declined_order_body, issue_body, make_order, pending_order_body
from payments_service.application.errors import (
    ConversionError,
    GatewayAuthError,
    GatewayCaptureDeniedError,
    GatewayNotConfiguredError,
    GatewayRequestError,
    GatewayTimeoutError,
    InvalidTransitionError,
    LocalOrderNotFoundError,
)
from payments_service.application.workflow import CaptureOutcomeKind
from payments_service.domain.models import Order
from payments_service.domain.states import OrderStatus, PaymentStatus


async def count_orders(db, **filters) -> int:
    stmt = select(func.count(Order.id))
    for key, value in filters.items():
        stmt = stmt.where(getattr(Order, key) == value)
    return (await db.execute(stmt)).scalar_one()


async def test_checkout_and_capture_end_to_end(workflow, fake_paypal, notifier):
    checkout = await workflow.create_checkout(make_order())
    order = checkout.order

    assert order.external_payment_id == checkout.remote.remote_id
    assert checkout.remote.approval_url.endswith(checkout.remote.remote_id)
    assert order.settlement_amount == Decimal("26.67")
    assert order.settlement_currency == "USD"
    assert order.workflow_state == "REMOTE_CREATED"

    sent = fake_paypal.created[checkout.remote.remote_id]
    unit = sent["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "USD", "value": "26.67"}
    assert unit["reference_id"] == order.order_number
    assert unit["custom_id"] == str(order.id)

    result = await workflow.capture(checkout.remote.remote_id)
    assert result.outcome == CaptureOutcomeKind.CAPTURED
    assert result.order.order_status == OrderStatus.CONFIRMED.value
    assert result.order.payment_status == PaymentStatus.COMPLETED.value
    assert result.order.capture_id == f"CAP-{checkout.remote.remote_id}"
    assert result.order.captured_amount == {"currency_code": "USD", "value": "26.67"}
    assert result.order.webhook_processed is False
    assert notifier.sent == [order.order_number]


async def test_capture_twice_is_idempotent(workflow, fake_paypal, notifier):
    checkout = await workflow.create_checkout(make_order())
    remote_id = checkout.remote.remote_id

    first = await workflow.capture(remote_id)
    second = await workflow.capture(remote_id)

    assert first.outcome == CaptureOutcomeKind.CAPTURED
    assert second.outcome == CaptureOutcomeKind.ALREADY_PROCESSED
    assert second.order.capture_id == first.order.capture_id
    assert second.order.payment_status == PaymentStatus.COMPLETED.value
    assert notifier.sent == [checkout.order.order_number]
    assert len(fake_paypal.calls("POST", r"/capture$")) == 1


async def test_remote_creation_timeout_cancels_local_order(workflow, fake_paypal, db):
    fake_paypal.create_failure = "timeout"

    with pytest.raises(GatewayTimeoutError):
        await workflow.create_checkout(make_order())

    assert await count_orders(db) == 1
    assert await count_orders(db, order_status=OrderStatus.PENDING.value) == 0
    order = (await db.execute(select(Order))).scalar_one()
    assert order.order_status == OrderStatus.CANCELLED.value
    assert order.payment_status == PaymentStatus.FAILED.value
    assert order.failure_code == "GATEWAY_TIMEOUT"
    assert order.external_payment_id is None


async def test_cancelled_checkout_cancels_local_order(workflow, db):
    async def interrupted(*args, **kwargs):
        raise asyncio.CancelledError()

    workflow.gateway.create_remote_payment = interrupted

    with pytest.raises(asyncio.CancelledError):
        await workflow.create_checkout(make_order())

    assert await count_orders(db, order_status=OrderStatus.PENDING.value) == 0
    order = (await db.execute(select(Order))).scalar_one()
    assert order.order_status == OrderStatus.CANCELLED.value
    assert order.payment_status == PaymentStatus.FAILED.value
    assert order.failure_code == "CHECKOUT_CANCELLED"
    assert order.external_payment_id is None


async def test_remote_creation_rejection_cancels_local_order(workflow, fake_paypal, db):
    fake_paypal.create_failure = (422, issue_body("CURRENCY_NOT_SUPPORTED"))

    with pytest.raises(GatewayRequestError) as exc:
        await workflow.create_checkout(make_order())

    assert exc.value.status_code == 400
    assert await count_orders(db, order_status=OrderStatus.PENDING.value) == 0
    assert await count_orders(db, order_status=OrderStatus.CANCELLED.value) == 1


async def test_auth_failure_creates_no_order(workflow, fake_paypal, db):
    fake_paypal.auth_status = 401

    with pytest.raises(GatewayAuthError):
        await workflow.create_checkout(make_order())
    assert await count_orders(db) == 0
    assert fake_paypal.calls("POST", r"^/v2/checkout/orders$") == []


async def test_conversion_failure_creates_no_order(workflow, fake_paypal, db):
    with pytest.raises(ConversionError):
        await workflow.create_checkout(make_order(currency="JPY"))
    assert await count_orders(db) == 0
    assert fake_paypal.calls("POST", r"/oauth2/token$") == []


async def test_disabled_gateway_rejects_checkout(db, gateway_config, make_workflow):
    disabled = make_workflow(db, dataclasses.replace(gateway_config, enabled=False))
    with pytest.raises(GatewayNotConfiguredError) as exc:
        await disabled.create_checkout(make_order())
    assert exc.value.code == "PAYPAL_DISABLED"

    missing = make_workflow(db, dataclasses.replace(gateway_config, client_secret=""))
    with pytest.raises(GatewayNotConfiguredError) as exc:
        await missing.create_checkout(make_order())
    assert exc.value.code == "MISSING_CREDENTIALS"
    assert await count_orders(db) == 0


async def test_capture_unknown_external_id(workflow, db, fake_paypal):
    await workflow.create_checkout(make_order())

    with pytest.raises(LocalOrderNotFoundError) as exc:
        await workflow.capture("PAYPAL-UNKNOWN")

    assert exc.value.status_code == 404
    assert exc.value.code == "LOCAL_ORDER_NOT_FOUND"
    assert await count_orders(db, order_status=OrderStatus.PENDING.value) == 1
    assert fake_paypal.calls("POST", r"/capture$") == []


async def test_declined_capture_fails_order_with_provider_code(workflow, fake_paypal, notifier):
    checkout = await workflow.create_checkout(make_order())
    fake_paypal.next_capture = (422, issue_body("INSTRUMENT_DECLINED", "Card declined"))

    with pytest.raises(GatewayCaptureDeniedError) as exc:
        await workflow.capture(checkout.remote.remote_id)

    assert exc.value.code == "INSTRUMENT_DECLINED"
    assert exc.value.status_code == 400
    assert exc.value.message == "تم رفض وسيلة الدفع"
    assert exc.value.description == "Card declined"

    order = await workflow.orders.get(checkout.order.id)
    assert order.order_status == OrderStatus.CANCELLED.value
    assert order.payment_status == PaymentStatus.FAILED.value
    assert order.failure_code == "INSTRUMENT_DECLINED"
    assert notifier.sent == []


async def test_capture_after_failure_repeats_stored_code(workflow, fake_paypal):
    checkout = await workflow.create_checkout(make_order())
    fake_paypal.next_capture = (422, issue_body("ORDER_EXPIRED"))
    with pytest.raises(GatewayCaptureDeniedError):
        await workflow.capture(checkout.remote.remote_id)

    with pytest.raises(GatewayCaptureDeniedError) as exc:
        await workflow.capture(checkout.remote.remote_id, locale="en")
    assert exc.value.code == "ORDER_EXPIRED"
    assert exc.value.message == "The order has expired, please try again"
    assert len(fake_paypal.calls("POST", r"/capture$")) == 1


async def test_already_captured_remotely_is_reconciled_as_success(workflow, fake_paypal, notifier):
    checkout = await workflow.create_checkout(make_order())
    remote_id = checkout.remote.remote_id
    # Captured at PayPal before a crash, never recorded locally
    fake_paypal.captured.add(remote_id)

    result = await workflow.capture(remote_id)

    assert result.outcome == CaptureOutcomeKind.ALREADY_PROCESSED
    assert result.order.payment_status == PaymentStatus.COMPLETED.value
    assert result.order.capture_id == f"CAP-{remote_id}"
    assert len(fake_paypal.calls("GET", rf"/v2/checkout/orders/{remote_id}$")) == 1
    assert notifier.sent == [checkout.order.order_number]


async def test_already_captured_but_declined_remotely_fails_order(workflow, fake_paypal, notifier):
    checkout = await workflow.create_checkout(make_order())
    remote_id = checkout.remote.remote_id
    fake_paypal.captured.add(remote_id)
    fake_paypal.remote_orders[remote_id] = declined_order_body(remote_id)

    with pytest.raises(GatewayCaptureDeniedError) as exc:
        await workflow.capture(remote_id)
    assert exc.value.code == "CAPTURE_DENIED"

    order = await workflow.orders.get(checkout.order.id)
    assert order.order_status == OrderStatus.CANCELLED.value
    assert order.payment_status == PaymentStatus.FAILED.value
    assert order.failure_code == "CAPTURE_DENIED"
    assert order.failure_reason == "DECLINED_BY_RISK_FRAUD_FILTERS"
    assert notifier.sent == []


async def test_pending_capture_is_not_terminal(workflow, fake_paypal):
    checkout = await workflow.create_checkout(make_order())
    remote_id = checkout.remote.remote_id
    fake_paypal.next_capture = (201, pending_order_body(remote_id, "CAP-P"))

    result = await workflow.capture(remote_id)

    assert result.outcome == CaptureOutcomeKind.PENDING
    assert result.order.payment_status == PaymentStatus.APPROVED.value
    assert result.order.order_status == OrderStatus.PENDING.value
    assert result.order.capture_id == "CAP-P"


async def test_notifier_failure_does_not_fail_capture(workflow, notifier):
    notifier.fail = True
    checkout = await workflow.create_checkout(make_order())

    result = await workflow.capture(checkout.remote.remote_id)
    assert result.outcome == CaptureOutcomeKind.CAPTURED
    assert result.order.payment_status == PaymentStatus.COMPLETED.value


async def test_refund_goes_through_paypal_once(workflow, fake_paypal):
    checkout = await workflow.create_checkout(make_order())
    remote_id = checkout.remote.remote_id
    await workflow.capture(remote_id)

    order = await workflow.refund(checkout.order.id, "Customer returned the item")
    assert order.payment_status == PaymentStatus.REFUNDED.value
    assert order.refund_id == "REFUND-0001"
    assert order.refund_status == "COMPLETED"
    assert order.refunded_amount == {"currency_code": "USD", "value": "26.67"}
    assert order.refunded_at is not None
    assert order.admin_notes == "Customer returned the item"

    capture_id, body = fake_paypal.refunds[0]
    assert capture_id == f"CAP-{remote_id}"
    assert body["amount"] == {"currency_code": "USD", "value": "26.67"}
    request = fake_paypal.calls("POST", r"/refund$")[0]
    assert request.headers["PayPal-Request-Id"] == f"refund-CAP-{remote_id}"

    again = await workflow.refund(checkout.order.id, "Customer returned the item")
    assert again.refund_id == "REFUND-0001"
    assert len(fake_paypal.refunds) == 1


async def test_refund_requires_captured_payment(workflow, fake_paypal):
    checkout = await workflow.create_checkout(make_order())

    with pytest.raises(InvalidTransitionError):
        await workflow.refund(checkout.order.id, "Not captured yet")
    assert fake_paypal.calls("POST", r"/refund$") == []
    order = await workflow.orders.get(checkout.order.id)
    assert order.payment_status == PaymentStatus.PENDING.value


async def test_refund_rejected_by_paypal_keeps_payment_completed(workflow, fake_paypal):
    checkout = await workflow.create_checkout(make_order())
    await workflow.capture(checkout.remote.remote_id)
    fake_paypal.refund_failure = (422, issue_body("REFUND_NOT_ALLOWED"))

    with pytest.raises(GatewayRequestError) as exc:
        await workflow.refund(checkout.order.id, "Too late")
    assert exc.value.status_code == 400

    order = await workflow.orders.get(checkout.order.id)
    assert order.payment_status == PaymentStatus.COMPLETED.value
    assert order.refund_id is None


async def test_refund_already_done_at_paypal_is_recorded(workflow, fake_paypal):
    checkout = await workflow.create_checkout(make_order())
    await workflow.capture(checkout.remote.remote_id)
    fake_paypal.refund_failure = (422, issue_body("CAPTURE_FULLY_REFUNDED"))

    order = await workflow.refund(checkout.order.id, "Refunded from the PayPal dashboard")
    assert order.payment_status == PaymentStatus.REFUNDED.value
    assert order.refund_status == "COMPLETED"
    assert order.refund_id is None
    assert order.refunded_amount == {"currency_code": "USD", "value": "26.67"}
