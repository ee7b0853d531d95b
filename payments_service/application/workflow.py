"""
Checkout, capture and webhook reconciliation.

The capture endpoint and the webhook receiver both drive an order to its
terminal state through the same guarded updates in `OrderService`. Whichever
arrives first applies the transition; the other observes the terminal state
and reports it as already processed. Only the caller whose update applied
sends the confirmation e-mail.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from payments_service.application.currency import Conversion, CurrencyConverter
from payments_service.application.errors import (
    GatewayCaptureDeniedError,
    InvalidTransitionError,
    LocalOrderNotFoundError,
    OrderNotYetKnownError,
    PaymentsError,
    ValidationError,
    WebhookVerificationError,
)
from payments_service.application.gateway_settings import GatewayConfig
from payments_service.application.messages import localize
from payments_service.application.schemas import OrderCreate
from payments_service.application.service import OrderService, StatusChange
from payments_service.domain.models import Order
from payments_service.domain.states import CaptureIssue, OrderStatus, PaymentStatus, WebhookEventType
from payments_service.infrastructure.notifications import ConfirmationNotifier
from payments_service.infrastructure.paypal import (
    AccessToken,
    CaptureAlreadyDone,
    CaptureOutcome,
    CapturePending,
    CaptureRejected,
    CaptureSucceeded,
    PayPalClient,
    RemotePayment,
    format_amount,
    parse_capture,
)
from shared.core.logging_config import get_logger, set_payment_context

logger = get_logger(__name__)

CAPTURED_PAYMENT_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value)
CHECKOUT_CANCELLED = "CHECKOUT_CANCELLED"


class CaptureOutcomeKind(str, Enum):
    CAPTURED = "CAPTURED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    PENDING = "CAPTURE_PENDING"


class WebhookOutcome(str, Enum):
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    CONFLICT = "CONFLICT"
    IGNORED = "IGNORED"


@dataclass
class CheckoutResult:
    order: Order
    remote: RemotePayment
    conversion: Conversion


@dataclass
class CaptureResult:
    outcome: CaptureOutcomeKind
    order: Order


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    order: Optional[Order] = None
    event_type: Optional[str] = None


def _is_captured(order: Order) -> bool:
    return order.payment_status in CAPTURED_PAYMENT_STATUSES


class PaymentWorkflow:
    def __init__(
        self,
        orders: OrderService,
        gateway: PayPalClient,
        config: GatewayConfig,
        converter: CurrencyConverter,
        notifier: ConfirmationNotifier,
        *,
        lookup_attempts: int = 3,
        lookup_delay: float = 0.5,
    ):
        self.orders = orders
        self.gateway = gateway
        self.config = config
        self.converter = converter
        self.notifier = notifier
        self.lookup_attempts = max(1, lookup_attempts)
        self.lookup_delay = lookup_delay

    def _log_transition(self, order: Optional[Order], transition: str, outcome: str, **fields) -> None:
        payload = {'transition': transition, 'outcome': outcome, **fields}
        if order is not None:
            payload.update(
                order_id=order.id,
                order_number=order.order_number,
                external_payment_id=order.external_payment_id,
                order_status=order.order_status,
                payment_status=order.payment_status,
            )
        logger.info(f"Payment transition {transition}: {outcome}", extra={'extra_fields': payload})

    async def _token(self) -> AccessToken:
        self.config.ensure_usable()
        return await self.gateway.authenticate(self.config.client_id, self.config.client_secret)

    async def _notify(self, order: Order) -> None:
        try:
            await self.notifier.send_order_confirmation(order)
        except Exception:
            logger.error(
                f"Order confirmation failed for {order.order_number}",
                exc_info=True,
                extra={'extra_fields': {'order_id': order.id}},
            )

    # -- checkout ---------------------------------------------------------

    async def create_checkout(self, data: OrderCreate) -> CheckoutResult:
        self.config.ensure_usable()
        totals = self.orders.validate(data)

        # Conversion and authentication both happen before any order exists
        conversion = await self.converter.convert(totals.total, data.currency)
        token = await self._token()

        order = await self.orders.create_pending_order(data, settlement=conversion)
        set_payment_context(order_number=order.order_number)
        self._log_transition(order, "CREATED", "ok", total=str(order.total), currency=order.currency)

        try:
            remote = await self.gateway.create_remote_payment(
                token,
                conversion.amount,
                conversion.currency,
                order.order_number,
                self.config.return_urls,
                custom_id=str(order.id),
                description=f"{self.config.brand_name or 'Order'} {order.order_number}",
                brand_name=self.config.brand_name,
            )
            order = await self.orders.bind_external_payment_id(order.id, remote.remote_id)
        except BaseException as e:
            # Includes CancelledError: a client disconnect must not leave an unbound pending order
            if isinstance(e, PaymentsError):
                code = e.code
            elif isinstance(e, asyncio.CancelledError):
                code = CHECKOUT_CANCELLED
            else:
                code = "SERVER_ERROR"
            order = await asyncio.shield(
                self.orders.cancel_order(order.id, f"Remote payment creation failed: {e!r}", code=code)
            )
            self._log_transition(order, "CREATED->FAILED", "rolled_back", error_code=code)
            raise

        set_payment_context(external_payment_id=remote.remote_id)
        self._log_transition(order, "CREATED->REMOTE_CREATED", "ok", settlement_amount=str(conversion.amount))
        return CheckoutResult(order=order, remote=remote, conversion=conversion)

    # -- capture ----------------------------------------------------------

    async def capture(self, external_id: str, *, locale: str = "ar") -> CaptureResult:
        set_payment_context(external_payment_id=external_id)
        order = await self.orders.find_by_external_payment_id(external_id)
        if order is None:
            logger.error(
                f"Capture requested for unknown external payment id {external_id}",
                extra={'extra_fields': {'external_payment_id': external_id, 'integrity': True}},
            )
            raise LocalOrderNotFoundError(external_id, localize("LOCAL_ORDER_NOT_FOUND", locale))
        set_payment_context(order_number=order.order_number)

        if _is_captured(order):
            self._log_transition(order, "CAPTURE", "already_processed")
            return CaptureResult(CaptureOutcomeKind.ALREADY_PROCESSED, order)
        if order.payment_status == PaymentStatus.FAILED.value:
            issue = order.failure_code or CaptureIssue.CAPTURE_FAILED.value
            raise GatewayCaptureDeniedError(
                issue, localize(issue, locale), description=order.failure_reason, order_number=order.order_number
            )

        token = await self._token()
        outcome = await self.gateway.capture_remote_payment(token, external_id)
        return await self._apply_capture(order, outcome, token, locale)

    async def _apply_capture(
        self, order: Order, outcome: CaptureOutcome, token: AccessToken, locale: str
    ) -> CaptureResult:
        if isinstance(outcome, CaptureSucceeded):
            change = await self.orders.mark_captured(order.id, outcome.capture_id, outcome.amount)
            return await self._settle_success(change, CaptureOutcomeKind.CAPTURED, locale)

        if isinstance(outcome, CaptureAlreadyDone):
            return await self._reconcile_already_captured(order, token, locale)

        if isinstance(outcome, CapturePending):
            change = await self.orders.mark_capture_pending(order.id, outcome.capture_id, outcome.reason)
            if _is_captured(change.order):
                return CaptureResult(CaptureOutcomeKind.ALREADY_PROCESSED, change.order)
            self._log_transition(change.order, "REMOTE_CREATED->PENDING", "pending", reason=outcome.reason)
            return CaptureResult(CaptureOutcomeKind.PENDING, change.order)

        return await self._settle_rejection(order, outcome, locale)

    async def _settle_success(
        self, change: StatusChange, kind: CaptureOutcomeKind, locale: str
    ) -> CaptureResult:
        order = change.order
        if change.applied:
            self._log_transition(order, "REMOTE_CREATED->CAPTURED", "ok", capture_id=order.capture_id)
            await self._notify(order)
            return CaptureResult(kind, order)
        if _is_captured(order):
            self._log_transition(order, "REMOTE_CREATED->CAPTURED", "already_processed")
            return CaptureResult(CaptureOutcomeKind.ALREADY_PROCESSED, order)
        # Money moved but the order already failed locally; needs an admin.
        logger.error(
            f"Capture succeeded remotely but order {order.order_number} is {order.payment_status}",
            extra={'extra_fields': {'order_id': order.id, 'integrity': True}},
        )
        issue = order.failure_code or CaptureIssue.CAPTURE_FAILED.value
        raise GatewayCaptureDeniedError(issue, localize(issue, locale), order_number=order.order_number)

    async def _reconcile_already_captured(self, order: Order, token: AccessToken, locale: str) -> CaptureResult:
        current = await self.orders.get(order.id) or order
        if _is_captured(current):
            self._log_transition(current, "CAPTURE", "already_processed", provider_issue="ORDER_ALREADY_CAPTURED")
            return CaptureResult(CaptureOutcomeKind.ALREADY_PROCESSED, current)

        remote = await self.gateway.get_remote_order(token, order.external_payment_id)
        if isinstance(remote.capture, CaptureSucceeded):
            change = await self.orders.mark_captured(order.id, remote.capture.capture_id, remote.capture.amount)
            return await self._settle_success(change, CaptureOutcomeKind.ALREADY_PROCESSED, locale)
        if isinstance(remote.capture, CapturePending):
            change = await self.orders.mark_capture_pending(order.id, remote.capture.capture_id, remote.capture.reason)
            return CaptureResult(CaptureOutcomeKind.PENDING, change.order)
        if isinstance(remote.capture, CaptureRejected):
            return await self._settle_rejection(order, remote.capture, locale)

        # The provider claims a capture it cannot show us; leave the order untouched.
        logger.error(
            f"PayPal reports order {order.external_payment_id} captured but returned no capture",
            extra={'extra_fields': {'order_id': order.id, 'remote_status': remote.status}},
        )
        issue = CaptureIssue.ORDER_ALREADY_CAPTURED.value
        raise GatewayCaptureDeniedError(issue, localize(issue, locale), payload=remote.raw, order_number=order.order_number)

    async def _settle_rejection(self, order: Order, outcome: CaptureRejected, locale: str) -> CaptureResult:
        change = await self.orders.mark_payment_failed(
            order.id, outcome.issue, outcome.description or outcome.provider_issue
        )
        if not change.applied and _is_captured(change.order):
            # A webhook captured the payment first; the later rejection is stale.
            self._log_transition(change.order, "CAPTURE", "already_processed", provider_issue=outcome.provider_issue)
            return CaptureResult(CaptureOutcomeKind.ALREADY_PROCESSED, change.order)

        self._log_transition(
            change.order, "REMOTE_CREATED->FAILED", "rejected",
            issue=outcome.issue, provider_issue=outcome.provider_issue,
        )
        raise GatewayCaptureDeniedError(
            outcome.issue,
            localize(outcome.issue, locale),
            description=outcome.description,
            payload=outcome.raw,
            order_number=change.order.order_number,
        )

    # -- refunds ----------------------------------------------------------

    async def refund(self, order_id: int, reason: str) -> Order:
        """Refunds the full captured amount at PayPal, then records it on the order."""
        order = await self.orders.require(order_id)
        set_payment_context(order_number=order.order_number, external_payment_id=order.external_payment_id)
        if order.payment_status == PaymentStatus.REFUNDED.value:
            return order
        if order.payment_status != PaymentStatus.COMPLETED.value or not order.capture_id:
            raise InvalidTransitionError(
                "Only completed payments can be refunded",
                details={"payment_status": order.payment_status, "capture_id": order.capture_id},
            )

        captured = order.captured_amount or {}
        amount = Decimal(str(captured.get("value") or order.settlement_amount or order.total))
        currency = captured.get("currency_code") or order.settlement_currency or order.currency

        token = await self._token()
        refund = await self.gateway.refund_capture(token, order.capture_id, amount, currency, reason)
        order = await self.orders.refund(
            order.id,
            reason,
            refund_id=refund.refund_id or order.refund_id,
            refund_status=refund.status,
            amount=refund.amount or {"currency_code": currency, "value": format_amount(amount)},
        )
        self._log_transition(order, "CAPTURED->REFUNDED", refund.status.lower(), refund_id=refund.refund_id)
        return order

    # -- webhooks ---------------------------------------------------------

    async def verify_webhook(self, headers: Mapping[str, str], event: Dict[str, Any]) -> None:
        if not self.config.webhook_id:
            if self.config.require_webhook_signature:
                raise WebhookVerificationError("Webhook signature required but no webhook id is configured")
            logger.warning("Processing webhook without signature verification: no webhook id configured")
            return
        token = await self._token()
        if not await self.gateway.verify_webhook_signature(token, self.config.webhook_id, headers, event):
            logger.warning(
                "Webhook signature verification failed",
                extra={'extra_fields': {'event_id': event.get("id"), 'event_type': event.get("event_type")}},
            )
            raise WebhookVerificationError("Webhook signature verification failed")

    async def _locate(self, remote_id: Optional[str], custom_id: Optional[str]) -> Order:
        """Finds the order an event refers to, waiting briefly for checkout to bind it."""
        for attempt in range(self.lookup_attempts):
            if remote_id:
                order = await self.orders.find_by_external_payment_id(remote_id)
            else:
                order = await self._order_from_custom_id(custom_id)
            if order is not None:
                return order
            if attempt + 1 < self.lookup_attempts:
                await asyncio.sleep(self.lookup_delay)

        pending = await self._order_from_custom_id(custom_id)
        if (
            pending is not None
            and pending.external_payment_id is None
            and pending.order_status != OrderStatus.CANCELLED.value
        ):
            raise OrderNotYetKnownError(
                f"Order {pending.order_number} is not yet bound to a PayPal order",
                details={"order_id": pending.id, "external_payment_id": remote_id},
            )
        logger.error(
            f"Webhook references unknown PayPal order {remote_id}",
            extra={'extra_fields': {'external_payment_id': remote_id, 'custom_id': custom_id, 'integrity': True}},
        )
        raise LocalOrderNotFoundError(remote_id or str(custom_id))

    async def _order_from_custom_id(self, custom_id: Optional[str]) -> Optional[Order]:
        if not custom_id or not str(custom_id).isdigit():
            return None
        return await self.orders.get(int(custom_id))

    async def handle_webhook(self, event: Dict[str, Any]) -> WebhookResult:
        event_type = event.get("event_type")
        try:
            kind = WebhookEventType(event_type)
        except ValueError:
            logger.info(f"Ignoring webhook event {event_type}", extra={'extra_fields': {'event_id': event.get("id")}})
            return WebhookResult(WebhookOutcome.IGNORED, event_type=event_type)

        resource = event.get("resource") or {}
        if kind in (WebhookEventType.ORDER_APPROVED, WebhookEventType.ORDER_COMPLETED):
            remote_id = resource.get("id")
            units = resource.get("purchase_units") or [{}]
            custom_id = units[0].get("custom_id")
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            remote_id = related.get("order_id")
            custom_id = resource.get("custom_id")
        if not remote_id and not custom_id:
            raise ValidationError("Webhook event does not reference an order", details={"event_id": event.get("id")})

        order = await self._locate(remote_id, custom_id)
        set_payment_context(order_number=order.order_number, external_payment_id=order.external_payment_id)
        logger.info(
            f"Webhook {event_type} for order {order.order_number}",
            extra={'extra_fields': {'event_id': event.get("id"), 'resource_id': resource.get("id")}},
        )

        if kind == WebhookEventType.CAPTURE_COMPLETED:
            outcome = await self._webhook_captured(order, resource.get("id"), resource.get("amount"))
        elif kind == WebhookEventType.CAPTURE_DENIED:
            reason = (resource.get("status_details") or {}).get("reason")
            outcome = await self._webhook_denied(order, CaptureIssue.CAPTURE_DENIED.value, reason)
        elif kind == WebhookEventType.CAPTURE_PENDING:
            reason = (resource.get("status_details") or {}).get("reason")
            outcome = await self._webhook_pending(order, resource.get("id"), reason)
        elif kind == WebhookEventType.ORDER_APPROVED:
            change = await self.orders.mark_approved(order.id)
            order = change.order
            outcome = WebhookOutcome.APPROVED if change.applied else WebhookOutcome.ALREADY_PROCESSED
        else:
            capture = parse_capture(order.external_payment_id or remote_id, resource)
            if isinstance(capture, CaptureSucceeded):
                outcome = await self._webhook_captured(order, capture.capture_id, capture.amount)
            elif isinstance(capture, CapturePending):
                outcome = await self._webhook_pending(order, capture.capture_id, capture.reason)
            elif isinstance(capture, CaptureRejected):
                outcome = await self._webhook_denied(order, capture.issue, capture.description or capture.provider_issue)
            else:
                outcome = WebhookOutcome.ALREADY_PROCESSED if _is_captured(order) else WebhookOutcome.IGNORED

        order = (await self.orders.mark_webhook_seen(order.id)).order
        self._log_transition(order, f"WEBHOOK {event_type}", outcome.value, event_id=event.get("id"))
        return WebhookResult(outcome, order=order, event_type=event_type)

    async def _webhook_captured(self, order: Order, capture_id: Optional[str], amount: Optional[dict]) -> WebhookOutcome:
        if _is_captured(order):
            return WebhookOutcome.ALREADY_PROCESSED
        change = await self.orders.mark_captured(order.id, capture_id, amount, via_webhook=True)
        if change.applied:
            self._log_transition(change.order, "REMOTE_CREATED->CAPTURED", "ok", source="webhook")
            await self._notify(change.order)
            return WebhookOutcome.CAPTURED
        if _is_captured(change.order):
            return WebhookOutcome.ALREADY_PROCESSED
        logger.error(
            f"Capture completed remotely but order {order.order_number} is {change.order.payment_status}",
            extra={'extra_fields': {'order_id': order.id, 'capture_id': capture_id, 'integrity': True}},
        )
        return WebhookOutcome.CONFLICT

    async def _webhook_denied(self, order: Order, code: str, reason: Optional[str]) -> WebhookOutcome:
        change = await self.orders.mark_payment_failed(order.id, code, reason, via_webhook=True)
        if change.applied:
            self._log_transition(change.order, "REMOTE_CREATED->FAILED", "rejected", source="webhook", issue=code)
            return WebhookOutcome.FAILED
        return WebhookOutcome.ALREADY_PROCESSED

    async def _webhook_pending(self, order: Order, capture_id: Optional[str], reason: Optional[str]) -> WebhookOutcome:
        change = await self.orders.mark_capture_pending(order.id, capture_id, reason)
        return WebhookOutcome.PENDING if change.applied else WebhookOutcome.ALREADY_PROCESSED
