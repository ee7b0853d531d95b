import re
from dataclasses import dataclass
from datetime import datetime, timezone, date
from decimal import Decimal
from typing import Optional, List, Tuple, Iterable

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payments_service.application.currency import Conversion
from payments_service.application.errors import (
    AlreadyBoundError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from payments_service.application.schemas import OrderCreate
from payments_service.domain.models import Order, OrderItem
from payments_service.domain.states import (
    OPEN_PAYMENT_STATUSES,
    OrderStatus,
    PaymentStatus,
    PAYPAL_PROVIDER,
    order_sources,
    payment_sources,
)
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
REQUIRED_CUSTOMER_FIELDS = ("first_name", "last_name", "email", "phone", "address", "city", "country")
TOTAL_TOLERANCE = Decimal("0.01")
ORDER_NUMBER_ATTEMPTS = 5

# Columns the payment workflow may set alongside a status change
METADATA_FIELDS = frozenset({
    "payment_status", "capture_id", "captured_at", "captured_amount",
    "webhook_processed", "webhook_processed_at", "failure_code",
    "failure_reason", "admin_notes", "refund_id", "refund_status",
    "refunded_amount", "refunded_at",
})

SORTABLE_FIELDS = {
    "created_at": Order.created_at,
    "total": Order.total,
    "order_number": Order.order_number,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total: Decimal


@dataclass
class StatusChange:
    """Result of a guarded update. `applied` is False when the guard rejected it."""
    order: Order
    applied: bool


@dataclass
class OrderFilters:
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    search: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sort: str = "-created_at"
    skip: int = 0
    limit: int = 20


class OrderService:
    """The only writer of payment-related order state."""

    def __init__(self, db: AsyncSession, provider: str = PAYPAL_PROVIDER):
        self.db = db
        self.provider = provider

    # -- validation -------------------------------------------------------

    def validate(self, data: OrderCreate) -> Totals:
        errors = []
        for name in REQUIRED_CUSTOMER_FIELDS:
            if not (getattr(data.customer, name) or "").strip():
                errors.append({"field": f"customer.{name}", "message": "is required"})
        if data.customer.email and not EMAIL_RE.match(data.customer.email.strip()):
            errors.append({"field": "customer.email", "message": "is not a valid e-mail address"})
        if not data.items:
            errors.append({"field": "items", "message": "at least one item is required"})
        for index, item in enumerate(data.items):
            if item.quantity <= 0:
                errors.append({"field": f"items.{index}.quantity", "message": "must be positive"})
            if item.unit_price < 0:
                errors.append({"field": f"items.{index}.unit_price", "message": "must not be negative"})
        if data.shipping_cost < 0 or data.tax < 0:
            errors.append({"field": "shipping_cost", "message": "shipping cost and tax must not be negative"})
        if errors:
            raise ValidationError("Order data is invalid", details=errors)

        subtotal = sum((item.unit_price * item.quantity for item in data.items), Decimal("0"))
        total = subtotal + data.shipping_cost + data.tax
        if total <= 0:
            raise ValidationError("Order total must be positive", details=[{"field": "total", "message": "must be positive"}])
        if data.total is not None and abs(data.total - total) > TOTAL_TOLERANCE:
            raise ValidationError(
                "Order total does not match item prices",
                details=[{"field": "total", "expected": str(total), "received": str(data.total)}],
            )
        return Totals(subtotal=subtotal, shipping_cost=data.shipping_cost, tax=data.tax, total=total)

    # -- reads ------------------------------------------------------------

    async def _load(self, *criteria) -> Optional[Order]:
        stmt = select(Order).where(*criteria).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, order_id: int) -> Optional[Order]:
        return await self._load(Order.id == order_id)

    async def require(self, order_id: int) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", details={"order_id": order_id})
        return order

    async def find_by_external_payment_id(self, external_id: str) -> Optional[Order]:
        # Served by the (payment_provider, external_payment_id) unique index
        return await self._load(Order.payment_provider == self.provider, Order.external_payment_id == external_id)

    async def list(self, filters: OrderFilters) -> Tuple[List[Order], int]:
        criteria = []
        if filters.order_status:
            criteria.append(Order.order_status == filters.order_status.value)
        if filters.payment_status:
            criteria.append(Order.payment_status == filters.payment_status.value)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            criteria.append(or_(
                Order.order_number.ilike(pattern),
                Order.customer_first_name.ilike(pattern),
                Order.customer_last_name.ilike(pattern),
                Order.customer_email.ilike(pattern),
            ))
        if filters.date_from:
            criteria.append(Order.created_at >= datetime.combine(filters.date_from, datetime.min.time(), timezone.utc))
        if filters.date_to:
            criteria.append(Order.created_at <= datetime.combine(filters.date_to, datetime.max.time(), timezone.utc))

        total = (await self.db.execute(select(func.count(Order.id)).where(*criteria))).scalar_one()

        column = SORTABLE_FIELDS.get(filters.sort.lstrip("-"), Order.created_at)
        ordering = column.desc() if filters.sort.startswith("-") else column.asc()
        stmt = select(Order).where(*criteria).order_by(ordering, Order.id.desc()).offset(filters.skip).limit(filters.limit)
        orders = list((await self.db.execute(stmt)).scalars().all())
        return orders, total

    # -- creation ---------------------------------------------------------

    async def _generate_order_number(self, offset: int = 0) -> str:
        """Order number in format MD-YYYYMMDD-NNN, sequential per day."""
        today = _utcnow().strftime("%Y%m%d")
        count = (await self.db.execute(
            select(func.count(Order.id)).where(Order.order_number.like(f"MD-{today}-%"))
        )).scalar_one()
        return f"MD-{today}-{(count + 1 + offset):03d}"

    async def create_pending_order(
        self,
        data: OrderCreate,
        *,
        currency: Optional[str] = None,
        settlement: Optional[Conversion] = None,
    ) -> Order:
        totals = self.validate(data)
        customer = data.customer

        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            order = Order(
                order_number=await self._generate_order_number(offset=attempt),
                customer_first_name=customer.first_name.strip(),
                customer_last_name=customer.last_name.strip(),
                customer_email=customer.email.strip().lower(),
                customer_phone=customer.phone.strip(),
                shipping_address=customer.address.strip(),
                shipping_city=customer.city.strip(),
                shipping_postal_code=customer.postal_code,
                shipping_country=customer.country.strip(),
                customer_notes=customer.notes,
                subtotal=totals.subtotal,
                shipping_cost=totals.shipping_cost,
                tax=totals.tax,
                total=totals.total,
                currency=(currency or data.currency).upper(),
                payment_method="paypal",
                payment_provider=self.provider,
                order_status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                settlement_amount=settlement.amount if settlement else None,
                settlement_currency=settlement.currency if settlement else None,
                exchange_rate=settlement.rate if settlement else None,
                items=[
                    OrderItem(
                        product_id=item.product_id,
                        product_name=item.product_name,
                        product_image=item.product_image,
                        unit_price=item.unit_price,
                        quantity=item.quantity,
                        subtotal=item.unit_price * item.quantity,
                    )
                    for item in data.items
                ],
            )
            self.db.add(order)
            try:
                await self.db.commit()
            except IntegrityError:
                # Two checkouts raced for the same order number
                await self.db.rollback()
                logger.warning(f"Order number {order.order_number} taken, retrying")
                continue
            logger.info(
                f"Order {order.order_number} created",
                extra={'extra_fields': {'order_id': order.id, 'total': str(order.total), 'currency': order.currency}},
            )
            return await self.require(order.id)

        raise ValidationError("Could not allocate an order number")

    # -- guarded updates --------------------------------------------------

    def _ref(self, order_ref, by_external_id: bool):
        if by_external_id:
            return [Order.payment_provider == self.provider, Order.external_payment_id == str(order_ref)]
        return [Order.id == int(order_ref)]

    async def _guarded_update(
        self,
        ref_criteria: list,
        values: dict,
        order_guard: Optional[Iterable[OrderStatus]] = None,
        payment_guard: Optional[Iterable[PaymentStatus]] = None,
    ) -> StatusChange:
        criteria = list(ref_criteria)
        if order_guard is not None:
            criteria.append(Order.order_status.in_([s.value for s in order_guard]))
        if payment_guard is not None:
            criteria.append(Order.payment_status.in_([s.value for s in payment_guard]))

        stmt = (
            update(Order)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        order = await self._load(*ref_criteria)
        if order is None:
            raise NotFoundError("Order not found")
        return StatusChange(order=order, applied=result.rowcount > 0)

    async def update_order_status(
        self,
        order_ref,
        new_order_status: Optional[OrderStatus],
        metadata: Optional[dict] = None,
        *,
        by_external_id: bool = False,
    ) -> StatusChange:
        """
        Moves an order to `new_order_status` and merges `metadata` into its
        payment fields, in one conditional UPDATE.

        The UPDATE only matches while the current statuses may legally move
        to the requested ones, so of two racing callers exactly one applies.
        """
        metadata = dict(metadata or {})
        unknown = set(metadata) - METADATA_FIELDS
        if unknown:
            raise ValidationError(f"Unknown order metadata: {', '.join(sorted(unknown))}")

        values = {}
        order_guard = None
        payment_guard = None
        if new_order_status is not None:
            new_order_status = OrderStatus(new_order_status)
            values["order_status"] = new_order_status.value
            order_guard = order_sources(new_order_status)

        payment_target = metadata.pop("payment_status", None)
        if payment_target is not None:
            payment_target = PaymentStatus(payment_target)
            values["payment_status"] = payment_target.value
            payment_guard = payment_sources(payment_target)
        values.update(metadata)

        if not values:
            raise ValidationError("Nothing to update")
        return await self._guarded_update(self._ref(order_ref, by_external_id), values, order_guard, payment_guard)

    async def bind_external_payment_id(self, order_id: int, external_id: str) -> Order:
        try:
            result = await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.external_payment_id.is_(None))
                .values(external_payment_id=external_id, payment_provider=self.provider)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise AlreadyBoundError(
                f"External payment id {external_id} is already bound to another order",
                details={"external_payment_id": external_id},
            ) from e

        order = await self.require(order_id)
        if result.rowcount == 0 and order.external_payment_id != external_id:
            raise AlreadyBoundError(
                f"Order {order.order_number} is already bound to another external payment",
                details={"order_id": order_id, "external_payment_id": order.external_payment_id},
            )
        return order

    async def cancel_order(self, order_id: int, reason: str, *, code: Optional[str] = None) -> Order:
        change = await self._guarded_update(
            self._ref(order_id, False),
            {
                "order_status": OrderStatus.CANCELLED.value,
                "payment_status": PaymentStatus.FAILED.value,
                "failure_code": code,
                "failure_reason": (reason or "")[:500],
            },
            order_guard=order_sources(OrderStatus.CANCELLED),
            payment_guard=OPEN_PAYMENT_STATUSES,
        )
        if change.applied or change.order.order_status == OrderStatus.CANCELLED.value:
            return change.order
        raise InvalidTransitionError(
            "Only unpaid orders can be cancelled",
            details={"order_status": change.order.order_status, "payment_status": change.order.payment_status},
        )

    # -- payment workflow helpers -----------------------------------------

    async def mark_captured(
        self,
        order_ref,
        capture_id: str,
        amount: Optional[dict],
        *,
        by_external_id: bool = False,
        via_webhook: bool = False,
    ) -> StatusChange:
        now = _utcnow()
        metadata = {
            "payment_status": PaymentStatus.COMPLETED,
            "capture_id": capture_id,
            "captured_at": now,
            "captured_amount": amount,
            "failure_code": None,
            "failure_reason": None,
        }
        if via_webhook:
            metadata.update(webhook_processed=True, webhook_processed_at=now)
        return await self.update_order_status(order_ref, OrderStatus.CONFIRMED, metadata, by_external_id=by_external_id)

    async def mark_payment_failed(
        self,
        order_ref,
        code: str,
        reason: Optional[str] = None,
        *,
        by_external_id: bool = False,
        via_webhook: bool = False,
    ) -> StatusChange:
        metadata = {
            "payment_status": PaymentStatus.FAILED,
            "failure_code": code,
            "failure_reason": (reason or code)[:500],
        }
        if via_webhook:
            metadata.update(webhook_processed=True, webhook_processed_at=_utcnow())
        return await self.update_order_status(order_ref, OrderStatus.CANCELLED, metadata, by_external_id=by_external_id)

    async def mark_approved(self, order_ref, *, by_external_id: bool = False) -> StatusChange:
        return await self.update_order_status(
            order_ref, None, {"payment_status": PaymentStatus.APPROVED}, by_external_id=by_external_id
        )

    async def mark_capture_pending(
        self,
        order_ref,
        capture_id: Optional[str],
        reason: Optional[str] = None,
        *,
        by_external_id: bool = False,
    ) -> StatusChange:
        # approved -> approved is allowed here so the capture id can still be recorded
        change = await self._guarded_update(
            self._ref(order_ref, by_external_id),
            {"payment_status": PaymentStatus.APPROVED.value, "capture_id": capture_id},
            order_guard=order_sources(OrderStatus.PENDING),
            payment_guard=OPEN_PAYMENT_STATUSES,
        )
        if change.applied:
            logger.info(
                f"Capture pending for order {change.order.order_number}",
                extra={'extra_fields': {'capture_id': capture_id, 'reason': reason}},
            )
        return change

    async def mark_webhook_seen(self, order_ref, *, by_external_id: bool = False) -> StatusChange:
        return await self.update_order_status(
            order_ref,
            None,
            {"webhook_processed": True, "webhook_processed_at": _utcnow()},
            by_external_id=by_external_id,
        )

    # -- admin operations -------------------------------------------------

    async def change_status(
        self,
        order_id: int,
        order_status: Optional[OrderStatus],
        payment_status: Optional[PaymentStatus] = None,
        admin_notes: Optional[str] = None,
    ) -> Order:
        metadata = {}
        if payment_status is not None:
            metadata["payment_status"] = payment_status
        if admin_notes is not None:
            metadata["admin_notes"] = admin_notes
        change = await self.update_order_status(order_id, order_status, metadata)
        if not change.applied:
            raise InvalidTransitionError(
                "Status change not allowed from the current state",
                details={
                    "current": {"order_status": change.order.order_status, "payment_status": change.order.payment_status},
                    "requested": {
                        "order_status": order_status.value if order_status else None,
                        "payment_status": payment_status.value if payment_status else None,
                    },
                },
            )
        logger.info(
            f"Order {change.order.order_number} status changed by admin",
            extra={'extra_fields': {
                'order_id': order_id,
                'order_status': change.order.order_status,
                'payment_status': change.order.payment_status,
            }},
        )
        return change.order

    async def refund(
        self,
        order_id: int,
        reason: str,
        *,
        refund_id: Optional[str] = None,
        refund_status: Optional[str] = None,
        amount: Optional[dict] = None,
    ) -> Order:
        metadata = {"payment_status": PaymentStatus.REFUNDED, "admin_notes": reason}
        if refund_status is not None:
            metadata.update(
                refund_id=refund_id,
                refund_status=refund_status,
                refunded_amount=amount,
                refunded_at=_utcnow(),
            )
        change = await self.update_order_status(order_id, None, metadata)
        if change.applied or change.order.payment_status == PaymentStatus.REFUNDED.value:
            return change.order
        raise InvalidTransitionError(
            "Only completed payments can be refunded",
            details={"payment_status": change.order.payment_status},
        )

    async def delete(self, order_id: int) -> None:
        order = await self.require(order_id)
        if order.payment_status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
            raise InvalidTransitionError(
                "Cannot delete an order after payment has been completed",
                details={"payment_status": order.payment_status},
            )
        await self.db.delete(order)
        await self.db.commit()
        logger.info(f"Order {order.order_number} deleted", extra={'extra_fields': {'order_id': order_id}})
