from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from payments_service.api.deps import get_order_service, get_workflow, require_admin
from payments_service.application.schemas import OrderPage, OrderRead, RefundRequest, StatusUpdateRequest
from payments_service.application.service import OrderFilters, OrderService
from payments_service.application.workflow import PaymentWorkflow
from payments_service.domain.states import OrderStatus, PaymentStatus

router = APIRouter(prefix="/orders", tags=["orders"], dependencies=[Depends(require_admin)])


@router.get("/", response_model=OrderPage)
async def list_orders(
    order_status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    sort: str = "-created_at",
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    service: OrderService = Depends(get_order_service),
):
    filters = OrderFilters(
        order_status=order_status,
        payment_status=payment_status,
        search=search,
        date_from=date_from,
        date_to=date_to,
        sort=sort,
        skip=skip,
        limit=limit,
    )
    orders, total = await service.list(filters)
    return OrderPage(items=[OrderRead.model_validate(o) for o in orders], total=total, skip=skip, limit=limit)


@router.get("/{order_id}", response_model=OrderRead)
async def get_order(order_id: int, service: OrderService = Depends(get_order_service)):
    return await service.require(order_id)


@router.patch("/{order_id}/status", response_model=OrderRead)
async def update_status(
    order_id: int,
    payload: StatusUpdateRequest,
    service: OrderService = Depends(get_order_service),
):
    """Admin override; still bound by the transition tables."""
    return await service.change_status(order_id, payload.order_status, payload.payment_status, payload.admin_notes)


@router.post("/{order_id}/refund", response_model=OrderRead)
async def refund_order(
    order_id: int,
    payload: RefundRequest,
    workflow: PaymentWorkflow = Depends(get_workflow),
):
    """Refunds the captured amount through PayPal, then records it locally."""
    return await workflow.refund(order_id, payload.reason)


@router.delete("/{order_id}", status_code=204)
async def delete_order(order_id: int, service: OrderService = Depends(get_order_service)):
    await service.delete(order_id)
    return None
