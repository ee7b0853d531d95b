from typing import Protocol

import httpx

from payments_service.domain.models import Order
from shared.core.logging_config import get_logger

logger = get_logger(__name__)


class ConfirmationNotifier(Protocol):
    async def send_order_confirmation(self, order: Order) -> None:
        ...


def confirmation_payload(order: Order) -> dict:
    return {
        "template": "order_confirmation",
        "to": order.customer_email,
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "total": str(order.total),
        "currency": order.currency,
        "items": [
            {"name": item.product_name, "quantity": item.quantity, "subtotal": str(item.subtotal)}
            for item in order.items
        ],
    }


class LoggingNotifier:
    """Used when no e-mail relay is configured."""

    async def send_order_confirmation(self, order: Order) -> None:
        logger.info(
            f"Order confirmation for {order.order_number} (no e-mail relay configured)",
            extra={'extra_fields': {'order_id': order.id, 'email': order.customer_email}},
        )


class HttpRelayNotifier:
    def __init__(self, http: httpx.AsyncClient, relay_url: str, timeout: float = 10.0):
        self.http = http
        self.relay_url = relay_url
        self.timeout = timeout

    async def send_order_confirmation(self, order: Order) -> None:
        response = await self.http.post(self.relay_url, json=confirmation_payload(order), timeout=self.timeout)
        response.raise_for_status()
        logger.info(
            f"Order confirmation sent for {order.order_number}",
            extra={'extra_fields': {'order_id': order.id}},
        )
