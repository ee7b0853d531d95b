from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal, Any

from payments_service.core_settings import get_settings
from payments_service.domain.states import OrderStatus, PaymentStatus


def site_currency() -> str:
    return get_settings().SITE_CURRENCY


class CustomerInfo(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: str
    address: str
    city: str
    postal_code: Optional[str] = None
    country: str
    notes: Optional[str] = None


class OrderItemCreate(BaseModel):
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    unit_price: Decimal
    quantity: int


class OrderCreate(BaseModel):
    customer: CustomerInfo
    items: List[OrderItemCreate]
    shipping_cost: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    # Total as shown to the customer; checked against the item prices
    total: Optional[Decimal] = None
    currency: str = Field(default_factory=site_currency)


class OrderItemRead(BaseModel):
    id: int
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    unit_price: Decimal
    quantity: int
    subtotal: Decimal

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    order_number: str
    customer_first_name: str
    customer_last_name: str
    customer_email: str
    customer_phone: str
    shipping_address: str
    shipping_city: str
    shipping_postal_code: Optional[str] = None
    shipping_country: str
    customer_notes: Optional[str] = None
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    settlement_amount: Optional[Decimal] = None
    settlement_currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    payment_method: str
    order_status: str
    payment_status: str
    workflow_state: str
    payment_provider: str
    external_payment_id: Optional[str] = None
    capture_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    captured_amount: Optional[dict] = None
    webhook_processed: bool
    webhook_processed_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refund_status: Optional[str] = None
    refunded_amount: Optional[dict] = None
    refunded_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemRead] = []

    class Config:
        from_attributes = True


class OrderPage(BaseModel):
    items: List[OrderRead]
    total: int
    skip: int
    limit: int


class StatusUpdateRequest(BaseModel):
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    admin_notes: Optional[str] = None


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class ConversionRead(BaseModel):
    original_amount: Decimal
    original_currency: str
    amount: Decimal
    currency: str
    rate: Decimal
    using_fallback: bool


class CheckoutResponse(BaseModel):
    success: bool = True
    order_id: int
    order_number: str
    paypal_order_id: str
    approval_url: Optional[str] = None
    conversion: ConversionRead


class CaptureResponse(BaseModel):
    success: bool = True
    code: str
    message: str
    order: OrderRead


class WebhookAck(BaseModel):
    success: bool = True
    event_type: Optional[str] = None
    outcome: str
    order_number: Optional[str] = None


class PublicGatewayConfig(BaseModel):
    enabled: bool
    client_id: Optional[str] = None
    environment: str
    currency: str


class GatewaySettingsRead(BaseModel):
    provider: str
    enabled: bool
    environment: str
    client_id: str
    has_client_secret: bool
    webhook_id: str
    updated_at: Optional[datetime] = None


class GatewaySettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    environment: Optional[Literal["sandbox", "live"]] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None


class GatewayTestResult(BaseModel):
    success: bool
    environment: str
    message: str
    details: Optional[Any] = None


class ConversionRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str = Field(default_factory=site_currency)


class RateTableRead(BaseModel):
    base: str
    rates: dict
    date: Optional[str] = None
    using_fallback: bool
