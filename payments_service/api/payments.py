import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from payments_service.api.deps import (
    get_currency_converter,
    get_gateway_config,
    get_locale,
    get_paypal_client,
    get_workflow,
    require_admin,
)
from payments_service.application.currency import CurrencyConverter
from payments_service.application.errors import PaymentsError, ValidationError
from payments_service.application.gateway_settings import GatewayConfig, GatewaySettingsService
from payments_service.application.messages import localize
from payments_service.application.schemas import (
    CaptureResponse,
    CheckoutResponse,
    ConversionRead,
    ConversionRequest,
    GatewaySettingsRead,
    GatewaySettingsUpdate,
    GatewayTestResult,
    OrderCreate,
    OrderRead,
    PublicGatewayConfig,
    RateTableRead,
    WebhookAck,
)
from payments_service.application.workflow import CaptureOutcomeKind, PaymentWorkflow
from payments_service.core_settings import Settings, get_settings
from payments_service.infrastructure.db import get_db
from payments_service.infrastructure.paypal import PayPalClient

router = APIRouter(prefix="/payments", tags=["payments"])

CAPTURE_MESSAGE_CODES = {
    CaptureOutcomeKind.CAPTURED: "CAPTURED",
    CaptureOutcomeKind.ALREADY_PROCESSED: "ORDER_ALREADY_CAPTURED",
    CaptureOutcomeKind.PENDING: "CAPTURE_PENDING",
}
CAPTURE_MESSAGES_EN = {
    CaptureOutcomeKind.CAPTURED: "Payment captured successfully",
}
CAPTURE_MESSAGES_AR = {
    CaptureOutcomeKind.CAPTURED: "تم تأكيد الدفع بنجاح",
}


def _capture_message(kind: CaptureOutcomeKind, locale: str) -> str:
    table = CAPTURE_MESSAGES_EN if locale == "en" else CAPTURE_MESSAGES_AR
    return table.get(kind) or localize(CAPTURE_MESSAGE_CODES[kind], locale)


@router.get("/config", response_model=PublicGatewayConfig)
async def public_config(
    config: GatewayConfig = Depends(get_gateway_config),
    settings: Settings = Depends(get_settings),
):
    """What the storefront needs to render the PayPal button."""
    return PublicGatewayConfig(
        enabled=config.enabled and config.has_credentials,
        client_id=config.client_id if config.enabled else None,
        environment=config.environment,
        currency=settings.SETTLEMENT_CURRENCY,
    )


@router.post("/orders", response_model=CheckoutResponse, status_code=201)
async def create_checkout(payload: OrderCreate, workflow: PaymentWorkflow = Depends(get_workflow)):
    result = await workflow.create_checkout(payload)
    c = result.conversion
    return CheckoutResponse(
        order_id=result.order.id,
        order_number=result.order.order_number,
        paypal_order_id=result.remote.remote_id,
        approval_url=result.remote.approval_url,
        conversion=ConversionRead(
            original_amount=c.original_amount,
            original_currency=c.original_currency,
            amount=c.amount,
            currency=c.currency,
            rate=c.rate,
            using_fallback=c.using_fallback,
        ),
    )


@router.post("/orders/{external_id}/capture", response_model=CaptureResponse)
async def capture_order(
    external_id: str,
    workflow: PaymentWorkflow = Depends(get_workflow),
    locale: str = Depends(get_locale),
):
    result = await workflow.capture(external_id, locale=locale)
    body = CaptureResponse(
        code=result.outcome.value,
        message=_capture_message(result.outcome, locale),
        order=OrderRead.model_validate(result.order),
    )
    status_code = 202 if result.outcome == CaptureOutcomeKind.PENDING else 200
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("/webhook", response_model=WebhookAck)
async def paypal_webhook(request: Request, workflow: PaymentWorkflow = Depends(get_workflow)):
    raw = await request.body()
    try:
        event = json.loads(raw)
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")

    await workflow.verify_webhook(request.headers, event)
    result = await workflow.handle_webhook(event)
    return WebhookAck(
        event_type=result.event_type,
        outcome=result.outcome.value,
        order_number=result.order.order_number if result.order else None,
    )


@router.get("/settings", response_model=GatewaySettingsRead)
async def read_settings(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _admin: dict = Depends(require_admin),
):
    return await GatewaySettingsService(db, settings).read()


@router.put("/settings", response_model=GatewaySettingsRead)
async def update_settings(
    payload: GatewaySettingsUpdate,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _admin: dict = Depends(require_admin),
):
    return await GatewaySettingsService(db, settings).update(payload)


@router.post("/test", response_model=GatewayTestResult)
async def test_connection(
    config: GatewayConfig = Depends(get_gateway_config),
    gateway: PayPalClient = Depends(get_paypal_client),
    _admin: dict = Depends(require_admin),
):
    """Checks the stored credentials by requesting an access token."""
    try:
        if not config.has_credentials:
            raise ValidationError("PayPal credentials are incomplete", code="MISSING_CREDENTIALS")
        await gateway.authenticate(config.client_id, config.client_secret)
    except PaymentsError as e:
        return GatewayTestResult(success=False, environment=config.environment, message=e.message, details={"code": e.code})
    return GatewayTestResult(success=True, environment=config.environment, message="PayPal connection successful")


@router.get("/currency-rates", response_model=RateTableRead)
async def currency_rates(
    converter: CurrencyConverter = Depends(get_currency_converter),
    _admin: dict = Depends(require_admin),
):
    table = await converter.get_rates()
    return RateTableRead(
        base=table.base,
        rates={code: str(rate) for code, rate in table.rates.items()},
        date=table.date,
        using_fallback=table.using_fallback,
    )


@router.post("/test-conversion", response_model=ConversionRead)
async def test_conversion(
    payload: ConversionRequest,
    converter: CurrencyConverter = Depends(get_currency_converter),
    _admin: dict = Depends(require_admin),
):
    c = await converter.convert(payload.amount, payload.currency)
    return ConversionRead(
        original_amount=c.original_amount,
        original_currency=c.original_currency,
        amount=c.amount,
        currency=c.currency,
        rate=c.rate,
        using_fallback=c.using_fallback,
    )
