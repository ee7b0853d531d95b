from typing import Optional

import httpx
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from payments_service.admin_auth import decode_access_token, is_admin
from payments_service.application.currency import CurrencyConverter
from payments_service.application.errors import AuthenticationError, AuthorizationError
from payments_service.application.gateway_settings import GatewayConfig, GatewaySettingsService
from payments_service.application.messages import locale_from_header
from payments_service.application.service import OrderService
from payments_service.application.workflow import PaymentWorkflow
from payments_service.core_settings import Settings, get_settings
from payments_service.infrastructure.db import get_db
from payments_service.infrastructure.notifications import (
    ConfirmationNotifier,
    HttpRelayNotifier,
    LoggingNotifier,
)
from payments_service.infrastructure.paypal import PayPalClient

BEARER_PREFIX = "Bearer "


def get_http_client(request: Request) -> httpx.AsyncClient:
    # Created by the application lifespan and shared by all requests
    return request.app.state.http_client


def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderService:
    return OrderService(db)


async def get_gateway_config(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> GatewayConfig:
    return await GatewaySettingsService(db, settings).resolve()


def get_paypal_client(
    http: httpx.AsyncClient = Depends(get_http_client),
    config: GatewayConfig = Depends(get_gateway_config),
) -> PayPalClient:
    return PayPalClient(http, base_url=config.base_url, timeout=config.timeout)


def get_currency_converter(
    http: httpx.AsyncClient = Depends(get_http_client),
    settings: Settings = Depends(get_settings),
) -> CurrencyConverter:
    return CurrencyConverter(
        http,
        api_url=settings.EXCHANGE_RATE_API_URL,
        settlement_currency=settings.SETTLEMENT_CURRENCY,
        timeout=settings.EXCHANGE_RATE_TIMEOUT_SECONDS,
        allow_fallback=settings.ALLOW_FALLBACK_RATES,
    )


def get_notifier(
    http: httpx.AsyncClient = Depends(get_http_client),
    settings: Settings = Depends(get_settings),
) -> ConfirmationNotifier:
    if settings.EMAIL_RELAY_URL:
        return HttpRelayNotifier(http, settings.EMAIL_RELAY_URL)
    return LoggingNotifier()


def get_workflow(
    orders: OrderService = Depends(get_order_service),
    gateway: PayPalClient = Depends(get_paypal_client),
    config: GatewayConfig = Depends(get_gateway_config),
    converter: CurrencyConverter = Depends(get_currency_converter),
    notifier: ConfirmationNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> PaymentWorkflow:
    return PaymentWorkflow(
        orders,
        gateway,
        config,
        converter,
        notifier,
        lookup_attempts=settings.WEBHOOK_LOOKUP_ATTEMPTS,
        lookup_delay=settings.WEBHOOK_LOOKUP_DELAY_SECONDS,
    )


def get_locale(
    accept_language: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> str:
    return locale_from_header(accept_language, default=settings.DEFAULT_LOCALE)


def require_admin(authorization: Optional[str] = Header(default=None)) -> dict:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise AuthenticationError("Missing token")
    token_data = decode_access_token(authorization.split(" ", 1)[1])
    if not token_data:
        raise AuthenticationError("Invalid token")
    if not is_admin(token_data):
        raise AuthorizationError("Admin role required")
    return token_data
