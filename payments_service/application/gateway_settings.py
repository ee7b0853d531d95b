"""
PayPal gateway configuration.

Admins store credentials in the database; until they do, environment
settings apply. A `GatewayConfig` is resolved once per request and handed to
the workflow, so nothing reads credentials from module state.
"""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payments_service.application.errors import GatewayNotConfiguredError, ValidationError
from payments_service.application.schemas import GatewaySettingsRead, GatewaySettingsUpdate
from payments_service.core_settings import Settings
from payments_service.domain.models import PaymentGatewaySettings
from payments_service.domain.states import PAYPAL_PROVIDER
from payments_service.infrastructure.paypal import ReturnUrls, base_url_for
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

ENVIRONMENTS = ("sandbox", "live")


@dataclass(frozen=True)
class GatewayConfig:
    enabled: bool
    environment: str
    client_id: str
    client_secret: str = field(repr=False)
    webhook_id: str = ""
    timeout: float = 15.0
    return_url: str = ""
    cancel_url: str = ""
    brand_name: Optional[str] = None
    require_webhook_signature: bool = False

    @property
    def base_url(self) -> str:
        return base_url_for(self.environment)

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def return_urls(self) -> ReturnUrls:
        return ReturnUrls(return_url=self.return_url, cancel_url=self.cancel_url)

    def ensure_usable(self) -> None:
        if not self.enabled:
            raise GatewayNotConfiguredError("PayPal is disabled", code="PAYPAL_DISABLED")
        if not self.has_credentials:
            raise GatewayNotConfiguredError("PayPal credentials are incomplete", code="MISSING_CREDENTIALS")


class GatewaySettingsService:
    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.settings = settings

    async def _row(self) -> Optional[PaymentGatewaySettings]:
        result = await self.db.execute(
            select(PaymentGatewaySettings).where(PaymentGatewaySettings.provider == PAYPAL_PROVIDER)
        )
        return result.scalar_one_or_none()

    def _from_values(self, enabled, environment, client_id, client_secret, webhook_id) -> GatewayConfig:
        s = self.settings
        return GatewayConfig(
            enabled=enabled,
            environment=environment,
            client_id=client_id,
            client_secret=client_secret,
            webhook_id=webhook_id,
            timeout=s.PAYPAL_TIMEOUT_SECONDS,
            return_url=s.PAYPAL_RETURN_URL,
            cancel_url=s.PAYPAL_CANCEL_URL,
            brand_name=s.BRAND_NAME,
            require_webhook_signature=s.PAYPAL_REQUIRE_WEBHOOK_SIGNATURE,
        )

    async def resolve(self) -> GatewayConfig:
        row = await self._row()
        if row is None:
            s = self.settings
            return self._from_values(
                s.PAYPAL_ENABLED, s.PAYPAL_ENVIRONMENT, s.PAYPAL_CLIENT_ID,
                s.PAYPAL_CLIENT_SECRET, s.PAYPAL_WEBHOOK_ID,
            )
        return self._from_values(row.enabled, row.environment, row.client_id, row.client_secret, row.webhook_id)

    async def read(self) -> GatewaySettingsRead:
        row = await self._row()
        config = await self.resolve()
        return GatewaySettingsRead(
            provider=PAYPAL_PROVIDER,
            enabled=config.enabled,
            environment=config.environment,
            client_id=config.client_id,
            has_client_secret=bool(config.client_secret),
            webhook_id=config.webhook_id,
            updated_at=row.updated_at if row else None,
        )

    async def update(self, payload: GatewaySettingsUpdate) -> GatewaySettingsRead:
        row = await self._row()
        if row is None:
            s = self.settings
            row = PaymentGatewaySettings(
                provider=PAYPAL_PROVIDER,
                enabled=s.PAYPAL_ENABLED,
                environment=s.PAYPAL_ENVIRONMENT,
                client_id=s.PAYPAL_CLIENT_ID,
                client_secret=s.PAYPAL_CLIENT_SECRET,
                webhook_id=s.PAYPAL_WEBHOOK_ID,
            )
            self.db.add(row)

        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        for key, value in changes.items():
            setattr(row, key, value.strip() if isinstance(value, str) else value)

        if row.environment not in ENVIRONMENTS:
            raise ValidationError(f"Unknown PayPal environment: {row.environment}")
        if row.enabled and not (row.client_id and row.client_secret):
            await self.db.rollback()
            raise ValidationError(
                "Client ID and secret are required to enable PayPal",
                details={"missing": [k for k in ("client_id", "client_secret") if not getattr(row, k)]},
            )

        await self.db.commit()
        logger.info(
            "PayPal settings updated",
            extra={'extra_fields': {'fields': sorted(changes), 'enabled': row.enabled, 'environment': row.environment}},
        )
        return await self.read()
