"""Converts site-currency amounts into the currency PayPal settles in."""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Optional

import httpx

from payments_service.application.errors import ConversionError
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

BASE_CURRENCY = "SAR"

# Units of each currency per 1 SAR, used when the rate API cannot be reached.
FALLBACK_RATES: Dict[str, Decimal] = {
    "SAR": Decimal("1"),
    "USD": Decimal("0.27"),
    "EUR": Decimal("0.24"),
    "GBP": Decimal("0.21"),
}

CENT = Decimal("0.01")


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    currency: str
    rate: Decimal
    using_fallback: bool
    original_amount: Decimal
    original_currency: str


@dataclass(frozen=True)
class RateTable:
    base: str
    rates: Dict[str, Decimal]
    date: Optional[str]
    using_fallback: bool


class CurrencyConverter:
    def __init__(
        self,
        http: httpx.AsyncClient,
        api_url: str = "https://api.exchangerate-api.com/v4/latest",
        settlement_currency: str = "USD",
        timeout: float = 5.0,
        allow_fallback: bool = True,
    ):
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.settlement_currency = settlement_currency
        self.timeout = timeout
        self.allow_fallback = allow_fallback

    @property
    def supported_currencies(self) -> tuple:
        return tuple(FALLBACK_RATES)

    async def _fetch_live_rates(self) -> RateTable:
        response = await self.http.get(f"{self.api_url}/{BASE_CURRENCY}", timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        rates = {
            code: Decimal(str(body["rates"][code]))
            for code in FALLBACK_RATES
            if code in body.get("rates", {})
        }
        if self.settlement_currency not in rates:
            raise ValueError(f"rate API returned no {self.settlement_currency} rate")
        return RateTable(base=BASE_CURRENCY, rates=rates, date=body.get("date"), using_fallback=False)

    async def get_rates(self) -> RateTable:
        try:
            return await self._fetch_live_rates()
        except (httpx.HTTPError, ValueError, KeyError, InvalidOperation) as e:
            if not self.allow_fallback:
                logger.error(f"Exchange rate lookup failed: {e}")
                raise ConversionError("Exchange rates are unavailable", details={"reason": str(e)}) from e
            logger.warning(
                f"Exchange rate lookup failed, using fallback rates: {e}",
                extra={'extra_fields': {'api_url': self.api_url}},
            )
            return RateTable(base=BASE_CURRENCY, rates=dict(FALLBACK_RATES), date=None, using_fallback=True)

    async def convert(self, amount: Decimal, from_currency: str) -> Conversion:
        from_currency = (from_currency or "").upper()
        amount = Decimal(amount)

        if from_currency == self.settlement_currency:
            return Conversion(
                amount=amount.quantize(CENT, rounding=ROUND_HALF_UP),
                currency=self.settlement_currency,
                rate=Decimal("1"),
                using_fallback=False,
                original_amount=amount,
                original_currency=from_currency,
            )

        if from_currency not in FALLBACK_RATES:
            raise ConversionError(
                f"Currency {from_currency} is not supported. Please use SAR or USD.",
                code="UNSUPPORTED_CURRENCY",
                details={"currency": from_currency},
            )

        table = await self.get_rates()
        source_rate = table.rates.get(from_currency)
        target_rate = table.rates.get(self.settlement_currency)
        if not source_rate or not target_rate:
            raise ConversionError(
                f"No exchange rate available for {from_currency}",
                details={"currency": from_currency},
            )

        rate = target_rate / source_rate
        converted = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        logger.info(
            f"Converted {amount} {from_currency} to {converted} {self.settlement_currency}",
            extra={'extra_fields': {'rate': str(rate), 'using_fallback': table.using_fallback}},
        )
        return Conversion(
            amount=converted,
            currency=self.settlement_currency,
            rate=rate,
            using_fallback=table.using_fallback,
            original_amount=amount,
            original_currency=from_currency,
        )
