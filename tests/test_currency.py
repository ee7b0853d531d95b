from decimal import Decimal

import httpx
import pytest

from payments_service.application.currency import CurrencyConverter
from payments_service.application.errors import ConversionError


async def test_sar_converted_with_live_rates(http_client):
    conversion = await CurrencyConverter(http_client).convert(Decimal("100"), "SAR")
    assert conversion.amount == Decimal("26.67")
    assert conversion.currency == "USD"
    assert conversion.rate == Decimal("0.2667")
    assert not conversion.using_fallback
    assert conversion.original_amount == Decimal("100")
    assert conversion.original_currency == "SAR"


async def test_cross_rate_for_eur(http_client):
    conversion = await CurrencyConverter(http_client).convert(Decimal("100"), "eur")
    assert conversion.amount == Decimal("108.86")
    assert conversion.original_currency == "EUR"


async def test_settlement_currency_passes_through(http_client, fake_paypal):
    conversion = await CurrencyConverter(http_client).convert(Decimal("42.5"), "USD")
    assert conversion.amount == Decimal("42.50")
    assert conversion.rate == Decimal("1")
    assert fake_paypal.requests == []


async def test_unsupported_currency(http_client, fake_paypal):
    with pytest.raises(ConversionError) as exc:
        await CurrencyConverter(http_client).convert(Decimal("100"), "JPY")
    assert exc.value.code == "UNSUPPORTED_CURRENCY"
    assert "JPY" in exc.value.message
    assert fake_paypal.requests == []


async def test_fallback_rates_when_api_down(http_client, fake_paypal):
    fake_paypal.rates_fail = True
    conversion = await CurrencyConverter(http_client).convert(Decimal("100"), "SAR")
    assert conversion.amount == Decimal("27.00")
    assert conversion.using_fallback


async def test_conversion_fails_without_fallback(http_client, fake_paypal):
    fake_paypal.rates_fail = True
    converter = CurrencyConverter(http_client, allow_fallback=False)
    with pytest.raises(ConversionError) as exc:
        await converter.convert(Decimal("100"), "SAR")
    assert exc.value.code == "CONVERSION_FAILED"


async def test_unreachable_api_uses_fallback():
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        table = await CurrencyConverter(http).get_rates()
    assert table.using_fallback
    assert table.rates["USD"] == Decimal("0.27")
