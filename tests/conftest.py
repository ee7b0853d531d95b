import json
import os
import re
from decimal import Decimal

# Settings are cached on first import; configure them before anything loads.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("WEBHOOK_LOOKUP_DELAY_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from payments_service.application.currency import CurrencyConverter
from payments_service.application.gateway_settings import GatewayConfig
from payments_service.application.schemas import OrderCreate
from payments_service.application.service import OrderService
from payments_service.application.workflow import PaymentWorkflow
from payments_service.domain.models import Base
from payments_service.infrastructure.paypal import PayPalClient

RATES = {"SAR": 1, "USD": 0.2667, "EUR": 0.245, "GBP": 0.21}


def completed_order_body(remote_id, capture_id=None, value="26.67", currency="USD"):
    return {
        "id": remote_id,
        "status": "COMPLETED",
        "purchase_units": [{
            "reference_id": "ref",
            "payments": {"captures": [{
                "id": capture_id or f"CAP-{remote_id}",
                "status": "COMPLETED",
                "amount": {"currency_code": currency, "value": value},
            }]},
        }],
    }


def pending_order_body(remote_id, capture_id=None):
    return {
        "id": remote_id,
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [{
            "id": capture_id or f"CAP-{remote_id}",
            "status": "PENDING",
            "status_details": {"reason": "PENDING_REVIEW"},
            "amount": {"currency_code": "USD", "value": "26.67"},
        }]}}],
    }


def declined_order_body(remote_id, capture_id=None):
    body = completed_order_body(remote_id, capture_id)
    capture = body["purchase_units"][0]["payments"]["captures"][0]
    capture["status"] = "DECLINED"
    capture["status_details"] = {"reason": "DECLINED_BY_RISK_FRAUD_FILTERS"}
    return body


def issue_body(issue, description="Request rejected"):
    return {
        "name": "UNPROCESSABLE_ENTITY",
        "message": "The requested action could not be performed.",
        "details": [{"issue": issue, "description": description}],
    }


class FakePayPal:
    """In-process stand-in for PayPal, the exchange-rate API and the e-mail relay."""

    def __init__(self):
        self.requests = []
        self.auth_status = 200
        self.create_failure = None
        self.next_capture = None
        self.captured = set()
        self.created = {}
        self.verification_status = "SUCCESS"
        self.rates_fail = False
        self.emails = []
        self.remote_orders = {}
        self.refunds = []
        self.refund_failure = None
        self._counter = 0

    def calls(self, method, pattern):
        return [r for r in self.requests if r.method == method and re.search(pattern, r.url.path)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "api.exchangerate-api.com":
            if self.rates_fail:
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json={"base": "SAR", "date": "2026-10-18", "rates": RATES})

        if request.url.host == "relay.test":
            self.emails.append(json.loads(request.content))
            return httpx.Response(202, json={"queued": True})

        if path == "/v1/oauth2/token":
            if self.auth_status != 200:
                return httpx.Response(self.auth_status, json={
                    "error": "invalid_client", "error_description": "Client Authentication failed",
                })
            return httpx.Response(200, json={
                "access_token": "A21-test-token", "token_type": "Bearer", "expires_in": 32400,
            })

        if path == "/v2/checkout/orders" and request.method == "POST":
            if self.create_failure == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.create_failure is not None:
                status, body = self.create_failure
                return httpx.Response(status, json=body)
            self._counter += 1
            remote_id = f"PAYPAL-{self._counter:04d}"
            self.created[remote_id] = json.loads(request.content)
            return httpx.Response(201, json={
                "id": remote_id,
                "status": "CREATED",
                "links": [
                    {"href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{remote_id}", "rel": "self"},
                    {"href": f"https://www.sandbox.paypal.com/checkoutnow?token={remote_id}", "rel": "approve"},
                ],
            })

        match = re.match(r"^/v2/checkout/orders/([^/]+)/capture$", path)
        if match:
            remote_id = match.group(1)
            if self.next_capture is not None:
                status, body = self.next_capture
                self.next_capture = None
                return httpx.Response(status, json=body)
            if remote_id in self.captured:
                return httpx.Response(422, json=issue_body("ORDER_ALREADY_CAPTURED"))
            self.captured.add(remote_id)
            return httpx.Response(201, json=completed_order_body(remote_id))

        match = re.match(r"^/v2/checkout/orders/([^/]+)$", path)
        if match and request.method == "GET":
            remote_id = match.group(1)
            if remote_id in self.remote_orders:
                return httpx.Response(200, json=self.remote_orders[remote_id])
            if remote_id in self.captured:
                return httpx.Response(200, json=completed_order_body(remote_id))
            return httpx.Response(200, json={"id": remote_id, "status": "APPROVED", "purchase_units": [{}]})

        match = re.match(r"^/v2/payments/captures/([^/]+)/refund$", path)
        if match and request.method == "POST":
            if self.refund_failure is not None:
                status, body = self.refund_failure
                return httpx.Response(status, json=body)
            body = json.loads(request.content)
            self.refunds.append((match.group(1), body))
            return httpx.Response(201, json={
                "id": f"REFUND-{len(self.refunds):04d}",
                "status": "COMPLETED",
                "amount": body.get("amount"),
            })

        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})

        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send_order_confirmation(self, order):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(order.order_number)


def checkout_payload(total="100.00", currency="SAR", **customer_overrides) -> dict:
    customer = {
        "first_name": "Sara",
        "last_name": "Alharbi",
        "email": "sara@example.com",
        "phone": "+966500000000",
        "address": "King Fahd Road 12",
        "city": "Riyadh",
        "country": "SA",
    }
    customer.update(customer_overrides)
    return {
        "customer": customer,
        "items": [{
            "product_id": "perfume-001",
            "product_name": "Oud Royal 100ml",
            "unit_price": "100.00",
            "quantity": 1,
        }],
        "shipping_cost": "0",
        "tax": "0",
        "total": total,
        "currency": currency,
    }


def make_order(**overrides) -> OrderCreate:
    return OrderCreate.model_validate(checkout_payload(**overrides))


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_paypal():
    return FakePayPal()


@pytest.fixture
async def http_client(fake_paypal):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_paypal.handler)) as client:
        yield client


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        enabled=True,
        environment="sandbox",
        client_id="client-id",
        client_secret="client-secret",
        webhook_id="",
        timeout=5.0,
        return_url="https://shop.test/payment/return",
        cancel_url="https://shop.test/checkout/cancel",
        brand_name="Maison Darin",
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def order_service(db):
    return OrderService(db)


@pytest.fixture
def make_workflow(http_client, notifier):
    def build(session, config, **kwargs):
        return PaymentWorkflow(
            OrderService(session),
            PayPalClient(http_client, base_url=config.base_url, timeout=config.timeout),
            config,
            CurrencyConverter(http_client),
            kwargs.pop("notifier", notifier),
            lookup_attempts=kwargs.pop("lookup_attempts", 2),
            lookup_delay=0,
        )
    return build


@pytest.fixture
def workflow(db, gateway_config, make_workflow):
    return make_workflow(db, gateway_config)


@pytest.fixture
async def app_client(session_factory, http_client, gateway_config, notifier):
    from payments_service.api.deps import get_gateway_config, get_http_client, get_notifier
    from payments_service.infrastructure.db import get_db
    from payments_service.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_gateway_config] = lambda: gateway_config
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    from payments_service.admin_auth import create_access_token
    return {"Authorization": f"Bearer {create_access_token('admin@maison.test')}"}


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))
