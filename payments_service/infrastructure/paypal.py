"""
PayPal REST client.

Provider responses are decoded once, here, into the result types below. The
workflow never looks at raw PayPal JSON except to store it for diagnostics.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from payments_service.application.errors import (
    GatewayAuthError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from payments_service.domain.states import CaptureIssue
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

# Headers PayPal sends with every webhook delivery
WEBHOOK_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def base_url_for(environment: str) -> str:
    return LIVE_BASE_URL if environment == "live" else SANDBOX_BASE_URL


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_in: int = 0
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ReturnUrls:
    return_url: str
    cancel_url: str


@dataclass(frozen=True)
class RemotePayment:
    remote_id: str
    approval_url: Optional[str]
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class CaptureSucceeded:
    remote_id: str
    capture_id: str
    amount: Dict[str, Any]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class CaptureAlreadyDone:
    """The provider says this remote order was captured before."""
    remote_id: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class CapturePending:
    remote_id: str
    capture_id: Optional[str]
    reason: Optional[str]
    amount: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class CaptureRejected:
    """`issue` is one of CaptureIssue; `provider_issue` is whatever PayPal reported."""
    remote_id: str
    issue: str
    provider_issue: Optional[str] = None
    description: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


CaptureOutcome = Union[CaptureSucceeded, CaptureAlreadyDone, CapturePending, CaptureRejected]


@dataclass(frozen=True)
class RefundIssued:
    """`refund_id` is None when PayPal reports the capture as refunded already."""
    capture_id: str
    refund_id: Optional[str]
    status: str
    amount: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class RemoteOrder:
    remote_id: str
    status: str
    custom_id: Optional[str]
    capture: Optional[CaptureOutcome]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


def _first_issue(payload: Any) -> tuple:
    if not isinstance(payload, dict):
        return None, None
    details = payload.get("details") or []
    if details and isinstance(details[0], dict):
        return details[0].get("issue"), details[0].get("description")
    return payload.get("name"), payload.get("message")


def _first_capture(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    units = body.get("purchase_units") or []
    if not units:
        return None
    captures = ((units[0].get("payments") or {}).get("captures")) or []
    return captures[0] if captures else None


def parse_capture(remote_id: str, body: Dict[str, Any]) -> Optional[CaptureOutcome]:
    """Decodes the capture section of a PayPal order body; None when nothing was captured yet."""
    capture = _first_capture(body)
    if capture is None:
        return None
    status = capture.get("status")
    if status == "COMPLETED":
        return CaptureSucceeded(remote_id, capture["id"], capture.get("amount") or {}, raw=body)
    if status == "PENDING":
        reason = (capture.get("status_details") or {}).get("reason")
        return CapturePending(remote_id, capture.get("id"), reason, capture.get("amount"), raw=body)
    return CaptureRejected(
        remote_id,
        CaptureIssue.CAPTURE_DENIED.value,
        provider_issue=status,
        description=(capture.get("status_details") or {}).get("reason"),
        raw=body,
    )


class PayPalClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str = SANDBOX_BASE_URL, timeout: float = 15.0):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(
                f"PayPal request timed out: {method} {path}",
                extra={'extra_fields': {'method': method, 'path': path}},
            )
            raise GatewayTimeoutError(f"PayPal request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning(
                f"PayPal request failed: {method} {path}: {e}",
                extra={'extra_fields': {'method': method, 'path': path}},
            )
            raise GatewayUnavailableError(f"PayPal is unreachable: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"raw": response.text}
        return body if isinstance(body, dict) else {"raw": body}

    @staticmethod
    def _auth_headers(token: AccessToken, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"{token.token_type} {token.value}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _request_error(self, response: httpx.Response, action: str) -> GatewayRequestError:
        payload = self._json(response)
        issue, description = _first_issue(payload)
        logger.error(
            f"PayPal {action} failed with HTTP {response.status_code}",
            extra={'extra_fields': {'provider_status': response.status_code, 'issue': issue, 'payload': payload}},
        )
        return GatewayRequestError(
            description or f"PayPal {action} failed",
            provider_status=response.status_code,
            payload=payload,
            issue=issue,
        )

    async def authenticate(self, client_id: str, secret: str) -> AccessToken:
        if not client_id or not secret:
            raise GatewayAuthError("PayPal client id and secret are required")
        response = await self._send(
            "POST",
            "/v1/oauth2/token",
            auth=(client_id, secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json", "Accept-Language": "en_US"},
        )
        if response.status_code in (400, 401, 403):
            payload = self._json(response)
            logger.error(
                "PayPal rejected client credentials",
                extra={'extra_fields': {'provider_status': response.status_code, 'error': payload.get("error")}},
            )
            raise GatewayAuthError(
                payload.get("error_description") or "PayPal authentication failed",
                details={"provider_status": response.status_code, "error": payload.get("error")},
            )
        if response.status_code >= 300:
            raise self._request_error(response, "authentication")
        body = self._json(response)
        if "access_token" not in body:
            raise GatewayAuthError("PayPal returned no access token")
        return AccessToken(
            value=body["access_token"],
            expires_in=int(body.get("expires_in") or 0),
            token_type=body.get("token_type") or "Bearer",
        )

    async def create_remote_payment(
        self,
        token: AccessToken,
        amount: Decimal,
        currency: str,
        reference_id: str,
        return_urls: ReturnUrls,
        *,
        custom_id: Optional[str] = None,
        description: Optional[str] = None,
        brand_name: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> RemotePayment:
        purchase_unit = {
            "reference_id": reference_id,
            "amount": {"currency_code": currency, "value": format_amount(amount)},
        }
        if custom_id:
            purchase_unit["custom_id"] = custom_id
        if description:
            purchase_unit["description"] = description
        context = {
            "landing_page": "NO_PREFERENCE",
            "user_action": "PAY_NOW",
            "return_url": return_urls.return_url,
            "cancel_url": return_urls.cancel_url,
        }
        if brand_name:
            context["brand_name"] = brand_name
        body = {"intent": "CAPTURE", "purchase_units": [purchase_unit], "application_context": context}

        response = await self._send(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers=self._auth_headers(token, request_id or f"{reference_id}-create"),
        )
        if response.status_code >= 300:
            raise self._request_error(response, "order creation")

        data = self._json(response)
        remote_id = data.get("id")
        if not remote_id:
            raise GatewayRequestError("PayPal order response has no id", provider_status=response.status_code, payload=data)
        approval_url = next(
            (link.get("href") for link in data.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return RemotePayment(remote_id=remote_id, approval_url=approval_url, status=data.get("status", ""), raw=data)

    async def capture_remote_payment(self, token: AccessToken, remote_id: str) -> CaptureOutcome:
        response = await self._send(
            "POST",
            f"/v2/checkout/orders/{remote_id}/capture",
            json={},
            headers=self._auth_headers(token, f"capture-{remote_id}"),
        )
        if response.status_code == 401:
            raise GatewayAuthError("PayPal access token rejected")
        if response.status_code >= 500:
            raise self._request_error(response, "capture")

        body = self._json(response)
        if response.status_code >= 400:
            issue, description = _first_issue(body)
            if issue == CaptureIssue.ORDER_ALREADY_CAPTURED.value:
                return CaptureAlreadyDone(remote_id, raw=body)
            known = {i.value for i in CaptureIssue}
            return CaptureRejected(
                remote_id,
                issue if issue in known else CaptureIssue.CAPTURE_FAILED.value,
                provider_issue=issue,
                description=description,
                raw=body,
            )

        outcome = parse_capture(remote_id, body)
        if outcome is None:
            return CaptureRejected(
                remote_id,
                CaptureIssue.CAPTURE_FAILED.value,
                provider_issue=body.get("status"),
                description="PayPal returned no capture",
                raw=body,
            )
        return outcome

    async def get_remote_order(self, token: AccessToken, remote_id: str) -> RemoteOrder:
        response = await self._send("GET", f"/v2/checkout/orders/{remote_id}", headers=self._auth_headers(token))
        if response.status_code >= 300:
            raise self._request_error(response, "order lookup")
        body = self._json(response)
        units = body.get("purchase_units") or [{}]
        return RemoteOrder(
            remote_id=body.get("id", remote_id),
            status=body.get("status", ""),
            custom_id=units[0].get("custom_id"),
            capture=parse_capture(remote_id, body),
            raw=body,
        )

    async def refund_capture(
        self,
        token: AccessToken,
        capture_id: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> RefundIssued:
        body = {"amount": {"currency_code": currency, "value": format_amount(amount)}}
        if reason:
            body["note_to_payer"] = reason[:255]

        response = await self._send(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json=body,
            headers=self._auth_headers(token, f"refund-{capture_id}"),
        )
        if response.status_code == 401:
            raise GatewayAuthError("PayPal access token rejected")
        if response.status_code >= 400:
            issue, _ = _first_issue(self._json(response))
            if response.status_code < 500 and issue == "CAPTURE_FULLY_REFUNDED":
                return RefundIssued(capture_id, None, "COMPLETED", raw=self._json(response))
            raise self._request_error(response, "refund")

        data = self._json(response)
        status = data.get("status", "")
        if status not in ("COMPLETED", "PENDING"):
            raise GatewayRequestError(
                f"PayPal refund ended in status {status or 'UNKNOWN'}",
                provider_status=response.status_code,
                payload=data,
                issue=status or None,
                code="REFUND_FAILED",
            )
        return RefundIssued(capture_id, data.get("id"), status, data.get("amount"), raw=data)

    async def verify_webhook_signature(
        self,
        token: AccessToken,
        webhook_id: str,
        headers: Mapping[str, str],
        event: Dict[str, Any],
    ) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        fields = {name: lowered.get(header) for name, header in WEBHOOK_SIGNATURE_HEADERS.items()}
        missing = [header for name, header in WEBHOOK_SIGNATURE_HEADERS.items() if not fields[name]]
        if missing:
            logger.warning(
                "Webhook delivery is missing signature headers",
                extra={'extra_fields': {'missing': missing}},
            )
            return False

        response = await self._send(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={**fields, "webhook_id": webhook_id, "webhook_event": event},
            headers=self._auth_headers(token),
        )
        if response.status_code >= 300:
            raise self._request_error(response, "webhook verification")
        return self._json(response).get("verification_status") == "SUCCESS"
