"""
Error taxonomy of the payments service.

Every error carries the HTTP status it is surfaced with and a stable,
machine-readable code. The API layer renders them in one envelope; nothing
below the API layer knows about HTTP responses.
"""

from typing import Any, Optional


class PaymentsError(Exception):
    status_code = 500
    code = "SERVER_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class ValidationError(PaymentsError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ConversionError(PaymentsError):
    """Currency conversion unavailable; checkout aborts before any order exists."""
    status_code = 400
    code = "CONVERSION_FAILED"


class NotFoundError(PaymentsError):
    status_code = 404
    code = "NOT_FOUND"


class LocalOrderNotFoundError(NotFoundError):
    """An external payment id with no local order. A data-integrity problem, not bad input."""
    code = "LOCAL_ORDER_NOT_FOUND"

    def __init__(self, external_id: str, message: str = "Local order not found"):
        super().__init__(message, details={"external_payment_id": external_id})
        self.external_id = external_id


class OrderNotYetKnownError(PaymentsError):
    """Webhook for an order whose external id is not bound yet; the provider should retry."""
    status_code = 503
    code = "ORDER_NOT_YET_KNOWN"


class AlreadyBoundError(PaymentsError):
    status_code = 409
    code = "ALREADY_BOUND"


class InvalidTransitionError(PaymentsError):
    status_code = 409
    code = "INVALID_TRANSITION"


class GatewayError(PaymentsError):
    status_code = 502
    code = "GATEWAY_ERROR"


class GatewayNotConfiguredError(GatewayError):
    status_code = 400
    code = "PAYPAL_DISABLED"


class GatewayAuthError(GatewayError):
    """The provider rejected the client credentials."""
    status_code = 400
    code = "AUTH_FAILED"


class GatewayRequestError(GatewayError):
    """The provider rejected a request; `payload` is its raw error body."""
    code = "GATEWAY_REQUEST_FAILED"

    def __init__(self, message: str, *, provider_status: Optional[int] = None,
                 payload: Any = None, issue: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, code=code, details=payload)
        self.provider_status = provider_status
        self.payload = payload
        self.issue = issue
        # Business rejections (4xx) are the caller's problem, 5xx the provider's.
        if provider_status is not None and 400 <= provider_status < 500:
            self.status_code = 400


class GatewayUnavailableError(GatewayError):
    """Network failure talking to the provider."""
    code = "GATEWAY_UNAVAILABLE"


class GatewayTimeoutError(GatewayUnavailableError):
    code = "GATEWAY_TIMEOUT"


class GatewayCaptureDeniedError(GatewayError):
    """Capture refused by the provider. The order is FAILED; the provider code is kept."""
    status_code = 400
    code = "CAPTURE_FAILED"

    def __init__(self, issue: str, message: str, *, description: Optional[str] = None,
                 payload: Any = None, order_number: Optional[str] = None):
        super().__init__(message, code=issue, details=payload)
        self.issue = issue
        self.description = description
        self.order_number = order_number


class WebhookVerificationError(PaymentsError):
    status_code = 400
    code = "INVALID_WEBHOOK_SIGNATURE"


class AuthenticationError(PaymentsError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"


class AuthorizationError(PaymentsError):
    status_code = 403
    code = "AUTHORIZATION_ERROR"
