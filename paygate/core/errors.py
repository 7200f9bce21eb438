# paygate/core/errors.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class PaymentError(Exception):
    """
    Base for every error the service raises on purpose.

    Each subclass pins an HTTP status and a stable machine-readable code; the
    message is safe to show to the caller. Provider or database detail never
    goes into `message`, only into the logs.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    title: str = "Internal error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.title
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.title, "message": self.message, "code": self.code}
        body.update(self.extra)
        return body


class Unauthorized(PaymentError):
    status_code = 401
    code = "UNAUTHORIZED"
    title = "Unauthorized"


class ValidationError(PaymentError):
    status_code = 400
    code = "VALIDATION_ERROR"
    title = "Validation error"

    def __init__(self, message: str = "Invalid request", details: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, details=details or [])


class GatewayNotConfigured(PaymentError):
    status_code = 400
    code = "GATEWAY_NOT_CONFIGURED"
    title = "Payment gateway not configured"

    def __init__(self, provider: str):
        super().__init__(f"Payment gateway '{provider}' is not configured", provider=provider)


class UnknownProvider(PaymentError):
    status_code = 400
    code = "UNKNOWN_PROVIDER"
    title = "Unknown payment provider"

    def __init__(self, provider: str):
        super().__init__(f"Unknown payment provider '{provider}'", provider=provider)


class SignatureInvalid(PaymentError):
    status_code = 400
    code = "SIGNATURE_INVALID"
    title = "Invalid signature"


class UnrecognizedCorrelationId(PaymentError):
    # acknowledged with 200 so the provider stops retrying an event we can never attribute
    status_code = 200
    code = "UNRECOGNIZED_CORRELATION_ID"
    title = "Unrecognized correlation id"


class NotFound(PaymentError):
    status_code = 404
    code = "NOT_FOUND"
    title = "Not found"


class ProviderAPIError(PaymentError):
    status_code = 500
    code = "PROVIDER_API_ERROR"
    title = "Payment provider error"

    def __init__(self, provider: str, message: str = "Payment provider request failed"):
        self.provider = provider
        super().__init__(message)


class ProviderTimeout(ProviderAPIError):
    code = "PROVIDER_TIMEOUT"
    title = "Payment provider timeout"

    def __init__(self, provider: str):
        super().__init__(provider, f"Payment provider '{provider}' did not respond in time")


class CheckoutFailed(PaymentError):
    status_code = 500
    code = "CHECKOUT_FAILED"
    title = "Checkout failed"

    def __init__(self, provider: str):
        super().__init__("Failed to create checkout session. Please try again.", provider=provider)


class PersistenceError(PaymentError):
    status_code = 500
    code = "PERSISTENCE_ERROR"
    title = "Persistence error"


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code)
    return JSONResponse(exc.to_body(), status_code=exc.status_code)
