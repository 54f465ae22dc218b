"""Translate service errors into HTTP responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from subscription_service.core.logging import log_error, log_warning
from subscription_service.modules.payment_gateway.exceptions import GatewayError
from subscription_service.modules.subscription.exceptions import (
    NotFoundError,
    PersistenceError,
    SignatureError,
    SubscriptionServiceError,
    UsageLimitExceededError,
    ValidationError,
)

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Service temporarily unavailable"

_STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (SignatureError, status.HTTP_401_UNAUTHORIZED),
    (UsageLimitExceededError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(error: SubscriptionServiceError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _body(message: str, code: str) -> dict:
    return {"success": False, "message": message, "code": code}


async def service_error_handler(request: Request, exc: SubscriptionServiceError) -> JSONResponse:
    status_code = status_for(exc)
    message = exc.message
    if status_code >= 500:
        # Storage errors carry driver and SQL text; it stays in the log
        log_error(logger, f"{request.method} {request.url.path} failed", exception=exc)
        message = UNAVAILABLE_MESSAGE
    return JSONResponse(status_code=status_code, content=_body(message, exc.code))


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    log_warning(
        logger,
        f"Gateway error on {request.url.path}: {exc.code}",
        gateway_code=exc.code,
        gateway_status=exc.status_code,
    )
    status_code = status.HTTP_504_GATEWAY_TIMEOUT if exc.is_timeout else status.HTTP_502_BAD_GATEWAY
    return JSONResponse(
        status_code=status_code,
        content=_body(f"Payment gateway error: {exc.message}", exc.code),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SubscriptionServiceError, service_error_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)
