from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from payments_service.application.errors import PaymentsError
from shared.core.logging_config import get_logger

logger = get_logger(__name__)


def error_body(code: str, message: str, details: Any = None) -> dict:
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": jsonable_encoder(details)},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def payments_error_handler(request: Request, exc: PaymentsError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.code}: {exc.message}",
        extra={'extra_fields': {'path': request.url.path, 'status_code': exc.status_code, 'code': exc.code}},
    )
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message, exc.details))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=error_body("VALIDATION_ERROR", "Request data is invalid", exc.errors()),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}",
        exc_info=exc,
        extra={'extra_fields': {'path': request.url.path}},
    )
    return JSONResponse(status_code=500, content=error_body("SERVER_ERROR", "An internal server error occurred"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentsError, payments_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
