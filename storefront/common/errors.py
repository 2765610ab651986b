"""
Common — error taxonomy and FastAPI exception handlers

Every service raises ServiceError subclasses from its command/query layer.
The handlers turn them into a `{"error": <message>, "code": <code>}` body
with the matching HTTP status. Callers never see retry counts or
compensation details.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    code = "SERVICE_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class ValidationFailed(ServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class Unauthorized(ServiceError):
    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(ServiceError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(ServiceError):
    code = "NOT_FOUND"
    status_code = 404


class Conflict(ServiceError):
    code = "CONFLICT"
    status_code = 409


class InsufficientStock(Conflict):
    code = "INSUFFICIENT_STOCK"


class PaymentDeclined(ServiceError):
    code = "PAYMENT_DECLINED"
    status_code = 402


class UpstreamFailure(ServiceError):
    """A call to another service errored, timed out or answered unexpectedly."""

    code = "UPSTREAM_FAILURE"
    status_code = 503


def error_body(message: str, code: str) -> dict:
    return {"error": message, "code": code}


async def _service_error(_req: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code))


async def _validation_error(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid input",
            "code": ValidationFailed.code,
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def _http_error(_req: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
    )


async def _unhandled_error(_req: Request, exc: Exception) -> JSONResponse:
    logger.exception("UNHANDLED_EXC: %s", exc)
    return JSONResponse(status_code=500, content=error_body("Internal error", "INTERNAL_ERROR"))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(Exception, _unhandled_error)
