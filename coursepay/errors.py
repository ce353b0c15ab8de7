import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PaymentServiceError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(PaymentServiceError):
    status_code = 400
    message = "Invalid request"


class PaymentIncompleteError(ValidationError):
    message = "Payment not completed"

    def __init__(self, gateway_status: str):
        super().__init__()
        self.gateway_status = gateway_status

    def to_dict(self) -> dict:
        return {"error": self.message, "status": self.gateway_status}


class AuthorizationError(PaymentServiceError):
    # 404 rather than 403 so callers cannot discover other buyers' sales
    status_code = 404
    message = "Sale not found or not eligible"


class NotFoundError(PaymentServiceError):
    status_code = 404
    message = "Not found"


class GatewayError(PaymentServiceError):
    status_code = 502
    message = "Payment gateway request failed"


class SignatureError(PaymentServiceError):
    status_code = 400
    message = "Invalid signature"


class OutOfOrderError(PaymentServiceError):
    # non-2xx so the gateway redelivers once the sale has settled
    status_code = 409
    message = "Event arrived before the payment settled"


async def payment_error_handler(request: Request, exc: PaymentServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    request_id = getattr(request.state, "request_id", None)
    headers = {"X-Request-ID": request_id} if request_id else None
    return JSONResponse(status_code=500, content={"error": "Internal server error"}, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentServiceError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
