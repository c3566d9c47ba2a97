"""
HTTP error mapping and exception handlers
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from powerplans.services.errors import (
    ApiRateLimited,
    ErrorKind,
    InvalidZipCode,
    OutOfServiceArea,
    ServiceError,
)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.ADDRESS_VALIDATION_FAILED: 400,
    ErrorKind.INVALID_ZIP: 400,
    ErrorKind.ADDRESS_INCOMPLETE: 400,
    ErrorKind.INVALID_SELECTION: 400,
    ErrorKind.API_BAD_REQUEST: 400,
    ErrorKind.OUT_OF_SERVICE_AREA: 422,
    ErrorKind.RESOLUTION_FAILED: 422,
    ErrorKind.API_RATE_LIMITED: 429,
    ErrorKind.API_SERVER_ERROR: 502,
    ErrorKind.API_INVALID_RESPONSE: 502,
    ErrorKind.NETWORK_ERROR: 502,
    ErrorKind.API_UNAUTHORIZED: 503,
    ErrorKind.CONFIGURATION_MISSING: 503,
    ErrorKind.CIRCUIT_OPEN: 503,
    ErrorKind.SNAPSHOT_UNAVAILABLE: 503,
    ErrorKind.API_TIMEOUT: 504,
    ErrorKind.RESOLUTION_TIMEOUT: 504,
}


def status_for(error: ServiceError) -> int:
    return STATUS_BY_KIND.get(error.kind, 500)


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError as the public error envelope."""
    status_code = status_for(exc)
    body = exc.to_envelope()
    headers: dict[str, str] = {}

    if isinstance(exc, OutOfServiceArea):
        body.update(zipCode=exc.zip_code, isValid=False, suggestions=exc.suggestions)
    if isinstance(exc, ApiRateLimited) and exc.retry_after:
        headers["Retry-After"] = str(max(1, round(exc.retry_after)))

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.code}")
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed input is a 400 with the same envelope as service errors."""
    errors = exc.errors()
    if any("zipCode" in err.get("loc", ()) for err in errors):
        body = InvalidZipCode("zipCode must be a 5-digit ZIP code").to_envelope()
    else:
        body = {
            "code": "INVALID_REQUEST",
            "message": "Request body or parameters failed validation",
            "userMessage": "Please check your input and try again.",
            "retryable": False,
        }
    body["details"] = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in errors
    ]
    return JSONResponse(status_code=400, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
