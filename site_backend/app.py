"""
FastAPI application entry point for the site backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from site_backend.config import get_settings
from site_backend.donations import (
    DonationValidationError,
    PaymentNotConfiguredError,
    PaymentProviderError,
    WebhookVerificationError,
)
from site_backend.registrations import (
    RegistrationNotFoundError,
    RegistrationStorageError,
    RegistrationValidationError,
)
from site_backend.routes import router

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    RegistrationValidationError: 400,
    RegistrationNotFoundError: 404,
    RegistrationStorageError: 500,
    DonationValidationError: 400,
    WebhookVerificationError: 400,
    PaymentNotConfiguredError: 503,
    PaymentProviderError: 502,
}


def _envelope(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": False, "message": message}
    )


async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
    return _envelope(exc.status_code, str(exc.detail))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return _envelope(400, "Invalid request body")


async def _domain_error(request: Request, exc: Exception) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _envelope(status_code, str(exc))


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _envelope(500, f"Internal server error: {exc}")


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )
    app = FastAPI(title="Site Backend (FastAPI)", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    for error_class in ERROR_STATUS:
        app.add_exception_handler(error_class, _domain_error)
    app.add_exception_handler(Exception, _unhandled_error)
    return app


app = create_app()
