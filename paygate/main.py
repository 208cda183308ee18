"""
FastAPI application
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator
import traceback
import structlog

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from paygate.db import close_db, init_db
from paygate.core.bootstrap import reset_tables
from paygate.core.logging import configure_logging, request_id_var
from paygate.core.settings import get_settings
from paygate.core.exceptions import BaseAPIException
from paygate.core.responses import (
    error_response,
    bad_request_response,
    validation_error_response,
    internal_server_response,
    success_response,
)
from paygate.providers import get_gateway_factory

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: logging, tables, engine. Shutdown: engine and HTTP client."""
    configure_logging(settings.log_level)
    await reset_tables()
    await init_db()
    yield
    await close_db()
    await get_gateway_factory().aclose()


app = FastAPI(
    title="paygate",
    description="Payment gateway integration layer (GCash / Maya / Stripe / PayPal)",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex
    token = request_id_var.set(rid)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = rid
    return response


# ===== exception handlers =====


def _format_errors(errors) -> list[dict]:
    return [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in errors
    ]


@app.exception_handler(BaseAPIException)
async def base_api_exception_handler(request: Request, exc: BaseAPIException):
    logger.error(
        "api_exception",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )

    return error_response(
        msg=exc.message,
        code=exc.code,
        data=exc.details,
        status_code=exc.status_code
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=exc.errors(),
    )
    return bad_request_response(
        msg="Request validation failed",
        code=4000,
        data=_format_errors(exc.errors())
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(request: Request, exc: ValidationError):
    logger.warning(
        "pydantic_validation_error",
        path=request.url.path,
        method=request.method,
        errors=exc.errors(),
    )
    return validation_error_response(
        msg="Validation failed",
        code=4220,
        data=_format_errors(exc.errors())
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything unhandled; webhook providers treat the 500 as retryable"""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )

    # details only in debug
    error_details = None
    if settings.debug:
        error_details = {
            "error": str(exc),
            "type": type(exc).__name__,
            "traceback": traceback.format_exc()
        }

    return internal_server_response(
        msg="Internal server error",
        code=5000,
        data=error_details
    )


# ===== routes =====


@app.get("/")
async def root():
    return success_response(
        data={"service": "paygate", "version": "1.0.0"}
    )


@app.get("/health")
async def health_check():
    return success_response(
        data={"status": "ok"}
    )


from .routers import webhooks

app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["webhooks"])
