"""Entrypoints for the paytrace payment services."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    CONTENT_TYPE_LATEST,
    generate_latest,
)

from .config import Settings
from .correlation import CorrelationPolicy
from .errors import AppError, ErrorCode, problem_details
from .internal import backend, gateway, token_service
from .logging_config import configure_logging
from .metrics import configure_metrics
from .middleware import CorrelationMiddleware, MetricsMiddleware, log_request_error, off_loop
from .process import register_process_handlers
from .tracing import instrument_fastapi

configure_logging()
configure_metrics()
register_process_handlers()
logger = logging.getLogger("paytrace.api")


def _problem_response(request: Request, error: BaseException, status_code: int) -> JSONResponse:
    body = problem_details(error, request.url.path)
    request.state.error_details = body["details"][0]["message"]
    for key, attr in (("requestId", "request_id"), ("correlationId", "correlation_id")):
        value = getattr(request.state, attr, None)
        if value is not None:
            body[key] = value
    return JSONResponse(status_code=status_code, content=body)


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    await off_loop(log_request_error, request, exc, exc.status_code)
    return _problem_response(request, exc, exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = AppError("Invalid request payload", 400, ErrorCode.INVALID_PAYLOAD)
    await off_loop(log_request_error, request, exc, 400)
    return _problem_response(request, error, 400)


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # CorrelationMiddleware has already logged the Request Error on its way out.
    return _problem_response(request, exc, 500)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    register_process_handlers(asyncio.get_running_loop())
    yield


def create_service_app(
    name: str,
    router: APIRouter,
    policy: CorrelationPolicy,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build one service with correlation context, error mapping and metrics."""

    settings = settings or Settings.from_env()
    registry = CollectorRegistry()
    request_counter = Counter(
        "requests_total",
        "Total number of HTTP requests processed.",
        ["method", "path", "status"],
        registry=registry,
    )
    latency_histogram = Histogram(
        "request_latency_seconds",
        "Request latency in seconds.",
        ["method", "path"],
        registry=registry,
    )
    error_counter = Counter(
        "errors_total",
        "Total number of exceptions raised by requests.",
        ["method", "path", "exception"],
        registry=registry,
    )

    app = FastAPI(title=name, version="0.1.0", lifespan=_lifespan)
    app.add_middleware(
        MetricsMiddleware,
        request_counter=request_counter,
        request_latency=latency_histogram,
        error_counter=error_counter,
    )
    app.add_middleware(CorrelationMiddleware, service=name, policy=policy)
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    app.include_router(router)

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    if settings.tracing_enabled:
        instrument_fastapi(app, name)

    logger.info("service_created", extra={"service": name, "policy": policy.value})
    return app


gateway_app = create_service_app(
    gateway.SERVICE_NAME, gateway.router, CorrelationPolicy.GENERATE
)
token_app = create_service_app(
    token_service.SERVICE_NAME, token_service.router, CorrelationPolicy.PROPAGATE_ABSENT
)
backend_app = create_service_app(
    backend.SERVICE_NAME, backend.router, CorrelationPolicy.PROPAGATE_ABSENT
)
