"""HTTP boundary middleware: correlation context, request logging and metrics."""

from __future__ import annotations

import contextvars
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from .context import bind_context
from .correlation import (
    CORRELATION_HEADER,
    REQUEST_ID_HEADER,
    CorrelationPolicy,
    MissingCorrelationId,
    generate_request_id,
    resolve_correlation_id,
)
from .errors import AppError, ErrorCode, problem_details
from .formatting import describe_error
from .service_logger import StructuredLogger
from .tracing import annotate_span

T = TypeVar("T")


async def off_loop(func: Callable[..., T], *args: Any) -> T:
    """Run a logging call in the threadpool under a copy of the current context.

    Remote log writes are blocking boto3 calls and must not stall the event loop.
    """

    ctx = contextvars.copy_context()
    return await run_in_threadpool(ctx.run, func, *args)


def _elapsed_ms(request: Request) -> int:
    start = getattr(request.state, "start_time", None)
    if start is None:
        return 0
    return int((time.perf_counter() - start) * 1000)


def log_request_error(
    request: Request,
    exc: BaseException,
    status_code: int,
    logger: Optional[StructuredLogger] = None,
) -> None:
    """Log a ``Request Error`` record for an exception raised while handling ``request``."""

    logger = logger or getattr(request.state, "logger", None) or StructuredLogger("http")
    error_fields = describe_error(exc)
    fields = {
        "method": request.method,
        "url": str(request.url),
        "statusCode": status_code,
        "error": error_fields["error"],
        "errorStack": error_fields["errorStack"],
        "duration": _elapsed_ms(request),
    }
    for key, attr in (("correlationId", "correlation_id"), ("requestId", "request_id")):
        value = getattr(request.state, attr, None)
        if value is not None:
            fields[key] = value
    logger.log("ERROR", "Request Error", fields)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Seed the execution context per request and log the request/response pair."""

    def __init__(  # type: ignore[override]
        self,
        app,
        service: str,
        policy: CorrelationPolicy = CorrelationPolicy.GENERATE,
    ) -> None:
        super().__init__(app)
        self.policy = policy
        self.logger = StructuredLogger(service)

    async def dispatch(  # type: ignore[override]
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        start = time.perf_counter()
        request.state.start_time = start
        request.state.logger = self.logger

        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
        try:
            correlation_id = await off_loop(
                resolve_correlation_id, request.headers.get(CORRELATION_HEADER), self.policy
            )
        except MissingCorrelationId as exc:
            error = AppError(str(exc), 400, ErrorCode.MISSING_CORRELATION_ID)
            body = problem_details(error, request.url.path)
            body["requestId"] = request_id
            return JSONResponse(status_code=400, content=body)

        request.state.correlation_id = correlation_id
        request.state.request_id = request_id

        with bind_context(correlation_id=correlation_id, request_id=request_id):
            annotate_span(correlation_id, request_id)
            request_fields = {
                "method": request.method,
                "url": str(request.url),
                "path": request.url.path,
                "userAgent": request.headers.get("user-agent"),
                "ip": request.client.host if request.client else None,
            }
            if request.query_params:
                request_fields["queryParams"] = dict(request.query_params)
            await off_loop(self.logger.info, "HTTP Request", request_fields)

            try:
                response = await call_next(request)
            except Exception as exc:
                await off_loop(log_request_error, request, exc, 500, self.logger)
                raise

            status_code = response.status_code
            response_fields = {
                "method": request.method,
                "url": str(request.url),
                "path": request.url.path,
                "statusCode": status_code,
                "duration": int((time.perf_counter() - start) * 1000),
            }
            if status_code >= 400:
                response_fields["errorDetails"] = (
                    getattr(request.state, "error_details", None) or "Unknown error"
                )
            await off_loop(
                self.logger.log,
                "ERROR" if status_code >= 400 else "INFO",
                "HTTP Response",
                response_fields,
            )

        if correlation_id:
            response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Tracks local Prometheus metrics for each request."""

    def __init__(
        self,
        app,
        request_counter: Counter,
        request_latency: Histogram,
        error_counter: Counter,
    ) -> None:  # type: ignore[override]
        super().__init__(app)
        self.request_counter = request_counter
        self.latency_histogram = request_latency
        self.error_counter = error_counter

    async def dispatch(  # type: ignore[override]
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        method = request.method
        path = request.url.path
        status_code = 500
        start = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except HTTPException as exc:
            status_code = exc.status_code
            self.error_counter.labels(
                method=method, path=path, exception=exc.__class__.__name__
            ).inc()
            raise
        except Exception as exc:
            self.error_counter.labels(
                method=method, path=path, exception=exc.__class__.__name__
            ).inc()
            raise
        finally:
            elapsed = time.perf_counter() - start
            self.request_counter.labels(
                method=method, path=path, status=str(status_code)
            ).inc()
            self.latency_histogram.labels(method=method, path=path).observe(elapsed)
