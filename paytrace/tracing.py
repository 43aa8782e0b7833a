"""Tracing configuration helpers for paytrace services."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("paytrace.tracing")

_TRACING_CONFIGURED = False


def _build_provider(service_name: str) -> TracerProvider:
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def configure_tracing(service_name: str = "paytrace") -> TracerProvider:
    """Configure the OpenTelemetry tracer provider (idempotent)."""

    global _TRACING_CONFIGURED

    if _TRACING_CONFIGURED:
        provider = trace.get_tracer_provider()
        assert isinstance(provider, TracerProvider)
        return provider

    provider = _build_provider(service_name)
    trace.set_tracer_provider(provider)
    RequestsInstrumentor().instrument(tracer_provider=provider)
    logger.info("tracing_initialized", extra={"service_name": service_name})
    _TRACING_CONFIGURED = True
    return provider


def instrument_fastapi(app: FastAPI, service_name: str) -> None:
    """Attach FastAPI instrumentation while skipping noisy endpoints."""

    if getattr(app.state, "tracing_instrumented", False):
        return

    provider = configure_tracing(service_name)
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=provider,
        excluded_urls=r"/metrics,/health",
    )
    app.state.tracing_instrumented = True


def annotate_span(correlation_id: Optional[str], request_id: Optional[str]) -> None:
    """Copy the request ids onto the active span; no-op when nothing is recording."""

    span = trace.get_current_span()
    if not span.is_recording():
        return
    if correlation_id:
        span.set_attribute("paytrace.correlation_id", correlation_id)
    if request_id:
        span.set_attribute("paytrace.request_id", request_id)
