"""
Distributed Tracing with OpenTelemetry.

HTTP requests and ledger queries are instrumented automatically; each
reconciliation run opens its own span through trace_operation. Disabled
unless TRACING_ENABLED is set, in which case spans go to the OTLP collector.
"""

import asyncio
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from entitlements.config import settings

TRACER_NAME = "entitlements.reconciliation"

# Health probes and scrapes would otherwise dominate the trace volume
EXCLUDED_URLS = "/metrics,/v1/status"


def setup_tracing() -> None:
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
                "android.package_name": settings.ANDROID_PACKAGE_NAME or "unset",
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Instrument the FastAPI app once, at import of the main module."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument the async ledger engine (through its sync core)."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def _attribute_value(value: Any) -> str | int | float | bool:
    if isinstance(value, (str, int, float, bool)):
        return value
    # Enums carry their wire value
    return str(getattr(value, "value", value))


class trace_operation:
    """
    Span around a block, made current for its duration.

    Usage:
        with trace_operation("entitlement_reconciliation", account_id=account_id) as span:
            span.set_attribute("verdict.source", "ledger")

    A run superseded by a newer one is cancelled; that is recorded as a
    span attribute rather than an error.
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = {k: _attribute_value(v) for k, v in attributes.items() if v is not None}
        self.span: Span | None = None
        self._activation: Any = None

    def __enter__(self) -> Span:
        tracer = trace.get_tracer(TRACER_NAME)
        self.span = tracer.start_span(self.operation_name, attributes=self.attributes)
        self._activation = trace.use_span(self.span, end_on_exit=False)
        self._activation.__enter__()
        return self.span

    def __exit__(
        self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object
    ) -> None:
        if self._activation is not None:
            self._activation.__exit__(None, None, None)
        if self.span is None:
            return
        if isinstance(exc_val, asyncio.CancelledError):
            self.span.set_attribute("operation.cancelled", True)
        elif exc_val is not None:
            self.span.set_status(Status(StatusCode.ERROR, str(exc_val)))
            self.span.record_exception(exc_val)
        self.span.end()
