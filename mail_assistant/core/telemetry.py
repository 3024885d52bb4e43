"""OpenTelemetry tracing setup."""

from __future__ import annotations

import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.semconv.resource import ResourceAttributes
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from mail_assistant.core.config import settings

logger = logging.getLogger(__name__)


def parse_otlp_headers(value: str) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` exporter headers; malformed items are ignored."""
    headers: dict[str, str] = {}
    if not value:
        return headers
    for item in value.split(","):
        key, sep, val = item.strip().partition("=")
        if not sep or not key.strip():
            continue
        headers[key.strip()] = val.strip()
    return headers


def configure_telemetry(app, engine) -> bool:
    """Initialize tracing for FastAPI, SQLAlchemy and outbound Gmail calls.

    Returns True when tracing was enabled.
    """
    if not settings.OTEL_ENABLED or not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    try:
        resource = Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: settings.OTEL_SERVICE_NAME or "mail-assistant-api",
                ResourceAttributes.DEPLOYMENT_ENVIRONMENT: settings.ENV,
            }
        )
        sampler = ParentBased(TraceIdRatioBased(settings.OTEL_SAMPLE_RATE))
        provider = TracerProvider(resource=resource, sampler=sampler)
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(
                    endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
                    headers=parse_otlp_headers(settings.OTEL_EXPORTER_OTLP_HEADERS),
                )
            )
        )
        trace.set_tracer_provider(provider)

        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
        SQLAlchemyInstrumentor().instrument(engine=engine)
        HTTPXClientInstrumentor().instrument()
        logger.info("OpenTelemetry tracing enabled")
    except Exception:
        logger.exception("Failed to initialize OpenTelemetry tracing")
        return False
    return True
