"""OpenTelemetry initialization and span helpers for sync runs."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

TRACER_NAME = "calsync"
SYNC_RUN_SPAN_NAME = "calsync.sync_run"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "calsync") -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, installs a TracerProvider with an
    OTLP gRPC exporter on the first call; otherwise the no-op tracer is used.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(service_name)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def tag_sync_span(span: trace.Span, *, tenant_id: str, state: str, **counts: int) -> None:
    """Set tenant, final state and per-run counts on a sync-run span."""
    span.set_attribute("calsync.tenant_id", tenant_id)
    span.set_attribute("calsync.state", state)
    for name, value in counts.items():
        span.set_attribute(f"calsync.{name}", value)
