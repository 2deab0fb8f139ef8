"""
Logging and tracing setup for slide-kernel.

Every record goes to stderr, stamped with the active span when a cell
execution or server start is being traced.
"""

import os
import sys
import logging

import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource


def add_otel_trace_info(logger, method_name, event_dict):
    """Tag the record with the ids of the span it was logged under, if any."""
    span = trace.get_current_span()
    if span is trace.INVALID_SPAN:
        return event_dict
    ctx = span.get_span_context()
    event_dict["trace_id"] = format(ctx.trace_id, "032x")
    event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def configure_logging(level="INFO"):
    """
    Set up structlog at `level`. Stdout is left to the CLI.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, spans are also shipped over OTLP.
    """
    otel_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otel_endpoint:
        resource = Resource(attributes={"service.name": "slide-kernel"})
        provider = TracerProvider(resource=resource)
        processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint))
        provider.add_span_processor(processor)
        trace.set_tracer_provider(provider)
        print(f"[OTEL] Tracing enabled. Exporting to {otel_endpoint}", file=sys.stderr)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_otel_trace_info,
        structlog.processors.format_exc_info,
    ]
    # Interactive terminals get the console renderer, pipes get one JSON object per line
    renderer = structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer()
    processors.append(renderer)

    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (httpx, websockets) to stderr at the same level
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)

    return structlog.get_logger()


def get_logger(name=None):
    return structlog.get_logger(name)


def get_tracer(name=None):
    """Tracer for spans around server starts and cell executions."""
    return trace.get_tracer(name if name else __name__)
