"""
OpenTelemetry tracing setup.

Spans cover the queue's unit operations (enqueue, claim, execute, settle,
dead-lettering). ``job_span`` stamps the standard job attributes on them
so traces can be filtered by job, type, queue and attempt.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any
from uuid import UUID

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from jobqueue import __version__
from jobqueue.config import Settings, get_settings

if TYPE_CHECKING:
    from jobqueue.db.models import Job

_tracer: Tracer | None = None


def setup_tracing(settings: Settings | None = None, component: str | None = None) -> Tracer:
    """
    Set up OpenTelemetry tracing for one process.

    Spans are exported over OTLP only when an endpoint is configured, and
    to the console when ``otel_console_export`` is set.

    Args:
        settings: Settings to read the exporter config from.
        component: Process role (api, worker, reaper), recorded on the resource.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = settings or get_settings()

    attributes = {
        "service.name": settings.otel_service_name,
        "service.version": __version__,
        "jobqueue.queue": settings.queue_name,
    }
    if component:
        attributes["jobqueue.component"] = component

    provider = TracerProvider(resource=Resource.create(attributes))

    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))

    if settings.otel_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer("jobqueue", __version__)

    return _tracer


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Before setup_tracing() runs this is the global provider's tracer,
    which is a no-op unless something else configured one.
    """
    if _tracer is None:
        return trace.get_tracer("jobqueue", __version__)
    return _tracer


def _attribute_value(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


@contextmanager
def job_span(name: str, job: "Job | None" = None, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for a queue operation.

    Args:
        name: Span name.
        job: Job whose id, type, queue and attempt count are recorded.
        **attributes: Extra attributes; None values are skipped.

    Yields:
        The active span, for attributes only known at the end.
    """
    if job is not None:
        attributes = {
            "job_id": job.id,
            "job_type": job.type,
            "queue": job.queue,
            "attempt": job.attempt,
            **attributes,
        }

    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, _attribute_value(value))
        yield span


def instrument_fastapi(app: Any) -> None:
    """Instrument a FastAPI application."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Instrument a SQLAlchemy engine.

    Args:
        engine: The sync engine behind an AsyncEngine.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)
