"""
Structured logging setup using structlog.

Library modules log through ``logging.getLogger(__name__)`` and pass job
fields in ``extra``; job handlers get a structlog logger already bound to
the job they run. Both end up in the same renderer.
"""

import logging
import sys
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog
from opentelemetry import trace

from jobqueue.config import Settings, get_settings

if TYPE_CHECKING:
    from jobqueue.db.models import Job

JOB_LOGGER_NAME = "jobqueue.jobs"

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "aiosqlite")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the active span's trace and span ids."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def stringify_ids(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render UUID values (job, entry and lineage ids) as plain strings."""
    for key, value in event_dict.items():
        if isinstance(value, UUID):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(settings: Settings | None = None, component: str | None = None) -> None:
    """
    Configure structured logging for one process.

    Args:
        settings: Level and format (``json`` or ``console``).
        component: Process role (api, worker, reaper), added to every
            record of this process.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
        stringify_ids,
    ]

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if component:
        bind_context(component=component, queue=settings.queue_name)


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger, optionally with values bound up front."""
    return structlog.get_logger(name, **initial_values)


def get_job_logger(job: "Job", attempt: int) -> structlog.stdlib.BoundLogger:
    """
    Logger handed to a job handler.

    Args:
        job: The job being executed.
        attempt: 1-based number of the execution in progress.
    """
    return get_logger(
        JOB_LOGGER_NAME,
        job_id=str(job.id),
        job_type=job.type,
        queue=job.queue,
        attempt=attempt,
    )


def bind_context(**kwargs: Any) -> None:
    """Bind values to every later record in the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)
