"""Structured logging for the pipeline.

Every attempt of a request runs in its own task, and tasks copy the
current context. bind_request_context() is called at the start of each
attempt, so request_id, origin and attempt stay attached to every event
the attempt logs and never leak into a sibling request.

Usage:
    from relay.core.logging import configure_logging, get_logger

    configure_logging()
    logger = get_logger(__name__)
    logger.info("Request submitted", url="/me")
"""

import logging
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from relay.core.config import Settings, get_settings

SERVICE_NAME = "request-relay"

_configured = False


def bind_request_context(request_id: str, *, origin: str, attempt: int) -> None:
    """Replace the logging context with the attempt being run."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        origin=origin,
        attempt=attempt,
    )


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def service_info(service: str = SERVICE_NAME) -> Processor:
    """Processor stamping every event with the service name."""

    def add_service(
        logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def configure_logging(settings: Settings | None = None, *, force: bool = False) -> None:
    """Configure structlog and the stdlib root handler.

    Only the first call takes effect unless force is set.

    Args:
        settings: Source of relay_log_level and relay_log_format
        force: Reconfigure even if already configured
    """
    global _configured
    if _configured and not force:
        return

    settings = settings or get_settings()
    level = getattr(logging, settings.relay_log_level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        service_info(),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.relay_log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
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
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # httpx logs each request at INFO, duplicating the dispatch events
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger bound to name."""
    return structlog.get_logger(name)
