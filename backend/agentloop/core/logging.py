"""Structured logging configuration shared by the API process and the worker pool.

Configures structlog with:
- JSON output in production, ConsoleRenderer when debugging locally
- Stdlib bridge so uvicorn, SQLAlchemy and anthropic logs share the same format
- Correlation ID injection from the asgi-correlation-id context var
- A static ``service`` field so API and worker lines can be told apart
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from the request context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _service_name_processor(service: str):
    def add_service(logger, method, event_dict):
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def configure_structlog(log_level: str = "INFO", json_logs: bool = True, service: str = "agentloop") -> None:
    """Configure structlog and the stdlib root logger.

    Must run before the first ``structlog.get_logger()`` call is used, because
    ``cache_logger_on_first_use`` freezes the processor chain.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: True for JSON lines, False for the colored console renderer
        service: Value of the ``service`` field attached to every entry
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        _service_name_processor(service),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "anthropic": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
