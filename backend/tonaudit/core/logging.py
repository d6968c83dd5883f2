"""structlog setup for pipeline workers.

One JSON object per line in production, ConsoleRenderer locally. Records from
third-party libraries (SQLAlchemy, botocore, WeasyPrint) go through the same
formatter. Job context (job_id, queue) is bound by the worker through
structlog contextvars and merged into every line.
"""

import logging
import logging.config

import structlog

# Engine failures can carry whole compiler outputs in their message
MAX_VALUE_LENGTH = 4000

NOISY_LOGGERS = ("sqlalchemy.engine", "botocore", "boto3", "urllib3", "weasyprint", "fontTools")


def truncate_long_values(logger, method, event_dict):
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
            event_dict[key] = value[:MAX_VALUE_LENGTH] + f"... [{len(value) - MAX_VALUE_LENGTH} chars truncated]"
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True, service: str | None = None) -> None:
    """Configure structlog and route stdlib logging through it.

    Call once at worker start-up, before the first logger is used; structlog
    caches the processor chain on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines when True, ConsoleRenderer otherwise
        service: Optional service name stamped on every record
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        truncate_long_values,
    ]
    if service:
        shared_processors.append(_static_fields(service=service))

    if json_logs:
        # Tracebacks become a string field instead of multi-line output
        final_processors = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        final_processors = [structlog.dev.ConsoleRenderer()]

    logging.config.dictConfig(_stdlib_config(shared_processors, final_processors, log_level))

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _static_fields(**fields):
    def add_fields(logger, method, event_dict):
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_fields


def _stdlib_config(shared_processors: list, final_processors: list, log_level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final_processors],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in NOISY_LOGGERS},
    }
