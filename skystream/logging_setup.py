import logging
from typing import Optional

import structlog


def configure_logging(level: str = "INFO", log_format: str = "json") -> None:
    logging_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]

    if log_format == "console":
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]
    else:
        processors = shared_processors + [
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=logging_level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(logging_level, logging.WARNING))


def bind_stage(stage: str, consumer: Optional[str] = None) -> None:
    """Attach the stage (and worker consumer name) to every log line of the current task."""
    if consumer:
        structlog.contextvars.bind_contextvars(stage=stage, consumer=consumer)
    else:
        structlog.contextvars.bind_contextvars(stage=stage)


def get_logger(name: str = None):
    return structlog.get_logger(name)
