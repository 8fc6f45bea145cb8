import logging
import sys
from typing import TextIO

import structlog

from .config import Settings


def configure_logging(settings: Settings, stream: TextIO | None = None):
    """
    Route structlog and stdlib logging through one handler.

    Records render as colored console lines or as JSON objects
    (``LOG_FORMAT``). The daemon logs to stdout; the admin CLI passes
    ``sys.stderr`` so its JSON output stays clean. Calling this again
    replaces the handler installed by the previous call.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.LOG_FORMAT == "json":
        renderer = structlog.processors.JSONRenderer()
        extra = [structlog.processors.dict_tracebacks]
    else:  # console
        renderer = structlog.dev.ConsoleRenderer(colors=True)
        extra = []

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *extra,
            renderer,
        ],
    )

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure the root logger
    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if getattr(existing, "_ocr_queue_handler", False):
            root_logger.removeHandler(existing)
    handler = logging.StreamHandler(stream or sys.stdout)
    handler._ocr_queue_handler = True
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.LOG_LEVEL)

    # Suppress noisy logs from third-party libraries
    for logger_name in ("urllib3", "sqlalchemy.engine", "PIL", "pytesseract"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)
    for logger_name in ("openai", "openai._base_client"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(logging.WARNING)
        logger.propagate = True
