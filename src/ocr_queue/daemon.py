"""
OCR Queue Daemon
================

Long-running entrypoint: polls the ``ocr_documents`` table for queued work,
OCRs claimed documents on a bounded thread pool, and keeps job counters and
progress events up to date. Runs in the foreground until Ctrl-C.
"""

from __future__ import annotations

import structlog

from common.config import Settings, setup_libraries
from common.logging_config import configure_logging
from .db import create_engine_from_settings, init_schema, make_session_factory
from .queue import OcrQueue


def main() -> None:
    """Main loop for the OCR queue daemon."""
    log = structlog.get_logger(__name__)

    try:
        settings = Settings()
        configure_logging(settings)
        setup_libraries(settings)
    except ValueError as e:
        log.error("Configuration error", error=e)
        return

    if not settings.OCR_ENABLED:
        log.info("OCR disabled; exiting")
        return

    engine = create_engine_from_settings(settings)
    queue = None
    try:
        init_schema(engine)
        try:
            queue = OcrQueue.from_settings(settings, make_session_factory(engine))
        except ValueError as e:
            log.error("Configuration error", error=e)
            return

        log.info(
            "Starting OCR queue daemon",
            provider=settings.OCR_PROVIDER,
            fallback_provider=settings.OCR_FALLBACK_PROVIDER,
            concurrency=settings.OCR_CONCURRENCY,
            max_attempts=settings.OCR_MAX_ATTEMPTS,
            retry_backoff_seconds=settings.OCR_RETRY_BACKOFF_SECONDS,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_file_size_mb=settings.OCR_MAX_FILE_SIZE_MB,
        )
        queue.run_forever()
    finally:
        if queue is not None:
            queue.close()
        engine.dispose()


if __name__ == "__main__":
    main()
