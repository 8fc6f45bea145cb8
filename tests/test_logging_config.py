import io
import json
import logging
import os

import pytest
import structlog

from common.config import Settings
from common.logging_config import configure_logging


@pytest.fixture
def root_logger():
    """The root logger, emptied for the test and restored afterwards."""
    logger = logging.getLogger()
    saved_handlers = list(logger.handlers)
    saved_level = logger.level
    logger.handlers[:] = []
    yield logger
    logger.handlers[:] = saved_handlers
    logger.setLevel(saved_level)


def _settings(mocker, **env) -> Settings:
    mocker.patch.dict(os.environ, {"DATABASE_URL": "sqlite://", **env}, clear=True)
    return Settings()


@pytest.mark.parametrize(
    "log_format, log_level, renderer, level",
    [
        ("console", "debug", structlog.dev.ConsoleRenderer, logging.DEBUG),
        ("json", "warning", structlog.processors.JSONRenderer, logging.WARNING),
    ],
)
def test_configure_logging_formats(mocker, root_logger, log_format, log_level, renderer, level):
    configure_logging(_settings(mocker, LOG_FORMAT=log_format, LOG_LEVEL=log_level))

    assert root_logger.getEffectiveLevel() == level
    [handler] = root_logger.handlers
    assert isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
    assert any(isinstance(p, renderer) for p in handler.formatter.processors)


def test_third_party_loggers_are_quieted(mocker, root_logger):
    configure_logging(_settings(mocker, LOG_LEVEL="debug"))

    for name in ("urllib3", "sqlalchemy.engine", "PIL", "pytesseract", "openai"):
        assert logging.getLogger(name).level == logging.WARNING


def test_configure_logging_stream_and_reconfigure(mocker, root_logger):
    settings = _settings(mocker, LOG_FORMAT="json", LOG_LEVEL="info")
    stream = io.StringIO()

    configure_logging(settings)
    configure_logging(settings, stream=stream)

    [handler] = root_logger.handlers
    assert handler.stream is stream

    logging.getLogger("ocr_queue.test").info("claimed batch")
    assert json.loads(stream.getvalue().splitlines()[-1])["event"] == "claimed batch"
