"""
Configuration module for the OCR queue.

This module centralizes the loading and validation of all configuration
parameters from environment variables. It provides a single `Settings`
class that acts as a container for all configurable values, ensuring
that they are defined in one place and can be passed explicitly to every
component that needs them (the queue engine, OCR providers, sinks).
"""

import os

import openai
from PIL import Image

DEFAULT_AI_MODELS = ["gpt-5-mini", "o4-mini"]


class Settings:
    """
    A container for all configuration settings, loaded from environment variables.

    This class centralizes configuration, providing default values for optional
    settings and raising errors for missing required settings.
    """

    # --- Storage ---
    DATABASE_URL: str
    MEDIA_ROOT: str

    # --- Queue ---
    OCR_ENABLED: bool
    OCR_PROVIDER: str
    OCR_FALLBACK_PROVIDER: str | None
    OCR_CONCURRENCY: int
    OCR_MAX_ATTEMPTS: int
    OCR_RETRY_BACKOFF_SECONDS: int
    OCR_POLL_INTERVAL_MS: int
    OCR_MAX_FILE_SIZE_MB: int
    OCR_LANGUAGE: str

    # --- Azure Read ---
    OCR_AZURE_ENDPOINT: str
    OCR_AZURE_KEY: str
    OCR_AZURE_API_VERSION: str
    OCR_AZURE_POLL_INTERVAL_MS: int
    OCR_AZURE_MAX_POLLS: int

    # --- Tesseract / rasterising ---
    TESSERACT_CMD: str | None
    OCR_DPI: int

    # --- OpenAI vision ---
    OPENAI_API_KEY: str | None
    OPENAI_BASE_URL: str | None
    AI_MODELS: list[str]
    OCR_MAX_SIDE: int
    REQUEST_TIMEOUT: int
    OCR_REFUSAL_MARKERS: list[str] | None

    # --- In-call retries ---
    MAX_RETRIES: int
    MAX_RETRY_BACKOFF_SECONDS: int

    # --- Progress events ---
    PROGRESS_SINK: str
    PROGRESS_WEBHOOK_URL: str | None
    PROGRESS_WEBHOOK_TIMEOUT: int

    # --- Logging ---
    LOG_LEVEL: str
    LOG_FORMAT: str

    def __init__(self):
        """
        Loads settings from environment variables and performs validation.
        """
        # --- Storage ---
        self.DATABASE_URL = self._get_required_env("DATABASE_URL")
        self.MEDIA_ROOT = os.getenv("MEDIA_ROOT", ".")

        # --- Queue ---
        self.OCR_ENABLED = os.getenv("OCR_ENABLED", "true").strip().lower() != "false"
        self.OCR_PROVIDER = os.getenv("OCR_PROVIDER", "azure").strip().lower()
        fallback = os.getenv("OCR_FALLBACK_PROVIDER", "").strip().lower()
        self.OCR_FALLBACK_PROVIDER = fallback or None
        self.OCR_CONCURRENCY = self._get_int("OCR_CONCURRENCY", 2, minimum=1)
        self.OCR_MAX_ATTEMPTS = self._get_int("OCR_MAX_ATTEMPTS", 3, minimum=1)
        self.OCR_RETRY_BACKOFF_SECONDS = self._get_int(
            "OCR_RETRY_BACKOFF_SECONDS", 60, minimum=0
        )
        self.OCR_POLL_INTERVAL_MS = self._get_int("OCR_POLL_INTERVAL_MS", 5000, minimum=1)
        self.OCR_MAX_FILE_SIZE_MB = self._get_int("OCR_MAX_FILE_SIZE_MB", 25, minimum=1)
        self.OCR_LANGUAGE = os.getenv("OCR_LANGUAGE", "unk").strip() or "unk"

        # --- Azure Read ---
        self.OCR_AZURE_ENDPOINT = os.getenv("OCR_AZURE_ENDPOINT", "").rstrip("/")
        self.OCR_AZURE_KEY = os.getenv("OCR_AZURE_KEY", "")
        self.OCR_AZURE_API_VERSION = os.getenv("OCR_AZURE_API_VERSION", "v3.2")
        self.OCR_AZURE_POLL_INTERVAL_MS = self._get_int(
            "OCR_AZURE_POLL_INTERVAL_MS", 1000, minimum=0
        )
        self.OCR_AZURE_MAX_POLLS = self._get_int("OCR_AZURE_MAX_POLLS", 120, minimum=1)

        # --- Tesseract / rasterising ---
        self.TESSERACT_CMD = os.getenv("TESSERACT_CMD") or None
        self.OCR_DPI = self._get_int("OCR_DPI", 300, minimum=1)

        # --- OpenAI vision ---
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or None
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or None
        self.AI_MODELS = self._get_list("AI_MODELS") or list(DEFAULT_AI_MODELS)
        self.OCR_MAX_SIDE = self._get_int("OCR_MAX_SIDE", 1600, minimum=1)
        self.REQUEST_TIMEOUT = self._get_int("REQUEST_TIMEOUT", 180, minimum=1)
        self.OCR_REFUSAL_MARKERS = self._get_list("OCR_REFUSAL_MARKERS") or None

        # --- In-call retries ---
        self.MAX_RETRIES = self._get_int("MAX_RETRIES", 3, minimum=1)
        self.MAX_RETRY_BACKOFF_SECONDS = self._get_int(
            "MAX_RETRY_BACKOFF_SECONDS", 30, minimum=1
        )

        # --- Progress events ---
        self.PROGRESS_SINK = os.getenv("PROGRESS_SINK", "log").strip().lower()
        if self.PROGRESS_SINK not in ("log", "webhook"):
            raise ValueError("PROGRESS_SINK must be 'log' or 'webhook'")
        self.PROGRESS_WEBHOOK_URL = os.getenv("PROGRESS_WEBHOOK_URL") or None
        if self.PROGRESS_SINK == "webhook" and not self.PROGRESS_WEBHOOK_URL:
            raise ValueError("PROGRESS_WEBHOOK_URL is required when PROGRESS_SINK is 'webhook'")
        self.PROGRESS_WEBHOOK_TIMEOUT = self._get_int(
            "PROGRESS_WEBHOOK_TIMEOUT", 5, minimum=1
        )

        # --- Logging ---
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FORMAT = os.getenv("LOG_FORMAT", "console").lower()
        if self.LOG_FORMAT not in ("console", "json"):
            raise ValueError("LOG_FORMAT must be 'console' or 'json'")

    @property
    def poll_interval_seconds(self) -> float:
        return self.OCR_POLL_INTERVAL_MS / 1000.0

    @property
    def max_file_size_bytes(self) -> int:
        return self.OCR_MAX_FILE_SIZE_MB * 1024 * 1024

    def _get_required_env(self, var_name: str) -> str:
        """
        Gets a required environment variable, raising an error if it's not set.
        """
        value = os.getenv(var_name)
        if value is None:
            raise ValueError(f"Required environment variable '{var_name}' is not set.")
        return value

    def _get_int(self, var_name: str, default: int, *, minimum: int) -> int:
        raw = os.getenv(var_name)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{var_name} must be an integer, got {raw!r}") from None
        if value < minimum:
            raise ValueError(f"{var_name} must be >= {minimum}, got {value}")
        return value

    def _get_list(self, var_name: str) -> list[str]:
        raw = os.getenv(var_name, "")
        return [item.strip() for item in raw.split(",") if item.strip()]


def setup_libraries(settings: Settings) -> None:
    """
    Configures third-party libraries based on the application settings.
    """
    # Chat attachments can be very large scans
    Image.MAX_IMAGE_PIXELS = None

    if settings.OPENAI_API_KEY:
        openai.api_key = settings.OPENAI_API_KEY
    if settings.OPENAI_BASE_URL:
        openai.base_url = settings.OPENAI_BASE_URL
