"""
Built-in OCR providers.

Importing this package registers every built-in provider; ``build_ocr_service``
turns the configured names into a ready ``OcrService``.
"""

from common.config import Settings
from ..provider import OcrService, create_provider
from .azure_read import AzureReadProvider
from .openai_vision import OpenAIVisionProvider
from .tesseract import TesseractProvider

__all__ = [
    "AzureReadProvider",
    "OpenAIVisionProvider",
    "TesseractProvider",
    "build_ocr_service",
]


def build_ocr_service(settings: Settings) -> OcrService:
    primary = create_provider(settings.OCR_PROVIDER, settings)
    fallback = None
    if settings.OCR_FALLBACK_PROVIDER:
        fallback = create_provider(settings.OCR_FALLBACK_PROVIDER, settings)
    return OcrService(primary, fallback)
