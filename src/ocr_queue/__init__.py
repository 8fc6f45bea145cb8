"""
OCR queue domain package.

This package contains:

- the ``ocr_jobs`` / ``ocr_documents`` tables and the SQL that drives them
- the OCR provider abstraction and built-in providers
- the bundle builder for multi-image chat messages
- the queue engine, the per-document worker and the long-running daemon
- a thin job API and its operator CLI
"""

from .api import JobApi, OcrResultNotFoundError
from .provider import ExtractionResult, OcrProvider, OcrProviderError, OcrService
from .queue import JobNotFoundError, OcrQueue
from .worker import DocumentProcessor

__all__ = [
    "DocumentProcessor",
    "ExtractionResult",
    "JobApi",
    "JobNotFoundError",
    "OcrProvider",
    "OcrProviderError",
    "OcrQueue",
    "OcrResultNotFoundError",
    "OcrService",
]
