"""
OCR Provider Abstraction
========================

Every text-extraction backend implements the same small interface: it says
which inputs it ``supports`` and ``extract``\\ s text from raw bytes. Backends
are registered under one or more names so configuration can pick them by
string (``OCR_PROVIDER=azure``) without the queue knowing any concrete class.

``OcrService`` wraps a primary provider and an optional fallback. The queue
only ever talks to an ``OcrService``.
"""

from __future__ import annotations

import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from io import BytesIO
from typing import Callable

import structlog
from PIL import Image, ImageSequence, UnidentifiedImageError
from pdf2image import convert_from_bytes

from common.config import Settings

log = structlog.get_logger(__name__)


class OcrProviderError(RuntimeError):
    """Raised by a provider when text could not be extracted."""


@dataclass
class ExtractionResult:
    text: str
    raw_result: dict = field(default_factory=dict)
    provider: str = ""
    language: str | None = None


def guess_mime_type(mime_type: str | None, file_name: str | None) -> str | None:
    """Return ``mime_type`` or, when missing, a guess from the file name."""
    if mime_type:
        return mime_type.lower()
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        return guessed
    return None


def load_images(content: bytes, mime_type: str | None, *, dpi: int) -> list[Image.Image]:
    """
    Convert raw bytes into a list of PIL Images.

    - PDFs are rasterised into one image per page.
    - Image formats (PNG/JPEG/WEBP/...) are loaded via Pillow.
    - Multi-frame images (e.g. TIFF) are expanded into one image per frame.

    The returned images are fully loaded into memory.
    """
    if mime_type and "pdf" in mime_type:
        return convert_from_bytes(content, dpi=dpi)
    try:
        img = Image.open(BytesIO(content))
        img.load()
        if getattr(img, "n_frames", 1) > 1:
            frames = [frame.copy() for frame in ImageSequence.Iterator(img)]
            img.close()
            return frames
        single = img.copy()
        img.close()
        return [single]
    except UnidentifiedImageError as e:
        raise OcrProviderError(f"Unable to open image: {e}") from e


class OcrProvider(ABC):
    """Abstract base class for OCR providers."""

    name: str = ""

    def __init__(self, settings: Settings):
        self.settings = settings

    @abstractmethod
    def supports(self, mime_type: str | None, file_name: str | None = None) -> bool:
        """Return True if this provider can read the given input."""
        raise NotImplementedError

    @abstractmethod
    def extract(
        self,
        content: bytes,
        mime_type: str | None,
        file_name: str | None,
        language: str | None,
    ) -> ExtractionResult:
        """
        Extract text from ``content``.

        Raises ``OcrProviderError`` (or a transport error) on failure.
        """
        raise NotImplementedError


_REGISTRY: dict[str, type[OcrProvider]] = {}


def register_provider(*names: str) -> Callable[[type[OcrProvider]], type[OcrProvider]]:
    """Class decorator registering a provider under one or more names."""

    def decorator(cls: type[OcrProvider]) -> type[OcrProvider]:
        for name in names:
            _REGISTRY[name.lower()] = cls
        return cls

    return decorator


def registered_providers() -> list[str]:
    return sorted(_REGISTRY)


def create_provider(name: str, settings: Settings) -> OcrProvider:
    try:
        cls = _REGISTRY[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown OCR provider {name!r}; expected one of {registered_providers()}"
        ) from None
    return cls(settings)


class OcrService:
    """Primary provider with an optional fallback."""

    def __init__(self, primary: OcrProvider, fallback: OcrProvider | None = None):
        self.primary = primary
        self.fallback = fallback

    def extract(
        self,
        content: bytes,
        mime_type: str | None,
        file_name: str | None,
        language: str | None,
    ) -> ExtractionResult:
        if self.primary.supports(mime_type, file_name):
            try:
                return self.primary.extract(content, mime_type, file_name, language)
            except Exception as e:
                if self.fallback is None:
                    raise
                log.warning(
                    "Primary OCR provider failed; trying fallback",
                    provider=self.primary.name,
                    fallback=self.fallback.name,
                    error=str(e),
                )

        if self.fallback is not None and self.fallback.supports(mime_type, file_name):
            return self.fallback.extract(content, mime_type, file_name, language)

        raise OcrProviderError("No OCR provider available for this file type")
