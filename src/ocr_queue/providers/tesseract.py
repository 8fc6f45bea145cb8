"""
Local Tesseract provider.

Runs the ``tesseract`` binary through pytesseract. PDFs are rasterised page
by page first.
"""

from __future__ import annotations

import pytesseract

from common.config import Settings
from ..provider import (
    ExtractionResult,
    OcrProvider,
    OcrProviderError,
    guess_mime_type,
    load_images,
    register_provider,
)

DEFAULT_LANGUAGE = "eng"


@register_provider("tesseract")
class TesseractProvider(OcrProvider):
    name = "tesseract"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        if settings.TESSERACT_CMD:
            pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD

    def supports(self, mime_type: str | None, file_name: str | None = None) -> bool:
        mime_type = guess_mime_type(mime_type, file_name)
        return bool(
            mime_type and (mime_type.startswith("image/") or mime_type == "application/pdf")
        )

    def extract(
        self,
        content: bytes,
        mime_type: str | None,
        file_name: str | None,
        language: str | None,
    ) -> ExtractionResult:
        language = language if language and language != "unk" else DEFAULT_LANGUAGE
        images = load_images(
            content, guess_mime_type(mime_type, file_name), dpi=self.settings.OCR_DPI
        )
        pages = []
        try:
            for image in images:
                try:
                    pages.append(
                        pytesseract.image_to_string(image.convert("RGB"), lang=language)
                    )
                except pytesseract.TesseractError as e:
                    raise OcrProviderError(f"Tesseract failed: {e}") from e
                except pytesseract.TesseractNotFoundError as e:
                    raise OcrProviderError("Tesseract binary not found") from e
        finally:
            for image in images:
                image.close()

        text = "\n\n".join(page.strip() for page in pages if page.strip())
        return ExtractionResult(
            text=text,
            raw_result={"pages": [{"page": i, "text": page} for i, page in enumerate(pages, 1)]},
            provider=self.name,
            language=language,
        )
