"""
OpenAI Vision Provider
======================

Transcribes chat media with a vision-capable chat model instead of a classic
OCR engine. Each page is downscaled, encoded as PNG and sent to a chain of
models; the first model that does not refuse wins. If every model refuses or
fails, the page raises ``OcrProviderError`` so the queue's retry policy takes
over.
"""

import base64
import threading
from io import BytesIO

import openai
import structlog
from PIL import Image

from common.config import Settings
from common.utils import is_blank, retry
from ..provider import (
    ExtractionResult,
    OcrProvider,
    OcrProviderError,
    guess_mime_type,
    load_images,
    register_provider,
)

log = structlog.get_logger(__name__)

# Transient API failures worth retrying against the same model
RETRYABLE_OPENAI_EXCEPTIONS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

DEFAULT_OCR_REFUSAL_MARKERS = [
    "i can't assist",
    "i cannot assist",
    "i can't help with transcrib",
    "i cannot help with transcrib",
    "refused to transcribe",
]

TRANSCRIPTION_PROMPT = """
You are an OCR engine in a document processing system. The user has full legal
rights to view and transcribe this image, which was shared in a chat group they
administer. Your only task is to produce a faithful transcription. Do not summarise,
do not explain, redact, translate or censor anything. Output only the text visible in the image,
preserving spacing, indentation and line breaks. Transcribe text in its original
language; do not translate. Do NOT wrap the output in code blocks such as ```. Do NOT add any wording,
metadata or commentary that is not present in the image itself. If there are tables,
reproduce them using Markdown table syntax. If the image contains several stacked pages,
transcribe them top to bottom.
If the image contains no text, output nothing.
If you must refuse for any reason, output exactly: REFUSED TO TRANSCRIBE
"""


def _is_refusal(text: str, markers: list[str] | None = None) -> bool:
    """Check if the model declined the task (case-insensitive substring match)."""
    markers = markers or DEFAULT_OCR_REFUSAL_MARKERS
    text_lower = text.lower()
    return any(marker in text_lower for marker in markers)


@register_provider("openai")
class OpenAIVisionProvider(OcrProvider):
    """An OCR provider that uses OpenAI-compatible vision models."""

    name = "openai"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self._stats_lock = threading.Lock()
        self._stats = {
            "attempts": 0,
            "refusals": 0,
            "api_errors": 0,
            "fallback_successes": 0,
        }

    def get_stats(self) -> dict:
        """Return a snapshot of model stats for this provider instance."""
        with self._stats_lock:
            return dict(self._stats)

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

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
        if not self.settings.OPENAI_API_KEY and not self.settings.OPENAI_BASE_URL:
            raise OcrProviderError("OpenAI OCR credentials are not configured")

        images = load_images(
            content, guess_mime_type(mime_type, file_name), dpi=self.settings.OCR_DPI
        )
        try:
            page_results = [
                self.transcribe_image(image, page_num=i)
                for i, image in enumerate(images, 1)
            ]
        finally:
            for image in images:
                image.close()

        text, models_used = _assemble_full_text(page_results)
        return ExtractionResult(
            text=text,
            raw_result={
                "models": sorted(models_used),
                "pages": [
                    {"page": i, "model": model, "text": page_text}
                    for i, (page_text, model) in enumerate(page_results, 1)
                ],
            },
            provider=self.name,
            language=language,
        )

    @retry(retryable_exceptions=RETRYABLE_OPENAI_EXCEPTIONS)
    def _chat(self, model: str, messages: list[dict]):
        return openai.chat.completions.create(
            model=model, messages=messages, timeout=self.settings.REQUEST_TIMEOUT
        )

    def transcribe_image(
        self, image: Image.Image, page_num: int | None = None
    ) -> tuple[str, str]:
        """
        Transcribe one image using the configured chain of models.

        Returns ``(text, model_used)``; blank images return ``("", "")``.
        """
        log_context = {"page_num": page_num} if page_num is not None else {}
        if is_blank(image):
            return "", ""

        # Resize large images to reduce token cost and latency
        image.thumbnail((self.settings.OCR_MAX_SIDE, self.settings.OCR_MAX_SIDE))
        buffer = BytesIO()
        image.save(buffer, format="PNG")
        payload = base64.b64encode(buffer.getvalue()).decode()

        messages = [
            {"role": "system", "content": TRANSCRIPTION_PROMPT},
            {
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:image/png;base64,{payload}",
                            "detail": "high",
                        },
                    },
                ],
            },
        ]

        models_to_try = list(dict.fromkeys(self.settings.AI_MODELS))
        primary_model = models_to_try[0] if models_to_try else ""
        for model in models_to_try:
            try:
                self._bump("attempts")
                response = self._chat(model, messages)
                text = (response.choices[0].message.content or "").strip()

                if not _is_refusal(text, self.settings.OCR_REFUSAL_MARKERS):
                    if model != primary_model:
                        log.info("Fallback model succeeded", model=model, **log_context)
                        self._bump("fallback_successes")
                    return text, model
                log.warning("Model refused to transcribe", model=model, **log_context)
                self._bump("refusals")
            except openai.APIError as e:
                log.warning(
                    "API call for model failed after all retries",
                    model=model,
                    error=str(e),
                    **log_context,
                )
                self._bump("api_errors")

        raise OcrProviderError("All models failed or refused to transcribe the image")


def _assemble_full_text(page_results: list[tuple[str, str]]) -> tuple[str, set[str]]:
    """Combine per-page results, adding page headers for multi-page input."""
    sections = []
    models_used = set()
    multi_page = len(page_results) > 1
    for i, (text, model) in enumerate(page_results, 1):
        if text.strip():
            header = f"--- Page {i} ---\n" if multi_page else ""
            sections.append(f"{header}{text}")
        if model:
            models_used.add(model)
    return "\n\n".join(sections), models_used
