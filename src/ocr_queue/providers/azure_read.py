"""
Azure Computer Vision Read provider.

The Read API is asynchronous: the file is POSTed to ``read/analyze``, the
response carries an ``Operation-Location`` URL, and that URL is polled until
the operation reaches a terminal status.
"""

from __future__ import annotations

import time

import requests
import structlog

from common.config import Settings
from common.utils import retry
from ..provider import (
    ExtractionResult,
    OcrProvider,
    OcrProviderError,
    guess_mime_type,
    register_provider,
)

log = structlog.get_logger(__name__)


@register_provider("azure", "azure-read")
class AzureReadProvider(OcrProvider):
    name = "azure-read"

    def __init__(self, settings: Settings, session: requests.Session | None = None):
        super().__init__(settings)
        self._session = session or requests.Session()

    def supports(self, mime_type: str | None, file_name: str | None = None) -> bool:
        mime_type = guess_mime_type(mime_type, file_name)
        if not mime_type:
            return False
        return (
            mime_type.startswith("image/")
            or mime_type == "application/pdf"
            or mime_type == "application/octet-stream"
        )

    @retry(retryable_exceptions=(requests.exceptions.RequestException,))
    def _post(self, *args, **kwargs) -> requests.Response:
        """A retriable version of session.post."""
        return self._session.post(*args, **kwargs)

    @retry(retryable_exceptions=(requests.exceptions.RequestException,))
    def _get(self, *args, **kwargs) -> requests.Response:
        """A retriable version of session.get."""
        return self._session.get(*args, **kwargs)

    def extract(
        self,
        content: bytes,
        mime_type: str | None,
        file_name: str | None,
        language: str | None,
    ) -> ExtractionResult:
        endpoint = self.settings.OCR_AZURE_ENDPOINT
        key = self.settings.OCR_AZURE_KEY
        if not endpoint or not key:
            raise OcrProviderError("Azure OCR credentials are not configured")

        language = language or "unk"
        content_type = guess_mime_type(mime_type, file_name) or "application/octet-stream"
        analyze_url = f"{endpoint}/vision/{self.settings.OCR_AZURE_API_VERSION}/read/analyze"

        response = self._post(
            analyze_url,
            data=content,
            headers={"Ocp-Apim-Subscription-Key": key, "Content-Type": content_type},
            params={"language": language},
            timeout=self.settings.REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        operation_location = response.headers.get("Operation-Location")
        if not operation_location:
            raise OcrProviderError("Azure OCR did not return operation location")

        interval = self.settings.OCR_AZURE_POLL_INTERVAL_MS / 1000.0
        for poll in range(1, self.settings.OCR_AZURE_MAX_POLLS + 1):
            poll_response = self._get(
                operation_location,
                headers={"Ocp-Apim-Subscription-Key": key},
                timeout=self.settings.REQUEST_TIMEOUT,
            )
            poll_response.raise_for_status()
            payload = poll_response.json()
            status = (payload or {}).get("status")
            if status == "succeeded":
                return ExtractionResult(
                    text=_collect_lines(payload),
                    raw_result=payload,
                    provider=self.name,
                    language=language,
                )
            if status == "failed":
                raise OcrProviderError("Azure OCR failed to process document")
            log.debug("Azure OCR still running", status=status, poll=poll)
            time.sleep(interval)

        raise OcrProviderError("Azure OCR timeout")


def _collect_lines(payload: dict) -> str:
    analyze_result = payload.get("analyzeResult") or {}
    lines = []
    for page in analyze_result.get("readResults") or []:
        for line in page.get("lines") or []:
            text = line.get("text")
            if text:
                lines.append(text)
    return "\n".join(lines)
