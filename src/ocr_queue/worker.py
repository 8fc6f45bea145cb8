"""
Document Processing Worker
==========================

This module defines the `DocumentProcessor` class, which runs one claimed OCR
document to an outcome. It brings together the repository, the bundle
builder and the OCR service.

A processor checks the reasons a document should not be OCR'd at all
(already covered by a bundle sibling, group no longer monitored, file too
large), assembles the input bytes, calls the OCR service, and records the
result. Any exception on the way is converted into the document's retry
path, so a single bad document never takes down its batch.

The processor does not touch job counters; it returns the ids of the jobs
whose documents it changed and the queue refreshes those.
"""

from __future__ import annotations

import datetime as dt
from typing import Callable

import structlog

from common.config import Settings
from common.utils import utcnow
from .bundle import Bundle, BundleBuilder
from .models import DocumentStatus
from .provider import OcrService
from .repository import DocumentWithMedia, OcrRepository

log = structlog.get_logger(__name__)

SKIP_BUNDLED = "Bundled by another OCR result"
SKIP_UNMONITORED = "Group no longer monitored"
SKIP_OVERSIZED = "File exceeds OCR size limit"
ERROR_MISSING_PATH = "Missing file path"
ERROR_FILE_NOT_FOUND = "File not found on disk"


class DocumentProcessor:
    """
    Orchestrates the processing of a single claimed OCR document.
    """

    def __init__(
        self,
        document_id: str,
        repository: OcrRepository,
        bundle_builder: BundleBuilder,
        ocr_service: OcrService,
        settings: Settings,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.document_id = document_id
        self.repository = repository
        self.bundle_builder = bundle_builder
        self.ocr_service = ocr_service
        self.settings = settings
        self.clock = clock

    def process(self) -> set[str]:
        """
        Execute the end-to-end processing of the document.

        Returns the ids of the jobs whose aggregates need a refresh.
        """
        log.info("Processing document", doc_id=self.document_id)
        start_time = dt.datetime.now()
        try:
            document = self.repository.get_document_with_media(self.document_id)
            if document is None:
                log.warning("Claimed document disappeared", doc_id=self.document_id)
                return set()
            if document.status != DocumentStatus.PROCESSING:
                # Cancelled (or re-queued) between the claim and now
                log.info(
                    "Document no longer claimed; leaving it",
                    doc_id=self.document_id,
                    status=document.status,
                )
                return set()
            affected = self._run(document)
        except Exception as e:
            log.exception("OCR processing failed", doc_id=self.document_id)
            document = self.repository.get_document_with_media(self.document_id)
            if document is None:
                return set()
            affected = self._handle_failure(document, str(e) or type(e).__name__)

        elapsed_time = (dt.datetime.now() - start_time).total_seconds()
        log.info(
            "Finished processing document",
            doc_id=self.document_id,
            elapsed_time=f"{elapsed_time:.2f}s",
        )
        return affected

    def _run(self, document: DocumentWithMedia) -> set[str]:
        if document.job_id:
            self.repository.mark_job_started(document.job_id, now=self.clock())

        if document.message_id:
            sibling = self.repository.find_succeeded_document_by_message_id(
                document.message_id, exclude_document_id=document.id
            )
            if sibling is not None:
                return self._skip(document, SKIP_BUNDLED)

        if not document.is_monitored:
            return self._skip(document, SKIP_UNMONITORED)

        if not document.file_path:
            return self._handle_failure(document, ERROR_MISSING_PATH)

        bundle = self.bundle_builder.build(document)
        if bundle is None:
            return self._handle_failure(document, ERROR_FILE_NOT_FOUND)

        if len(bundle.content) > self.settings.max_file_size_bytes:
            log.warning(
                "File exceeds OCR size limit",
                doc_id=document.id,
                size=len(bundle.content),
                limit=self.settings.max_file_size_bytes,
            )
            return self._skip(document, SKIP_OVERSIZED)

        result = self.ocr_service.extract(
            bundle.content,
            bundle.mime_type or document.mime_type,
            bundle.file_name or document.file_name,
            self.settings.OCR_LANGUAGE,
        )
        return self._record_success(document, bundle, result)

    def _record_success(self, document: DocumentWithMedia, bundle: Bundle, result) -> set[str]:
        now = self.clock()
        result_json = {**(result.raw_result or {}), "bundled_media_ids": list(bundle.media_ids)}
        affected = {document.job_id} if document.job_id else set()

        if bundle.is_composite:
            affected |= self.repository.mark_documents_succeeded_by_media_ids(
                bundle.media_ids,
                document.job_id,
                provider=result.provider,
                language=result.language,
                text=result.text,
                result_json=result_json,
                now=now,
            )
        elif not self.repository.mark_document_succeeded(
            document.id,
            provider=result.provider,
            language=result.language,
            text=result.text,
            result_json=result_json,
            now=now,
        ):
            return self._released(document)

        log.info(
            "OCR succeeded",
            doc_id=document.id,
            provider=result.provider,
            bundled=len(bundle.media_ids),
            chars=len(result.text or ""),
        )
        return affected

    def _skip(self, document: DocumentWithMedia, reason: str) -> set[str]:
        if not self.repository.mark_document_skipped(document.id, reason, now=self.clock()):
            return self._released(document)
        log.info("Skipped document", doc_id=document.id, reason=reason)
        return {document.job_id} if document.job_id else set()

    def _handle_failure(self, document: DocumentWithMedia, error_message: str) -> set[str]:
        """
        Apply the retry policy: linear backoff until ``OCR_MAX_ATTEMPTS``.
        """
        now = self.clock()
        attempts = document.attempts + 1
        final = attempts >= self.settings.OCR_MAX_ATTEMPTS
        retry_at = None
        if not final:
            retry_at = now + dt.timedelta(
                seconds=attempts * self.settings.OCR_RETRY_BACKOFF_SECONDS
            )

        if not self.repository.mark_document_failed(
            document.id,
            attempts=attempts,
            error_message=error_message,
            retry_at=retry_at,
            final=final,
            now=now,
        ):
            return self._released(document)
        if final and document.job_id:
            self.repository.record_job_error(document.job_id, error_message)

        log.warning(
            "OCR attempt failed",
            doc_id=document.id,
            attempts=attempts,
            max_attempts=self.settings.OCR_MAX_ATTEMPTS,
            final=final,
            retry_at=retry_at.isoformat() if retry_at else None,
            error=error_message,
        )
        return {document.job_id} if document.job_id else set()

    def _released(self, document: DocumentWithMedia) -> set[str]:
        # Cancelled or settled by someone else while we worked on it
        log.info("Document no longer claimed; dropping outcome", doc_id=document.id)
        return set()
