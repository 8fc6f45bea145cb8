"""
OCR Queue Engine
================

`OcrQueue` owns the job lifecycle: creating jobs and enqueueing their
documents, cancelling, retrying failed documents, and the poller that claims
queued documents and hands them to `DocumentProcessor` on a bounded thread
pool.

All coordination between pollers goes through the persisted claim in the
repository. Inside one process a non-blocking lock keeps ticks from
overlapping, so a slow batch never stacks up a second one behind it.
"""

from __future__ import annotations

import datetime as dt
import threading
from typing import Callable

import structlog
from sqlalchemy.orm import Session, sessionmaker

from common.config import Settings
from common.daemon_loop import process_batch, run_polling_loop
from common.progress import ProgressSink, create_progress_sink
from common.storage import LocalFileStorage
from common.utils import utcnow
from .bundle import BundleBuilder
from .media import SqlMediaCatalog
from .models import OCR_MEDIA_TYPES, JobMode, JobStatus, OcrDocument, OcrJob
from .provider import OcrService
from .repository import OcrRepository
from .worker import DocumentProcessor

log = structlog.get_logger(__name__)

PROGRESS_AUDIENCE = "admin"
PROGRESS_EVENT = "ocr:job"


class JobNotFoundError(LookupError):
    """Raised when an OCR job id does not exist."""


class OcrQueue:
    """Durable OCR job queue backed by the ``ocr_jobs``/``ocr_documents`` tables."""

    def __init__(
        self,
        settings: Settings,
        repository: OcrRepository,
        media_catalog: SqlMediaCatalog,
        bundle_builder: BundleBuilder,
        ocr_service: OcrService,
        progress_sink: ProgressSink,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.settings = settings
        self.repository = repository
        self.media_catalog = media_catalog
        self.bundle_builder = bundle_builder
        self.ocr_service = ocr_service
        self.progress_sink = progress_sink
        self.clock = clock

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        ocr_service: OcrService | None = None,
        progress_sink: ProgressSink | None = None,
    ) -> "OcrQueue":
        """Wire the default SQL, filesystem and provider collaborators."""
        if ocr_service is None:
            from .providers import build_ocr_service

            ocr_service = build_ocr_service(settings)
        media_catalog = SqlMediaCatalog(session_factory)
        return cls(
            settings,
            OcrRepository(session_factory),
            media_catalog,
            BundleBuilder(media_catalog, LocalFileStorage(settings.MEDIA_ROOT)),
            ocr_service,
            progress_sink or create_progress_sink(settings),
        )

    # ----------------------------------------------------------------- jobs

    def create_job(
        self, requested_by: str | None, mode: str, group_id: str | None = None
    ) -> tuple[str, int]:
        """
        Create a job and enqueue its documents.

        Returns ``(job_id, queued_count)``. A job with nothing to do is
        completed immediately.
        """
        if mode not in JobMode.ALL_MODES:
            mode = JobMode.MISSING
        now = self.clock()
        job = self.repository.create_job(mode, requested_by, now=now)

        media_ids = self._candidate_media_ids(group_id)
        queued = self.repository.enqueue_documents(job.id, media_ids, mode, now=now)
        self.repository.set_job_total(job.id, queued)

        if queued == 0:
            self.repository.mark_job_status(job.id, JobStatus.COMPLETED, now=now)
        else:
            self.refresh_job(job.id)

        log.info(
            "Created OCR job",
            job_id=job.id,
            mode=mode,
            group_id=group_id,
            candidates=len(media_ids),
            queued=queued,
        )
        self.broadcast_job_update(job.id)
        return job.id, queued

    def _candidate_media_ids(self, group_id: str | None) -> list[str]:
        monitored = self.media_catalog.monitored_group_ids()
        if group_id is not None and group_id not in monitored:
            return []
        return [
            media.id
            for media in self.media_catalog.find_all_media(group_id)
            if media.media_type in OCR_MEDIA_TYPES and media.group_id in monitored
        ]

    def cancel_job(self, job_id: str) -> None:
        if not self.repository.cancel_job(job_id, now=self.clock()):
            raise JobNotFoundError(job_id)
        log.info("Cancelled OCR job", job_id=job_id)
        self.refresh_job(job_id)
        self.broadcast_job_update(job_id)

    def retry_failed(self, job_id: str) -> int:
        """Re-queue the job's failed documents; returns how many were reset."""
        if self.repository.get_job_row(job_id) is None:
            raise JobNotFoundError(job_id)
        count = self.repository.retry_failed(job_id, now=self.clock())
        log.info("Retrying failed OCR documents", job_id=job_id, count=count)
        self.refresh_job(job_id)
        self.broadcast_job_update(job_id)
        return count

    def refresh_job(self, job_id: str) -> OcrJob | None:
        return self.repository.refresh_job_counts(job_id, now=self.clock())

    def broadcast_job_update(self, job_id: str) -> None:
        """Publish the job's current summary; failures are logged only."""
        try:
            summary = self.repository.get_job(job_id)
        except Exception:
            log.exception("Failed to load job for progress event", job_id=job_id)
            return
        if summary is None:
            return
        self.progress_sink.publish(PROGRESS_AUDIENCE, PROGRESS_EVENT, summary.to_dict())

    # ------------------------------------------------------------- polling

    def claim_batch(self, limit: int | None = None) -> list[OcrDocument]:
        if limit is None:
            limit = self.settings.OCR_CONCURRENCY
        return self.repository.claim_next_documents(limit, now=self.clock())

    def process_document(self, document_id: str) -> None:
        """Process one claimed document, then refresh and announce its jobs."""
        processor = DocumentProcessor(
            document_id,
            self.repository,
            self.bundle_builder,
            self.ocr_service,
            self.settings,
            clock=self.clock,
        )
        for job_id in sorted(processor.process()):
            self.refresh_job(job_id)
            self.broadcast_job_update(job_id)

    def tick(self) -> int:
        """
        Claim and process one batch. Returns the number of documents claimed.

        Returns 0 straight away if another tick is still running.
        """
        if not self._tick_lock.acquire(blocking=False):
            log.debug("Previous OCR tick still running; skipping")
            return 0
        try:
            documents = self.claim_batch()
            if not documents:
                return 0
            process_batch(
                daemon_name="ocr",
                items=[document.id for document in documents],
                process_item=self.process_document,
                max_workers=self.settings.OCR_CONCURRENCY,
            )
            return len(documents)
        finally:
            self._tick_lock.release()

    def run_forever(self) -> None:
        """Run the polling loop in the calling thread until ``stop()``."""
        run_polling_loop(
            daemon_name="ocr",
            tick=self.tick,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            sleep=self._stop_event.wait,
            should_stop=self._stop_event.is_set,
        )

    def start(self) -> bool:
        """
        Start polling on a background thread.

        Returns False (and does nothing) when OCR is disabled or the poller
        is already running.
        """
        if not self.settings.OCR_ENABLED:
            log.info("OCR disabled; poller not started")
            return False
        if self._thread is not None and self._thread.is_alive():
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="ocr-queue-poller", daemon=True
        )
        self._thread.start()
        log.info(
            "OCR poller started",
            concurrency=self.settings.OCR_CONCURRENCY,
            poll_interval_seconds=self.settings.poll_interval_seconds,
        )
        return True

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)

    def close(self, timeout: float | None = None) -> None:
        """Stop polling and release the progress sink."""
        self.stop(timeout)
        get_stats = getattr(self.ocr_service.primary, "get_stats", None)
        if get_stats is not None:
            stats = get_stats()
            if stats.get("attempts"):
                log.info("OCR model stats", provider=self.ocr_service.primary.name, **stats)
        self.progress_sink.close()
