"""
Job API
=======

A thin, transport-agnostic facade over the queue for operators: create and
inspect jobs, page through their documents, cancel, retry, and look up the
OCR result of a single media item. Every method returns plain dicts ready to
be serialised to JSON.
"""

from __future__ import annotations

import math

from .models import JobMode
from .queue import JobNotFoundError, OcrQueue
from .repository import OcrRepository

MAX_JOBS_PAGE_SIZE = 100
MAX_DOCUMENTS_PAGE_SIZE = 200


class OcrResultNotFoundError(LookupError):
    """Raised when a media item has no visible OCR result."""


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(int(value), upper))


def _pagination(page: int, limit: int, total: int) -> dict:
    pages = math.ceil(total / limit) if total else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "has_next": page < pages,
        "has_prev": page > 1,
    }


class JobApi:
    def __init__(self, queue: OcrQueue, repository: OcrRepository | None = None):
        self.queue = queue
        self.repository = repository or queue.repository

    def create_job(
        self, mode: str | None, group_id: str | None = None, requested_by: str | None = None
    ) -> dict:
        if mode not in JobMode.ALL_MODES:
            mode = JobMode.MISSING
        job_id, queued = self.queue.create_job(requested_by, mode, group_id)
        return {"id": job_id, "queued": queued}

    def list_jobs(self, page: int = 1, limit: int = 20) -> dict:
        page = max(1, int(page))
        limit = _clamp(limit, 1, MAX_JOBS_PAGE_SIZE)
        jobs = self.repository.list_jobs(limit, (page - 1) * limit)
        total = self.repository.count_jobs()
        return {
            "data": [job.to_dict() for job in jobs],
            "pagination": _pagination(page, limit, total),
        }

    def get_job(self, job_id: str) -> dict:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.to_dict()

    def list_job_documents(
        self, job_id: str, status: str | None = None, page: int = 1, limit: int = 50
    ) -> dict:
        if self.repository.get_job_row(job_id) is None:
            raise JobNotFoundError(job_id)
        page = max(1, int(page))
        limit = _clamp(limit, 1, MAX_DOCUMENTS_PAGE_SIZE)
        documents, total = self.repository.list_job_documents(
            job_id, status or None, limit, (page - 1) * limit
        )
        return {
            "data": [document.to_dict() for document in documents],
            "pagination": _pagination(page, limit, total),
        }

    def cancel_job(self, job_id: str) -> dict:
        self.queue.cancel_job(job_id)
        return self.get_job(job_id)

    def retry_failed(self, job_id: str) -> dict:
        return {"retried": self.queue.retry_failed(job_id)}

    def get_result_by_media(self, media_id: str) -> dict:
        """The OCR record of one media item, hidden once its group stops being monitored."""
        document = self.repository.get_document_by_media_id(media_id)
        if document is None or not document.is_monitored:
            raise OcrResultNotFoundError(media_id)
        return document.to_dict()
