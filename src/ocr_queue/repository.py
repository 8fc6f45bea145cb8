"""
OCR Repository
==============

All SQL the queue needs, one short transaction per call. The two operations
that carry the queue's correctness are:

- ``claim_next_documents``: select eligible rows with ``FOR UPDATE SKIP
  LOCKED`` and flip them to ``processing`` in the same transaction, so two
  pollers never claim the same document and never wait on each other.
- ``refresh_job_counts``: recompute a job's counters from its documents while
  holding the job row lock. Counters are never incremented in place.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, fields
from typing import Iterable

import structlog
from sqlalchemy import Select, case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, aliased, sessionmaker

from common.utils import utcnow
from .models import DocumentStatus, Group, JobMode, JobStatus, Media, OcrDocument, OcrJob

log = structlog.get_logger(__name__)

# Keeps multi-row statements under SQLite's bound-parameter limit
_CHUNK_SIZE = 500

_RESET_FIELDS = {
    "status": DocumentStatus.QUEUED,
    "attempts": 0,
    "next_attempt_at": None,
    "error_message": None,
    "provider": None,
    "language": None,
    "text": None,
    "result_json": None,
    "started_at": None,
    "finished_at": None,
}


def _iso(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _chunks(items: list, size: int = _CHUNK_SIZE) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class JobSummary:
    """A job row with live per-status document counts."""

    id: str
    status: str
    mode: str
    requested_by: str | None
    total_items: int
    processed_items: int
    queued_items: int
    processing_items: int
    succeeded_items: int
    failed_items: int
    skipped_items: int
    last_error: str | None
    created_at: dt.datetime | None
    started_at: dt.datetime | None
    finished_at: dt.datetime | None

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for key in ("created_at", "started_at", "finished_at"):
            data[key] = _iso(data[key])
        return data


@dataclass
class DocumentWithMedia:
    """An OCR document joined with its media item and group flag."""

    id: str
    job_id: str | None
    media_id: str
    status: str
    attempts: int
    next_attempt_at: dt.datetime | None
    provider: str | None
    language: str | None
    text: str | None
    result_json: dict | None
    error_message: str | None
    created_at: dt.datetime | None
    updated_at: dt.datetime | None
    started_at: dt.datetime | None
    finished_at: dt.datetime | None
    file_name: str | None
    file_path: str | None
    mime_type: str | None
    media_type: str
    message_id: str | None
    group_id: str
    is_monitored: bool

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for key in ("next_attempt_at", "created_at", "updated_at", "started_at", "finished_at"):
            data[key] = _iso(data[key])
        return data


def build_claim_query(limit: int, now: dt.datetime) -> Select:
    """
    The locking read behind ``claim_next_documents``.

    Only the document rows are locked (``OF ocr_documents``); locking the job
    row too would make pollers skip every document of a job another poller
    happens to be touching.

    A document whose message already has a sibling in ``processing`` is left
    for a later poll: that sibling's bundle covers it.
    """
    sibling_doc = aliased(OcrDocument)
    sibling_media = aliased(Media)
    sibling_in_flight = (
        select(sibling_doc.id)
        .join(sibling_media, sibling_media.id == sibling_doc.media_id)
        .where(
            sibling_media.message_id == Media.message_id,
            sibling_doc.status == DocumentStatus.PROCESSING,
        )
        .exists()
    )
    return (
        select(OcrDocument.id, Media.message_id)
        .join(OcrJob, OcrJob.id == OcrDocument.job_id)
        .join(Media, Media.id == OcrDocument.media_id)
        .where(
            OcrDocument.status == DocumentStatus.QUEUED,
            OcrJob.status.in_(JobStatus.CLAIMABLE),
            or_(OcrDocument.next_attempt_at.is_(None), OcrDocument.next_attempt_at <= now),
            or_(Media.message_id.is_(None), ~sibling_in_flight),
        )
        .order_by(OcrDocument.created_at.asc(), OcrDocument.id.asc())
        .limit(limit)
        .with_for_update(of=OcrDocument, skip_locked=True)
    )


def _status_count(status: str):
    return func.coalesce(func.sum(case((OcrDocument.status == status, 1), else_=0)), 0)


def _counts_subquery():
    return (
        select(
            OcrDocument.job_id.label("job_id"),
            func.count().label("total"),
            _status_count(DocumentStatus.QUEUED).label("queued"),
            _status_count(DocumentStatus.PROCESSING).label("processing"),
            _status_count(DocumentStatus.SUCCEEDED).label("succeeded"),
            _status_count(DocumentStatus.FAILED).label("failed"),
            _status_count(DocumentStatus.SKIPPED).label("skipped"),
        )
        .where(OcrDocument.job_id.is_not(None))
        .group_by(OcrDocument.job_id)
        .subquery()
    )


def _document_with_media_query() -> Select:
    return (
        select(
            OcrDocument,
            Media.file_name,
            Media.file_path,
            Media.mime_type,
            Media.media_type,
            Media.message_id,
            Media.group_id,
            Group.is_monitored,
        )
        .join(Media, Media.id == OcrDocument.media_id)
        .join(Group, Group.id == Media.group_id)
    )


def _to_document_with_media(row) -> DocumentWithMedia:
    doc, file_name, file_path, mime_type, media_type, message_id, group_id, is_monitored = row
    return DocumentWithMedia(
        id=doc.id,
        job_id=doc.job_id,
        media_id=doc.media_id,
        status=doc.status,
        attempts=doc.attempts,
        next_attempt_at=doc.next_attempt_at,
        provider=doc.provider,
        language=doc.language,
        text=doc.text,
        result_json=doc.result_json,
        error_message=doc.error_message,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
        started_at=doc.started_at,
        finished_at=doc.finished_at,
        file_name=file_name,
        file_path=file_path,
        mime_type=mime_type,
        media_type=media_type,
        message_id=message_id,
        group_id=group_id,
        is_monitored=bool(is_monitored),
    )


class OcrRepository:
    """Persistence operations for OCR jobs and documents."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # ----------------------------------------------------------------- jobs

    def create_job(
        self, mode: str, requested_by: str | None, *, now: dt.datetime | None = None
    ) -> OcrJob:
        job = OcrJob(
            id=str(uuid.uuid4()),
            mode=mode,
            requested_by=requested_by,
            status=JobStatus.QUEUED,
            created_at=now or utcnow(),
        )
        with self._session_factory.begin() as session:
            session.add(job)
        return job

    def set_job_total(self, job_id: str, total_items: int) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(OcrJob)
                .where(OcrJob.id == job_id)
                .values(total_items=total_items, queued_items=total_items)
            )

    def mark_job_status(
        self,
        job_id: str,
        status: str,
        *,
        error: str | None = None,
        now: dt.datetime | None = None,
    ) -> None:
        values = {"status": status, "last_error": error}
        if status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
            values["finished_at"] = now or utcnow()
        with self._session_factory.begin() as session:
            session.execute(update(OcrJob).where(OcrJob.id == job_id).values(**values))

    def mark_job_started(self, job_id: str, *, now: dt.datetime | None = None) -> None:
        """Record the first pickup of a job: queued → running, started_at set once."""
        now = now or utcnow()
        with self._session_factory.begin() as session:
            session.execute(
                update(OcrJob)
                .where(OcrJob.id == job_id, OcrJob.status.in_(JobStatus.CLAIMABLE))
                .values(
                    status=JobStatus.RUNNING,
                    started_at=func.coalesce(OcrJob.started_at, now),
                )
            )

    def record_job_error(self, job_id: str, message: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(OcrJob).where(OcrJob.id == job_id).values(last_error=message)
            )

    def get_job_row(self, job_id: str) -> OcrJob | None:
        with self._session_factory() as session:
            return session.get(OcrJob, job_id)

    def get_job(self, job_id: str) -> JobSummary | None:
        counts = _counts_subquery()
        stmt = (
            select(OcrJob, counts)
            .outerjoin(counts, counts.c.job_id == OcrJob.id)
            .where(OcrJob.id == job_id)
        )
        with self._session_factory() as session:
            row = session.execute(stmt).first()
        return self._to_summary(row) if row else None

    def list_jobs(self, limit: int, offset: int) -> list[JobSummary]:
        counts = _counts_subquery()
        stmt = (
            select(OcrJob, counts)
            .outerjoin(counts, counts.c.job_id == OcrJob.id)
            .order_by(OcrJob.created_at.desc(), OcrJob.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self._session_factory() as session:
            rows = session.execute(stmt).all()
        return [self._to_summary(row) for row in rows]

    def count_jobs(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(OcrJob)) or 0

    @staticmethod
    def _to_summary(row) -> JobSummary:
        job = row[0]
        mapping = row._mapping
        succeeded = int(mapping.get("succeeded") or 0)
        failed = int(mapping.get("failed") or 0)
        skipped = int(mapping.get("skipped") or 0)
        return JobSummary(
            id=job.id,
            status=job.status,
            mode=job.mode,
            requested_by=job.requested_by,
            total_items=int(mapping.get("total") or 0),
            processed_items=succeeded + failed + skipped,
            queued_items=int(mapping.get("queued") or 0),
            processing_items=int(mapping.get("processing") or 0),
            succeeded_items=succeeded,
            failed_items=failed,
            skipped_items=skipped,
            last_error=job.last_error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )

    # ------------------------------------------------------------- enqueue

    def enqueue_documents(
        self,
        job_id: str,
        media_ids: list[str],
        mode: str,
        *,
        now: dt.datetime | None = None,
    ) -> int:
        """
        Link the candidate media's documents to ``job_id`` according to ``mode``.

        Returns the number of documents now belonging to the job.
        """
        if not media_ids:
            return 0
        now = now or utcnow()
        with self._session_factory.begin() as session:
            insert = self._dialect_insert(session)
            for chunk in _chunks(list(dict.fromkeys(media_ids))):
                rows = [
                    {
                        "id": str(uuid.uuid4()),
                        "job_id": job_id,
                        "media_id": media_id,
                        "status": DocumentStatus.QUEUED,
                        "attempts": 0,
                        "created_at": now,
                        "updated_at": now,
                    }
                    for media_id in chunk
                ]
                stmt = insert(OcrDocument).values(rows)
                if mode == JobMode.ALL:
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[OcrDocument.media_id],
                        set_={**_RESET_FIELDS, "job_id": job_id, "updated_at": now},
                    )
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=[OcrDocument.media_id])
                session.execute(stmt)

                if mode == JobMode.FAILED:
                    session.execute(
                        update(OcrDocument)
                        .where(
                            OcrDocument.media_id.in_(chunk),
                            OcrDocument.status == DocumentStatus.FAILED,
                        )
                        .values(**_RESET_FIELDS, job_id=job_id, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )

            return (
                session.scalar(
                    select(func.count())
                    .select_from(OcrDocument)
                    .where(OcrDocument.job_id == job_id)
                )
                or 0
            )

    @staticmethod
    def _dialect_insert(session: Session):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise RuntimeError(f"Unsupported database dialect for OCR upserts: {dialect}")

    # --------------------------------------------------------------- claim

    def claim_next_documents(
        self, limit: int, *, now: dt.datetime | None = None
    ) -> list[OcrDocument]:
        """
        Atomically claim up to ``limit`` eligible documents, oldest first.

        At most one document per message is claimed in a batch.
        """
        if limit < 1:
            return []
        now = now or utcnow()
        with self._session_factory.begin() as session:
            ids = []
            messages = set()
            for document_id, message_id in session.execute(build_claim_query(limit, now)):
                if message_id is not None:
                    if message_id in messages:
                        continue
                    messages.add(message_id)
                ids.append(document_id)
            if not ids:
                return []
            session.execute(
                update(OcrDocument)
                .where(
                    OcrDocument.id.in_(ids),
                    OcrDocument.status == DocumentStatus.QUEUED,
                )
                .values(status=DocumentStatus.PROCESSING, started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = list(
                session.scalars(
                    select(OcrDocument)
                    .where(
                        OcrDocument.id.in_(ids),
                        OcrDocument.status == DocumentStatus.PROCESSING,
                    )
                    .order_by(OcrDocument.created_at.asc(), OcrDocument.id.asc())
                    .execution_options(populate_existing=True)
                )
            )
        log.debug("Claimed documents", count=len(claimed))
        return claimed

    # ----------------------------------------------------------- documents

    def get_document_with_media(self, document_id: str) -> DocumentWithMedia | None:
        stmt = _document_with_media_query().where(OcrDocument.id == document_id)
        with self._session_factory() as session:
            row = session.execute(stmt).first()
        return _to_document_with_media(row) if row else None

    def get_document_by_media_id(self, media_id: str) -> DocumentWithMedia | None:
        stmt = _document_with_media_query().where(OcrDocument.media_id == media_id).limit(1)
        with self._session_factory() as session:
            row = session.execute(stmt).first()
        return _to_document_with_media(row) if row else None

    def list_job_documents(
        self, job_id: str, status: str | None, limit: int, offset: int
    ) -> tuple[list[DocumentWithMedia], int]:
        conditions = [OcrDocument.job_id == job_id]
        if status:
            conditions.append(OcrDocument.status == status)
        with self._session_factory() as session:
            total = session.scalar(
                select(func.count()).select_from(OcrDocument).where(*conditions)
            )
            rows = session.execute(
                _document_with_media_query()
                .where(*conditions)
                .order_by(OcrDocument.created_at.desc(), OcrDocument.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
        return [_to_document_with_media(row) for row in rows], int(total or 0)

    def find_succeeded_document_by_message_id(
        self, message_id: str, *, exclude_document_id: str | None = None
    ) -> OcrDocument | None:
        stmt = (
            select(OcrDocument)
            .join(Media, Media.id == OcrDocument.media_id)
            .where(
                Media.message_id == message_id,
                OcrDocument.status == DocumentStatus.SUCCEEDED,
            )
            .order_by(OcrDocument.finished_at.asc())
            .limit(1)
        )
        if exclude_document_id is not None:
            stmt = stmt.where(OcrDocument.id != exclude_document_id)
        with self._session_factory() as session:
            return session.scalars(stmt).first()

    def mark_document_succeeded(
        self,
        document_id: str,
        *,
        provider: str,
        language: str | None,
        text: str,
        result_json: dict,
        now: dt.datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(OcrDocument)
                .where(
                    OcrDocument.id == document_id,
                    OcrDocument.status == DocumentStatus.PROCESSING,
                )
                .values(
                    status=DocumentStatus.SUCCEEDED,
                    provider=provider,
                    language=language,
                    text=text,
                    result_json=result_json,
                    error_message=None,
                    next_attempt_at=None,
                    finished_at=now,
                    updated_at=now,
                )
            )
        return bool(result.rowcount)

    def mark_documents_succeeded_by_media_ids(
        self,
        media_ids: list[str],
        job_id: str | None,
        *,
        provider: str,
        language: str | None,
        text: str,
        result_json: dict,
        now: dt.datetime | None = None,
    ) -> set[str]:
        """
        Apply one bundle result to every bundled media item.

        Bundled media without a document get one, linked to ``job_id``.
        Existing documents keep their job linkage. Returns the ids of all jobs
        whose documents changed.
        """
        now = now or utcnow()
        success_fields = {
            "status": DocumentStatus.SUCCEEDED,
            "provider": provider,
            "language": language,
            "text": text,
            "result_json": result_json,
            "error_message": None,
            "next_attempt_at": None,
            "finished_at": now,
            "updated_at": now,
        }
        with self._session_factory.begin() as session:
            insert = self._dialect_insert(session)
            rows = [
                {
                    "id": str(uuid.uuid4()),
                    "job_id": job_id,
                    "media_id": media_id,
                    "attempts": 0,
                    "created_at": now,
                    "started_at": now,
                    **success_fields,
                }
                for media_id in dict.fromkeys(media_ids)
            ]
            session.execute(
                insert(OcrDocument)
                .values(rows)
                .on_conflict_do_update(
                    index_elements=[OcrDocument.media_id], set_=success_fields
                )
            )
            job_ids = session.scalars(
                select(OcrDocument.job_id)
                .where(OcrDocument.media_id.in_(media_ids), OcrDocument.job_id.is_not(None))
                .distinct()
            ).all()
        return set(job_ids)

    def mark_document_failed(
        self,
        document_id: str,
        *,
        attempts: int,
        error_message: str,
        retry_at: dt.datetime | None,
        final: bool,
        now: dt.datetime | None = None,
    ) -> bool:
        """
        Record a failed attempt on a claimed document.

        Returns False when the document is no longer ``processing`` (its job
        was cancelled, or a bundle sibling already succeeded for it); the row
        is then left as it is.
        """
        now = now or utcnow()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(OcrDocument)
                .where(
                    OcrDocument.id == document_id,
                    OcrDocument.status == DocumentStatus.PROCESSING,
                )
                .values(
                    status=DocumentStatus.FAILED if final else DocumentStatus.QUEUED,
                    attempts=attempts,
                    error_message=error_message,
                    next_attempt_at=None if final else retry_at,
                    finished_at=now if final else None,
                    updated_at=now,
                )
            )
        return bool(result.rowcount)

    def mark_document_skipped(
        self, document_id: str, reason: str, *, now: dt.datetime | None = None
    ) -> bool:
        now = now or utcnow()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(OcrDocument)
                .where(
                    OcrDocument.id == document_id,
                    OcrDocument.status == DocumentStatus.PROCESSING,
                )
                .values(
                    status=DocumentStatus.SKIPPED,
                    error_message=reason,
                    next_attempt_at=None,
                    finished_at=now,
                    updated_at=now,
                )
            )
        return bool(result.rowcount)

    # ---------------------------------------------------- job aggregates

    def refresh_job_counts(
        self, job_id: str, *, now: dt.datetime | None = None
    ) -> OcrJob | None:
        """
        Recompute a job's counters and status from its documents.

        The job row is locked first so concurrent refreshes of the same job
        serialize and the last writer always counts the latest state.
        """
        now = now or utcnow()
        with self._session_factory.begin() as session:
            job = session.scalars(
                select(OcrJob).where(OcrJob.id == job_id).with_for_update()
            ).first()
            if job is None:
                return None

            row = session.execute(
                select(
                    func.count().label("total"),
                    _status_count(DocumentStatus.QUEUED).label("queued"),
                    _status_count(DocumentStatus.PROCESSING).label("processing"),
                    _status_count(DocumentStatus.SUCCEEDED).label("succeeded"),
                    _status_count(DocumentStatus.FAILED).label("failed"),
                    _status_count(DocumentStatus.SKIPPED).label("skipped"),
                ).where(OcrDocument.job_id == job_id)
            ).one()

            total = int(row.total)
            queued = int(row.queued)
            processing = int(row.processing)
            succeeded = int(row.succeeded)
            failed = int(row.failed)
            skipped = int(row.skipped)
            processed = succeeded + failed + skipped

            if total == 0 or (processed >= total and processing == 0 and queued == 0):
                status = JobStatus.COMPLETED
            else:
                status = JobStatus.RUNNING

            job.total_items = total
            job.processed_items = processed
            job.succeeded_items = succeeded
            job.failed_items = failed
            job.skipped_items = skipped
            job.processing_items = processing
            job.queued_items = queued
            if job.status != JobStatus.CANCELLED:
                if status == JobStatus.COMPLETED and job.status != JobStatus.COMPLETED:
                    job.finished_at = now
                job.status = status
        return job

    def cancel_job(self, job_id: str, *, now: dt.datetime | None = None) -> bool:
        now = now or utcnow()
        with self._session_factory.begin() as session:
            job = session.scalars(
                select(OcrJob).where(OcrJob.id == job_id).with_for_update()
            ).first()
            if job is None:
                return False
            job.status = JobStatus.CANCELLED
            job.finished_at = now
            session.execute(
                update(OcrDocument)
                .where(
                    OcrDocument.job_id == job_id,
                    OcrDocument.status.in_(
                        (DocumentStatus.QUEUED, DocumentStatus.PROCESSING)
                    ),
                )
                .values(
                    status=DocumentStatus.SKIPPED,
                    error_message="Job cancelled",
                    next_attempt_at=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
        return True

    def retry_failed(self, job_id: str, *, now: dt.datetime | None = None) -> int:
        now = now or utcnow()
        with self._session_factory.begin() as session:
            result = session.execute(
                update(OcrDocument)
                .where(
                    OcrDocument.job_id == job_id,
                    OcrDocument.status == DocumentStatus.FAILED,
                )
                .values(**_RESET_FIELDS, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
            if count:
                session.execute(
                    update(OcrJob)
                    .where(OcrJob.id == job_id, OcrJob.status == JobStatus.COMPLETED)
                    .values(status=JobStatus.RUNNING, finished_at=None)
                )
        return count
