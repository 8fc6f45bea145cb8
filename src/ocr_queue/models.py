"""
SQLAlchemy ORM Models: OCR jobs, OCR documents and the media they point at

``groups`` and ``media`` are owned by the chat ingestion side; the queue only
reads them. ``ocr_jobs`` and ``ocr_documents`` are owned by the queue.

Document state machine (status column):
    queued    : waiting to be claimed (possibly not before next_attempt_at)
    processing: claimed by a poller, OCR in flight
    succeeded : text extracted (possibly as part of a bundle)
    failed    : max attempts exhausted
    skipped   : permanently not OCR-able (unmonitored, oversized, bundled
                elsewhere, job cancelled)

``media_id`` is unique: one live OCR record per media item. Re-queueing
overwrites the row in place.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from common.utils import utcnow

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class JobMode:
    MISSING = "missing"
    ALL = "all"
    FAILED = "failed"

    ALL_MODES = (MISSING, ALL, FAILED)


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    CLAIMABLE = (QUEUED, RUNNING)


class DocumentStatus:
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    TERMINAL = (SUCCEEDED, FAILED, SKIPPED)


# Media types the queue will OCR at all
OCR_MEDIA_TYPES = ("image", "document", "sticker")
# Media types that can be stacked into one composite image
BUNDLE_MEDIA_TYPES = ("image", "sticker")


class Base(DeclarativeBase):
    pass


class Group(Base):
    """A chat/group; only monitored groups are eligible for OCR."""

    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    is_monitored: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Media(Base):
    """A downloaded attachment of a chat message."""

    __tablename__ = "media"
    __table_args__ = (
        Index("idx_media_group_id", "group_id"),
        Index("idx_media_message_id", "message_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    group_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    message_id: Mapped[Optional[str]] = mapped_column(String(128))
    file_name: Mapped[Optional[str]] = mapped_column(String(512))
    file_path: Mapped[Optional[str]] = mapped_column(String(1024))
    mime_type: Mapped[Optional[str]] = mapped_column(String(255))
    media_type: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class OcrJob(Base):
    """One operator-initiated OCR batch; counters are a recomputed projection."""

    __tablename__ = "ocr_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed', 'cancelled')",
            name="valid_ocr_job_status",
        ),
        CheckConstraint(
            "mode IN ('all', 'missing', 'failed')",
            name="valid_ocr_job_mode",
        ),
        Index("idx_ocr_jobs_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.QUEUED)
    mode: Mapped[str] = mapped_column(String(20), nullable=False, default=JobMode.MISSING)
    requested_by: Mapped[Optional[str]] = mapped_column(String(64))
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    succeeded_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    queued_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class OcrDocument(Base):
    """One OCR work unit, tied 1:1 to a media item."""

    __tablename__ = "ocr_documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'succeeded', 'failed', 'skipped')",
            name="valid_ocr_document_status",
        ),
        Index("ux_ocr_documents_media_id", "media_id", unique=True),
        Index("idx_ocr_documents_status", "status"),
        Index("idx_ocr_documents_job_id", "job_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    job_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("ocr_jobs.id", ondelete="CASCADE")
    )
    media_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("media.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DocumentStatus.QUEUED
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    provider: Mapped[Optional[str]] = mapped_column(String(50))
    language: Mapped[Optional[str]] = mapped_column(String(50))
    text: Mapped[Optional[str]] = mapped_column(Text)
    result_json: Mapped[Optional[dict]] = mapped_column(JsonType)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
