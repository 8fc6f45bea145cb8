"""
Media catalog.

Read-only view of the media and group tables written by the chat ingestion
side: which media exist, which of them belong to one message, and whether a
group is still monitored.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .models import Group, Media


@dataclass(frozen=True)
class MediaRecord:
    id: str
    group_id: str
    message_id: str | None
    file_name: str | None
    file_path: str | None
    mime_type: str | None
    media_type: str


def _to_record(media: Media) -> MediaRecord:
    return MediaRecord(
        id=media.id,
        group_id=media.group_id,
        message_id=media.message_id,
        file_name=media.file_name,
        file_path=media.file_path,
        mime_type=media.mime_type,
        media_type=media.media_type,
    )


class SqlMediaCatalog:
    """Media lookups and the monitored-group predicate, backed by SQL."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def find_all_media(self, group_id: str | None = None) -> list[MediaRecord]:
        stmt = select(Media).order_by(Media.created_at.asc(), Media.id.asc())
        if group_id is not None:
            stmt = stmt.where(Media.group_id == group_id)
        with self._session_factory() as session:
            return [_to_record(media) for media in session.scalars(stmt)]

    def find_media_bundle_by_message(self, message_id: str) -> list[MediaRecord]:
        """All media of one message, oldest first."""
        stmt = (
            select(Media)
            .where(Media.message_id == message_id)
            .order_by(Media.created_at.asc(), Media.id.asc())
        )
        with self._session_factory() as session:
            return [_to_record(media) for media in session.scalars(stmt)]

    def monitored_group_ids(self) -> set[str]:
        with self._session_factory() as session:
            return set(session.scalars(select(Group.id).where(Group.is_monitored.is_(True))))

    def is_monitored(self, group_id: str) -> bool:
        with self._session_factory() as session:
            return bool(
                session.scalar(select(Group.is_monitored).where(Group.id == group_id))
            )
