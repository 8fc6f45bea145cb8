"""
Pytest configuration.

Why this exists:

The project uses a ``src/`` layout (package code lives in ``src/ocr_queue``
and ``src/common``). Normally, developers run tests after installing the
package (e.g. ``pip install -e .``).

On some macOS/Python 3.13 setups, editable installs in dot-prefixed virtualenv
folders (like ``.venv``) can result in the generated ``.pth`` file being marked
as hidden, and Python's ``site`` module will skip hidden ``.pth`` files. When
that happens, ``import ocr_queue`` fails even though the source tree is
present.

This file makes tests robust in that scenario by adding ``src/`` to ``sys.path``
only when the package cannot be imported normally.

It also provides the shared database fixtures: every test gets a fresh
in-memory SQLite database with the full schema.
"""

from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    try:
        import ocr_queue  # noqa: F401
        return
    except ModuleNotFoundError:
        pass

    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    sys.path.insert(0, str(src_dir))


_ensure_src_on_path()

import datetime as dt
import os
from io import BytesIO
from itertools import count

import pytest
from PIL import Image

from common.config import Settings
from ocr_queue.db import create_db_engine, init_schema, make_session_factory
from ocr_queue.models import Group, Media

BASE_TIME = dt.datetime(2024, 5, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def settings(mocker, tmp_path):
    """Settings for an in-memory database and a temporary media root."""
    mocker.patch.dict(
        os.environ,
        {
            "DATABASE_URL": "sqlite://",
            "MEDIA_ROOT": str(tmp_path),
            "OCR_PROVIDER": "tesseract",
        },
        clear=True,
    )
    return Settings()


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


def png_bytes(width: int = 20, height: int = 10, color: str = "black") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class MediaSeeder:
    """Inserts groups, media rows and (optionally) their files on disk."""

    def __init__(self, session_factory, media_root: Path):
        self.session_factory = session_factory
        self.media_root = media_root
        self._ids = count(1)

    def group(self, group_id: str = "group-1", monitored: bool = True) -> str:
        with self.session_factory.begin() as session:
            session.add(Group(id=group_id, name=group_id, is_monitored=monitored))
        return group_id

    def set_monitored(self, group_id: str, monitored: bool) -> None:
        with self.session_factory.begin() as session:
            session.get(Group, group_id).is_monitored = monitored

    def media(
        self,
        group_id: str = "group-1",
        *,
        media_type: str = "image",
        message_id: str | None = None,
        content: bytes | None = None,
        file_name: str | None = None,
        mime_type: str | None = "image/png",
        with_path: bool = True,
    ) -> str:
        n = next(self._ids)
        media_id = f"media-{n}"
        file_name = file_name or f"{media_id}.png"
        file_path = None
        if with_path:
            file_path = file_name
            if content is not None:
                (self.media_root / file_name).write_bytes(content)
        with self.session_factory.begin() as session:
            session.add(
                Media(
                    id=media_id,
                    group_id=group_id,
                    message_id=message_id,
                    file_name=file_name,
                    file_path=file_path,
                    mime_type=mime_type,
                    media_type=media_type,
                    created_at=BASE_TIME + dt.timedelta(seconds=n),
                )
            )
        return media_id


@pytest.fixture
def seeder(session_factory, tmp_path):
    return MediaSeeder(session_factory, tmp_path)
