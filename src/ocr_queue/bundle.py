"""
Bundle Builder
==============

WhatsApp often splits one logical multi-photo message (for example a scanned
multi-page letter) into several separate image attachments. Sending each one
to OCR separately costs N calls and produces N fragments of what is really
one document, so images that share a message are stacked top to bottom into a
single PNG and OCR'd once.

Anything that is not a stackable image, or any message where fewer than two
images are usable, falls back to the document's own file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO

import structlog
from PIL import Image, UnidentifiedImageError

from common.storage import LocalFileStorage
from .media import MediaRecord, SqlMediaCatalog
from .models import BUNDLE_MEDIA_TYPES
from .repository import DocumentWithMedia

log = structlog.get_logger(__name__)


@dataclass
class Bundle:
    content: bytes
    mime_type: str | None
    file_name: str | None
    media_ids: list[str] = field(default_factory=list)

    @property
    def is_composite(self) -> bool:
        return len(self.media_ids) > 1


class BundleBuilder:
    """Decides which bytes are sent to the OCR provider for a document."""

    def __init__(self, media_catalog: SqlMediaCatalog, storage: LocalFileStorage):
        self.media_catalog = media_catalog
        self.storage = storage

    def build(self, document: DocumentWithMedia) -> Bundle | None:
        """
        Return the OCR input for ``document``, or None if its file is missing.
        """
        if not document.file_path or not self.storage.exists(document.file_path):
            return None

        if not document.message_id or document.media_type not in BUNDLE_MEDIA_TYPES:
            return self._single(document)

        siblings = [
            media
            for media in self.media_catalog.find_media_bundle_by_message(document.message_id)
            if media.media_type in BUNDLE_MEDIA_TYPES
        ]
        if len(siblings) <= 1:
            return self._single(document)

        loaded = self._load_usable_images(siblings)
        try:
            usable_ids = [media.id for media, _ in loaded]
            if len(loaded) <= 1 or document.media_id not in usable_ids:
                return self._single(document)

            content = stack_vertically([image for _, image in loaded])
        finally:
            for _, image in loaded:
                image.close()

        log.info(
            "Bundled message images",
            message_id=document.message_id,
            media_count=len(usable_ids),
        )
        return Bundle(
            content=content,
            mime_type="image/png",
            file_name=f"bundle-{document.message_id}.png",
            media_ids=usable_ids,
        )

    def _single(self, document: DocumentWithMedia) -> Bundle:
        return Bundle(
            content=self.storage.read_bytes(document.file_path),
            mime_type=document.mime_type,
            file_name=document.file_name,
            media_ids=[document.media_id],
        )

    def _load_usable_images(
        self, siblings: list[MediaRecord]
    ) -> list[tuple[MediaRecord, Image.Image]]:
        loaded = []
        for media in siblings:
            if not media.file_path or not self.storage.exists(media.file_path):
                continue
            try:
                image = Image.open(BytesIO(self.storage.read_bytes(media.file_path)))
                image.load()
            except (OSError, UnidentifiedImageError):
                log.warning("Skipping unreadable bundle image", media_id=media.id)
                continue
            if not image.width or not image.height:
                image.close()
                continue
            loaded.append((media, image))
        return loaded


def stack_vertically(images: list[Image.Image]) -> bytes:
    """
    Resize every image to the widest width and stack them on a white canvas.

    Aspect ratios are preserved. The result is PNG-encoded.
    """
    max_width = max(image.width for image in images)
    resized = []
    for image in images:
        rgba = image.convert("RGBA")
        if rgba.width != max_width:
            height = max(1, round(rgba.height * max_width / rgba.width))
            rgba = rgba.resize((max_width, height), Image.Resampling.LANCZOS)
        resized.append(rgba)

    canvas = Image.new("RGB", (max_width, sum(image.height for image in resized)), "white")
    offset = 0
    for image in resized:
        canvas.paste(image, (0, offset), image)
        offset += image.height
        image.close()

    buffer = BytesIO()
    canvas.save(buffer, format="PNG")
    canvas.close()
    return buffer.getvalue()
