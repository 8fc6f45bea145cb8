"""
Local media file access.

Media files are written by the chat ingestion side; the OCR queue only needs
to check that a file is still there and read it back as bytes. Relative paths
are resolved against ``MEDIA_ROOT``.
"""

from __future__ import annotations

from pathlib import Path


class LocalFileStorage:
    """Read-only access to downloaded media files."""

    def __init__(self, root: str | Path = "."):
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.root / candidate

    def exists(self, path: str | None) -> bool:
        if not path:
            return False
        return self.resolve(path).is_file()

    def read_bytes(self, path: str) -> bytes:
        return self.resolve(path).read_bytes()
