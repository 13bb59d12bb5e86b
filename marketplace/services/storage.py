"""Evidence file storage.

The dispute engine never handles bytes after upload; it stores the metadata
returned here (name, URL, type, size).
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from marketplace.config import settings
from marketplace.errors import ValidationError
from marketplace.models.dispute import AttachmentType

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = 25 * 1024 * 1024

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class FileStorage(Protocol):
    async def store(self, file_name: str, content: bytes, content_type: str) -> str:
        """Persist ``content`` and return a URL for it."""
        ...


class LocalFileStorage:
    """Writes uploads under a local directory served at ``base_url``."""

    def __init__(
        self,
        root: str | Path = settings.evidence_storage_dir,
        base_url: str = settings.evidence_base_url,
    ) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def store(self, file_name: str, content: bytes, content_type: str) -> str:
        key = f"{uuid.uuid4().hex}_{safe_file_name(file_name)}"
        path = self.root / key
        await asyncio.to_thread(_write_file, path, content)
        logger.info("Stored %s (%d bytes, %s) at %s", file_name, len(content), content_type, path)
        return f"{self.base_url}/{key}"


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


def safe_file_name(file_name: str) -> str:
    name = _UNSAFE_CHARS.sub("_", Path(file_name).name).strip("._")
    return name[:200] or "file"


def classify_file_type(content_type: str | None) -> AttachmentType:
    """Bucket a MIME type into the attachment types disputes display."""
    mime = (content_type or "").lower()
    if mime.startswith("image/"):
        return AttachmentType.IMAGE
    if mime.startswith("video/"):
        return AttachmentType.VIDEO
    if mime == "application/pdf":
        return AttachmentType.PDF
    return AttachmentType.OTHER


@dataclass(frozen=True)
class AttachmentMeta:
    file_name: str
    file_url: str
    file_type: AttachmentType
    file_size: int


async def attachment_from_upload(
    storage: FileStorage,
    file_name: str,
    content: bytes,
    content_type: str | None,
) -> AttachmentMeta:
    if not content:
        raise ValidationError(f"Attachment {file_name!r} is empty")
    if len(content) > MAX_ATTACHMENT_BYTES:
        raise ValidationError(
            f"Attachment {file_name!r} exceeds {MAX_ATTACHMENT_BYTES // (1024 * 1024)} MB"
        )
    url = await storage.store(file_name, content, content_type or "application/octet-stream")
    return AttachmentMeta(
        file_name=file_name,
        file_url=url,
        file_type=classify_file_type(content_type),
        file_size=len(content),
    )
