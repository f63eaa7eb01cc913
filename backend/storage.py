# storage.py - Blob storage for task attachments
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from errors import TransientIOError, ValidationError

logger = logging.getLogger("letterdesk.storage")

ATTACHMENT_STORAGE_ROOT = os.getenv("ATTACHMENT_STORAGE_ROOT", "/data/attachments")
ATTACHMENT_PUBLIC_URL = os.getenv("ATTACHMENT_PUBLIC_URL", "/attachments")
MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(10 * 1024 * 1024)))


class BlobStorage:
    """Upload returns a retrievable URL; delete removes the blob"""

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    async def delete(self, path: str) -> None:
        raise NotImplementedError


class LocalBlobStorage(BlobStorage):
    """Stores blobs under a root directory, served from ``public_base_url``"""

    def __init__(self, root: str = ATTACHMENT_STORAGE_ROOT, public_base_url: str = ATTACHMENT_PUBLIC_URL):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValidationError(f"Invalid storage path: {path}")
        return target

    def url_for(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"

    async def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        target = self._resolve(path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            logger.error(f"Failed to store blob {path}: {exc}")
            raise TransientIOError("Attachment storage unavailable; please retry") from exc
        logger.debug(f"Stored blob {path} ({len(data)} bytes, {content_type or 'unknown type'})")
        return self.url_for(path)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink, True)
        except OSError as exc:
            logger.error(f"Failed to delete blob {path}: {exc}")
            raise TransientIOError("Attachment storage unavailable; please retry") from exc
