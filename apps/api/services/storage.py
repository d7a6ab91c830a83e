"""Blob storage collaborator for recordings and thumbnails."""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

import httpx

from config import settings

logger = logging.getLogger(__name__)


class BlobStorage(Protocol):
    async def upload(self, data: bytes, path: str) -> str: ...

    async def download(self, url: str) -> bytes: ...

    async def delete(self, url: str) -> None: ...


class LocalBlobStorage:
    """Stores blobs on local disk and serves them under ``BLOB_BASE_URL``."""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.BLOB_STORAGE_DIR).resolve()
        self.base_url = (base_url or settings.BLOB_BASE_URL).rstrip("/")

    def local_path(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if self.root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def path_for(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix):]

    async def upload(self, data: bytes, path: str) -> str:
        target = self.local_path(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        return self.url_for(path)

    async def download(self, url: str) -> bytes:
        path = self.path_for(url)
        if path is not None:
            return await asyncio.to_thread(self.local_path(path).read_bytes)
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content

    async def delete(self, url: str) -> None:
        path = self.path_for(url)
        if path is None:
            logger.warning("Not deleting blob outside local storage: %s", url)
            return
        target = self.local_path(path)
        await asyncio.to_thread(target.unlink, True)
