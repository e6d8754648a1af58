import logging
from typing import Optional, Tuple

import httpx
from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket

from leadflow.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class MediaStorage:
    """Generated audio lives in GridFS and is served back by the web app under /api/media."""

    def __init__(self, database: AsyncIOMotorDatabase, public_base_url: Optional[str] = None,
                 bucket_name: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.bucket = AsyncIOMotorGridFSBucket(database, bucket_name=bucket_name or settings.MEDIA_BUCKET)
        self.public_base_url = (public_base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        self._client = client

    def public_url(self, filename: str) -> str:
        return f"{self.public_base_url}/api/media/{filename}"

    async def upload(self, filename: str, data: bytes, content_type: str) -> str:
        """Store bytes under `filename` (replacing older revisions) and return the public URL."""
        try:
            async for old in self.bucket.find({"filename": filename}):
                await self.bucket.delete(old._id)
            await self.bucket.upload_from_stream(filename, data, metadata={"contentType": content_type})
        except Exception as e:
            raise StorageError(f"Upload of {filename} failed: {e}") from e
        logger.info(f"[STORAGE] Stored {filename} ({len(data)} bytes)")
        return self.public_url(filename)

    async def open(self, filename: str) -> Optional[Tuple[bytes, str]]:
        """Latest revision of a stored file as (data, content_type), None when missing."""
        try:
            stream = await self.bucket.open_download_stream_by_name(filename)
        except NoFile:
            return None
        data = await stream.read()
        content_type = (stream.metadata or {}).get("contentType", "application/octet-stream")
        return data, content_type

    async def download(self, url: str, timeout: float = 120.0) -> bytes:
        client = self._client or httpx.AsyncClient(follow_redirects=True)
        try:
            response = await client.get(url, timeout=timeout)
            response.raise_for_status()
            return response.content
        except httpx.HTTPError as e:
            raise StorageError(f"Download of {url} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()
