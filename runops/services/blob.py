import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import httpx

from runops.core.config import get_settings

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Raised when the blob collaborator rejects or fails a write."""


@dataclass(slots=True)
class StoredBlob:
    url: str


class BlobStore(Protocol):
    async def put(self, name: str, content: bytes, content_type: str) -> StoredBlob: ...


class HttpBlobStore:
    def __init__(
        self,
        *,
        base_url: str,
        token: str | None,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def put(self, name: str, content: bytes, content_type: str) -> StoredBlob:
        headers = {"Content-Type": content_type}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        url = f"{self.base_url}/{name.lstrip('/')}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.put(url, content=content, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise BlobStoreError(f"blob upload failed for {name}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        stored_url = body.get("url") if isinstance(body, dict) else None
        if not isinstance(stored_url, str) or not stored_url:
            stored_url = url
        logger.info("blob stored name=%s bytes=%s", name, len(content))
        return StoredBlob(url=stored_url)


class InMemoryBlobStore:
    """Keeps blobs in process memory; URLs use the ``memory://`` scheme."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def put(self, name: str, content: bytes, content_type: str) -> StoredBlob:
        self.objects[name] = (bytes(content), content_type)
        return StoredBlob(url=f"memory://{name}")


@lru_cache
def get_blob_store() -> BlobStore:
    settings = get_settings()
    if not settings.blob_base_url:
        return InMemoryBlobStore()
    return HttpBlobStore(
        base_url=settings.blob_base_url,
        token=settings.blob_token,
        timeout_seconds=settings.blob_timeout_seconds,
    )
