"""
StoreAudit — Object Storage
Evidence photos live outside the audit document; the document only holds URLs.

Backends:
  FileObjectStorage — local directory under UPLOAD_DIR, served by the API at
                      PUBLIC_UPLOAD_BASE_URL/<key>
  HttpObjectStorage — any bucket-style HTTP endpoint accepting PUT/DELETE on
                      <base>/<key> (selected when OBJECT_STORAGE_URL is set)

Both expose the same async interface: put, url_for, delete, key_from_url.
"""
from pathlib import Path
from urllib.parse import quote, unquote

import httpx

from storeaudit.config import (
    UPLOAD_DIR, PUBLIC_UPLOAD_BASE_URL, OBJECT_STORAGE_URL, OBJECT_STORAGE_TOKEN,
)


class StorageError(Exception):
    pass


# ============================================================
# LOCAL FILESYSTEM
# ============================================================
class FileObjectStorage:
    def __init__(self, root: Path = UPLOAD_DIR, base_url: str = PUBLIC_UPLOAD_BASE_URL):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if path == root or not path.is_relative_to(root):
            raise StorageError(f"Invalid object key: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{quote(key)}"

    def key_from_url(self, url: str):
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):])

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Could not store {key}: {e}") from e
        return self.url_for(key)

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise StorageError(f"Object not found: {key}")
        return path.read_bytes()

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if not path.exists():
            raise StorageError(f"Object not found: {key}")
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(f"Could not delete {key}: {e}") from e


# ============================================================
# REMOTE (HTTP)
# ============================================================
class HttpObjectStorage:
    def __init__(self, base_url: str, token: str = None, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self.headers, transport=self._transport, timeout=60.0)

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{quote(key)}"

    def key_from_url(self, url: str):
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):].split("?", 1)[0])

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        try:
            async with self._client() as client:
                response = await client.put(self.url_for(key), content=data,
                                            headers={"Content-Type": content_type})
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e
        try:
            body = response.json()
        except ValueError:
            body = None
        location = body.get("url") if isinstance(body, dict) else None
        if not isinstance(location, str):
            location = None
        return location or self.url_for(key)

    async def get(self, key: str) -> bytes:
        try:
            async with self._client() as client:
                response = await client.get(self.url_for(key))
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise StorageError(f"Download of {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with self._client() as client:
                response = await client.delete(self.url_for(key))
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"Delete of {key} failed: {e}") from e


def default_storage():
    if OBJECT_STORAGE_URL:
        return HttpObjectStorage(OBJECT_STORAGE_URL, OBJECT_STORAGE_TOKEN)
    return FileObjectStorage()
