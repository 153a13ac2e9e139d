"""Storage adapter interface and implementations."""
from abc import ABC, abstractmethod
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional
from adimages.errors import StorageIOError
from adimages.settings import settings

logger = logging.getLogger(__name__)


class StorageAdapter(ABC):
    """Abstract storage adapter interface (S3-style)."""

    @abstractmethod
    async def save(self, key: str, data: bytes) -> str:
        """
        Save data to storage, overwriting any existing object, and return URL/path.

        Args:
            key: Storage key/path (e.g., "files/45/userAds/123/1.jpeg")
            data: Binary data to save

        Returns:
            URL or path string

        Raises:
            StorageIOError: If the write fails
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """
        Retrieve data from storage.

        Raises:
            FileNotFoundError: If the key does not exist
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete data from storage.

        Returns:
            True if deleted, False if not found

        Raises:
            StorageIOError: If the object exists but cannot be removed
        """
        pass

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """
        Delete every object whose key starts with prefix (a folder).

        Returns:
            Number of objects removed; 0 if nothing was there
        """
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists in storage."""
        pass


class LocalStorageAdapter(StorageAdapter):
    """Local filesystem storage adapter."""

    def __init__(self, base_path: Optional[str] = None):
        self.base_path = Path(base_path or settings.STORAGE_BASE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        """Get full filesystem path for a key."""
        key = key.lstrip("/")
        full_path = (self.base_path / key).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise StorageIOError(f"Key escapes storage root: {key}", {"key": key})
        return full_path

    async def save(self, key: str, data: bytes) -> str:
        """Save data to local filesystem."""
        full_path = self._get_full_path(key)
        try:
            # Concurrent first uploads for the same ad may both create the folder
            full_path.parent.mkdir(parents=True, exist_ok=True)
            with open(full_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageIOError(f"Failed to write {key}: {e}", {"key": key}) from e

        return str(full_path.relative_to(self.base_path.resolve()))

    async def get(self, key: str) -> bytes:
        """Retrieve data from local filesystem."""
        full_path = self._get_full_path(key)
        if not full_path.exists():
            raise FileNotFoundError(f"Key not found: {key}")

        with open(full_path, "rb") as f:
            return f.read()

    async def delete(self, key: str) -> bool:
        """Delete data from local filesystem."""
        full_path = self._get_full_path(key)
        try:
            full_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOError(f"Failed to delete {key}: {e}", {"key": key}) from e
        return True

    async def delete_prefix(self, prefix: str) -> int:
        """Remove the folder at prefix with everything in it."""
        folder = self._get_full_path(prefix)
        if not folder.is_dir():
            return 0
        count = sum(1 for p in folder.rglob("*") if p.is_file())
        try:
            shutil.rmtree(folder)
        except OSError as e:
            raise StorageIOError(f"Failed to delete {prefix}: {e}", {"prefix": prefix}) from e
        return count

    async def exists(self, key: str) -> bool:
        """Check if key exists in local filesystem."""
        return self._get_full_path(key).is_file()


class VercelBlobStorageAdapter(StorageAdapter):
    """Vercel Blob Storage adapter.

    Uses the Vercel Blob REST API directly: PUT /{pathname} to upload,
    GET /?prefix= to list and POST /delete with blob urls to remove.
    Stored blobs live on the store's public host, so reads, existence
    checks and deletes resolve a key through a prefix listing first.
    BLOB_READ_WRITE_TOKEN is automatically available in Vercel environment.
    """

    API_VERSION = "7"
    LIST_LIMIT = 1000

    def __init__(self, token: Optional[str] = None, base_url: str = "https://blob.vercel-storage.com"):
        self.token = token or os.getenv("BLOB_READ_WRITE_TOKEN")
        if not self.token:
            raise ValueError(
                "BLOB_READ_WRITE_TOKEN not found. "
                "This is automatically set in Vercel environment."
            )
        self.base_url = base_url.rstrip("/")

    def _url(self, key: str) -> str:
        return key if key.startswith("http") else f"{self.base_url}/{key.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "x-api-version": self.API_VERSION}

    async def save(self, key: str, data: bytes) -> str:
        """Save data to Vercel Blob Storage and return URL."""
        import aiohttp

        headers = {
            **self._headers(),
            "x-content-type": "image/jpeg",
            # Fixed avatar/ad paths are overwritten in place
            "x-add-random-suffix": "0",
            "x-allow-overwrite": "1",
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.put(self._url(key), data=data, headers=headers) as response:
                    if response.status == 200:
                        result = await response.json()
                        return result.get("url", self._url(key))
                    error_text = await response.text()
        except aiohttp.ClientError as e:
            raise StorageIOError(f"Failed to upload {key}: {e}", {"key": key}) from e
        raise StorageIOError(f"Failed to upload to Vercel Blob: {error_text}", {"key": key})

    async def _list(self, prefix: str) -> List[Dict[str, Any]]:
        """All blobs whose pathname starts with prefix, following pagination cursors."""
        import aiohttp

        blobs: List[Dict[str, Any]] = []
        params = {"prefix": prefix.lstrip("/"), "limit": str(self.LIST_LIMIT)}
        try:
            async with aiohttp.ClientSession() as session:
                while True:
                    async with session.get(self.base_url, params=params, headers=self._headers()) as response:
                        if response.status != 200:
                            error_text = await response.text()
                            raise StorageIOError(
                                f"Failed to list Vercel Blob prefix {prefix}: {error_text}", {"prefix": prefix}
                            )
                        result = await response.json()
                    blobs.extend(result.get("blobs", []))
                    if not result.get("hasMore") or not result.get("cursor"):
                        return blobs
                    params["cursor"] = result["cursor"]
        except aiohttp.ClientError as e:
            raise StorageIOError(f"Failed to list {prefix}: {e}", {"prefix": prefix}) from e

    async def _find(self, key: str) -> Optional[Dict[str, Any]]:
        pathname = key.lstrip("/")
        for blob in await self._list(pathname):
            if blob.get("pathname") == pathname:
                return blob
        return None

    async def _delete_urls(self, urls: List[str]) -> None:
        import aiohttp

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.base_url}/delete", json={"urls": urls}, headers=self._headers()
                ) as response:
                    if response.status == 200:
                        return
                    error_text = await response.text()
        except aiohttp.ClientError as e:
            raise StorageIOError(f"Failed to delete blobs: {e}", {"urls": urls}) from e
        raise StorageIOError(f"Failed to delete from Vercel Blob: {error_text}", {"urls": urls})

    async def get(self, key: str) -> bytes:
        """Retrieve data from Vercel Blob Storage."""
        import aiohttp

        blob = await self._find(key)
        if blob is None:
            raise FileNotFoundError(f"Blob not found: {key}")

        async with aiohttp.ClientSession() as session:
            async with session.get(blob["url"]) as response:
                if response.status == 200:
                    return await response.read()
                raise FileNotFoundError(f"Blob not found: {key}")

    async def delete(self, key: str) -> bool:
        """Delete data from Vercel Blob Storage."""
        blob = await self._find(key)
        if blob is None:
            return False
        await self._delete_urls([blob["url"]])
        return True

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every blob under prefix."""
        urls = [blob["url"] for blob in await self._list(prefix)]
        for start in range(0, len(urls), self.LIST_LIMIT):
            await self._delete_urls(urls[start:start + self.LIST_LIMIT])
        return len(urls)

    async def exists(self, key: str) -> bool:
        """Check if key exists in Vercel Blob Storage."""
        return await self._find(key) is not None


def get_storage_adapter() -> StorageAdapter:
    """Factory function to get storage adapter based on settings."""
    if settings.STORAGE_TYPE == "local":
        return LocalStorageAdapter()
    elif settings.STORAGE_TYPE == "vercel_blob":
        return VercelBlobStorageAdapter()
    else:
        raise ValueError(f"Unknown storage type: {settings.STORAGE_TYPE}")
