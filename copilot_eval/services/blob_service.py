"""
Blob Storage Service
Container/key object stores used for job inputs and materialized results
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import unquote, urlparse
import logging
import aiofiles
import aiofiles.os
from copilot_eval.models.job import BlobReference
from copilot_eval.utils.errors import BlobStoreUnavailableError
from copilot_eval.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def resolve_locator(locator: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Split a data-source locator into (container, key)

    Accepts scheme://host/container/key URLs and bare container/key paths.

    Returns:
        (container, key), or None when the locator does not name both
    """
    if not locator or not locator.strip():
        return None
    locator = locator.strip()
    if "://" in locator:
        path = unquote(urlparse(locator).path)
    else:
        path = locator
    parts = [p for p in path.strip("/").split("/") if p]
    if len(parts) < 2:
        return None
    return parts[0], "/".join(parts[1:])


class BlobStore(ABC):
    """Object store addressed by container and key"""

    @property
    @abstractmethod
    def account_name(self) -> str:
        ...

    @abstractmethod
    async def exists(self, container: str, key: str) -> bool:
        ...

    @abstractmethod
    async def read(self, container: str, key: str) -> bytes:
        """Raises FileNotFoundError for a missing blob"""
        ...

    @abstractmethod
    async def write(self, container: str, key: str, data: bytes,
                    content_type: str = "application/json",
                    expires_at: Optional[datetime] = None) -> BlobReference:
        ...

    def _reference(self, container: str, key: str, data: bytes, content_type: str,
                   expires_at: Optional[datetime], access_url: str) -> BlobReference:
        return BlobReference(
            blob_id=str(uuid.uuid4()),
            storage_account=self.account_name,
            container=container,
            blob_name=key,
            content_type=content_type,
            size_bytes=len(data),
            created_at=utcnow(),
            expires_at=expires_at,
            access_url=access_url,
        )


class InMemoryBlobStore(BlobStore):
    """Dict-backed store for tests and the --in-memory worker mode"""

    def __init__(self, account_name: str = "memory"):
        self._account_name = account_name
        self._blobs: Dict[Tuple[str, str], Tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    @property
    def account_name(self) -> str:
        return self._account_name

    async def exists(self, container: str, key: str) -> bool:
        return (container, key) in self._blobs

    async def read(self, container: str, key: str) -> bytes:
        try:
            return self._blobs[(container, key)][0]
        except KeyError:
            raise FileNotFoundError(f"Blob {container}/{key} not found") from None

    async def write(self, container: str, key: str, data: bytes,
                    content_type: str = "application/json",
                    expires_at: Optional[datetime] = None) -> BlobReference:
        async with self._lock:
            self._blobs[(container, key)] = (bytes(data), content_type)
        return self._reference(container, key, data, content_type, expires_at,
                               f"memory://{self._account_name}/{container}/{key}")


class FileSystemBlobStore(BlobStore):
    """
    Store rooted at a local directory
    Containers are sub-directories and keys are relative paths inside them
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    @property
    def account_name(self) -> str:
        return self.root.name or "local"

    def _path(self, container: str, key: str) -> Path:
        path = (self.root / container / key).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Blob path escapes storage root: {container}/{key}")
        return path

    async def exists(self, container: str, key: str) -> bool:
        return await aiofiles.os.path.isfile(self._path(container, key))

    async def read(self, container: str, key: str) -> bytes:
        path = self._path(container, key)
        try:
            async with aiofiles.open(path, mode='rb') as f:
                return await f.read()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise BlobStoreUnavailableError(f"Error reading blob {container}/{key}: {e}") from e

    async def write(self, container: str, key: str, data: bytes,
                    content_type: str = "application/json",
                    expires_at: Optional[datetime] = None) -> BlobReference:
        path = self._path(container, key)
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, mode='wb') as f:
                await f.write(data)
        except OSError as e:
            raise BlobStoreUnavailableError(f"Error writing blob {container}/{key}: {e}") from e
        logger.debug(f"Wrote {len(data)} bytes to {path}")
        return self._reference(container, key, data, content_type, expires_at, path.as_uri())
