"""Object storage for generated artifacts."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    """Key/value blob store with public URLs.

    Keys are never reused: every generation writes a new key.
    """

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        """Store ``data`` under ``key`` and return its public URL."""

    @abstractmethod
    async def read(self, url: str) -> bytes | None:
        """Return the bytes behind a URL this store owns, or None for foreign URLs."""

    @abstractmethod
    def key_for_url(self, url: str) -> str | None:
        """Return the key behind a URL this store owns, or None for foreign URLs."""

    @abstractmethod
    async def delete(self, url: str) -> bool:
        """Delete the object behind ``url``; returns False when nothing was removed."""

    async def exists(self, url: str) -> bool:
        return await self.read(url) is not None


class LocalObjectStorage(ObjectStorage):
    """Stores artifacts on the local filesystem under ``root``."""

    def __init__(self, root: str | Path, public_base_url: str = "/storage"):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def key_for_url(self, url: str) -> str | None:
        prefix = f"{self.public_base_url}/"
        if not url or not url.startswith(prefix):
            return None
        key = url[len(prefix):]
        if ".." in Path(key).parts:
            return None
        return key

    def url_for_key(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def put(self, key: str, data: bytes, content_type: str = "image/png") -> str:
        path = self.root / key
        if path.exists():
            raise FileExistsError(f"Storage key already used: {key}")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)
        return self.url_for_key(key)

    async def read(self, url: str) -> bytes | None:
        key = self.key_for_url(url)
        if key is None:
            return None
        path = self.root / key
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_bytes)

    async def exists(self, url: str) -> bool:
        key = self.key_for_url(url)
        return key is not None and (self.root / key).exists()

    async def delete(self, url: str) -> bool:
        key = self.key_for_url(url)
        if key is None:
            logger.warning("Refusing to delete foreign URL %s", url)
            return False
        path = self.root / key
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        logger.info("Deleted artifact %s", key)
        return True
