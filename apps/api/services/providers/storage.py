"""Object storage for generated assets."""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from services.providers.types import StoredObject

EXTENSION_BY_CONTENT_TYPE = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}


class BaseObjectStorage(ABC):
    @abstractmethod
    async def store(self, data: bytes, content_type: str) -> StoredObject:
        raise NotImplementedError


class LocalObjectStorage(BaseObjectStorage):
    """Filesystem-backed storage served under a public base URL."""

    def __init__(self, *, root_dir: str, public_base_url: str) -> None:
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def store(self, data: bytes, content_type: str) -> StoredObject:
        extension = EXTENSION_BY_CONTENT_TYPE.get(content_type.lower(), ".bin")
        prefix = datetime.now(timezone.utc).strftime("%Y/%m")
        key = f"{prefix}/{uuid.uuid4()}{extension}"
        await asyncio.to_thread(self._write, self.root_dir / key, data)
        return StoredObject(key=key, url=f"{self.public_base_url}/{key}")
