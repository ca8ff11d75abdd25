from __future__ import annotations

from pathlib import Path

import aiofiles
import aiofiles.os
import structlog


logger = structlog.get_logger(__name__)


class LocalBlobStore:
    """Filesystem blob store; keys are relative paths under ``root``."""

    def __init__(self, root: str | Path, base_url: str = "/storage"):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if self.root not in path.parents:
            raise ValueError(f"invalid storage key: {key!r}")
        return path

    async def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        logger.info("blob_stored", key=key, size=len(data))
        return self.url_for(key)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if await aiofiles.os.path.isfile(path):
            await aiofiles.os.remove(path)
            logger.info("blob_deleted", key=key)

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.isfile(self._path(key))

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key.lstrip('/')}"
