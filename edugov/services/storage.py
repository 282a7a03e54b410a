from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import re
from typing import Protocol
from uuid import uuid4

from edugov.core.config import get_settings
from edugov.core.errors import StorageError


logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStore(Protocol):
    async def put(self, data: bytes, *, tenant_id: int, filename: str, content_type: str) -> str:
        """Persist bytes and return a new, never-reused handle."""
        ...


def _safe_filename(filename: str) -> str:
    cleaned = _SAFE_NAME.sub("_", Path(filename or "upload").name).strip("._")
    return cleaned[:120] or "upload"


class LocalBlobStore:
    """Write-once blobs on local disk; handles are paths relative to the root."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or get_settings().blob_storage_root)

    def _write(self, relative: Path, data: bytes) -> None:
        target = self.root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        # "xb" refuses to overwrite an existing blob.
        with open(target, "xb") as handle:
            handle.write(data)

    async def put(self, data: bytes, *, tenant_id: int, filename: str, content_type: str) -> str:
        relative = Path(str(tenant_id)) / f"{uuid4().hex}_{_safe_filename(filename)}"
        try:
            await asyncio.to_thread(self._write, relative, data)
        except OSError as exc:
            logger.error("blob_write_failed tenant_id=%s filename=%s", tenant_id, filename, exc_info=exc)
            raise StorageError("Blob storage unavailable") from exc
        return relative.as_posix()

    def path_for(self, handle: str) -> Path:
        return self.root / handle


_blob_store: BlobStore | None = None


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = LocalBlobStore()
    return _blob_store


def set_blob_store(store: BlobStore | None) -> None:
    # Swap the storage collaborator (tests, alternative backends).
    global _blob_store
    _blob_store = store
