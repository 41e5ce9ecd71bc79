"""Durable gallery store: dedup by origin key, serialized index mutations.

`save` and `delete` run one at a time under a process-wide write lock shared
by every store pointed at the same index file. Waiters are served in arrival
order. `list` reads the committed document without taking the lock.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote

from dal.gallery_index_dal import GalleryIndexDAL
from models.gallery_entry import GalleryEntry
from utils.errors import ValidationError
from utils.media_validation import sanitize_ext

LOGGER = logging.getLogger(__name__)


class WriteLock:
    """FIFO mutex for index mutations that also reports its queue depth."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.depth = 0

    async def __aenter__(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            # asyncio primitives are bound to one loop; a new loop means the old one is gone.
            self._lock = asyncio.Lock()
            self._loop = loop
            self.depth = 0
        self.depth += 1
        try:
            await self._lock.acquire()
        except BaseException:
            self.depth -= 1
            raise

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._lock.release()
        self.depth = max(self.depth - 1, 0)


_WRITE_LOCKS: Dict[Path, WriteLock] = {}


def write_lock_for(index_file: Path) -> WriteLock:
    """Return the process-wide lock for an index path."""
    key = Path(index_file).resolve()
    lock = _WRITE_LOCKS.get(key)
    if lock is None:
        lock = WriteLock()
        _WRITE_LOCKS[key] = lock
    return lock


def build_filename(ext: str, now: Optional[datetime] = None) -> str:
    """Return `YYYYMMDD-HHMMSS-<hex>.<ext>` for a new gallery file."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{secrets.token_hex(3)}.{sanitize_ext(ext)}"


def create_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def build_public_path(filename: str) -> str:
    return f"/gallery/{quote(filename)}"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class SaveResult:
    entry: GalleryEntry
    duplicated: bool


class GalleryStore:
    """Gallery persistence with content-based dedup.

    Args:
        gallery_dir: Directory for image files.
        index_file: JSON index document path.
    """

    def __init__(self, gallery_dir: Path | str, index_file: Path | str) -> None:
        self.dal = GalleryIndexDAL(gallery_dir, index_file)
        self.write_lock = write_lock_for(self.dal.index_file)

    @property
    def queue_depth(self) -> int:
        """Number of mutations currently running or waiting for the lock."""
        return self.write_lock.depth

    async def ensure_store(self) -> None:
        await self.dal.ensure_store()

    async def list(self) -> List[GalleryEntry]:
        return await self.dal.read_index()

    async def save(
        self,
        data: bytes,
        ext: str,
        *,
        prompt: str = "",
        model: str = "",
        source: str = "",
        origin_key: str = "",
    ) -> SaveResult:
        """Persist image bytes and prepend a new entry to the index.

        If an entry with the same `origin_key` exists it is returned with
        `duplicated=True` and nothing is written.

        Raises:
            ValidationError: If `data` is empty.
            StoreCorruptionError: If the index cannot be read.
        """
        if not data:
            raise ValidationError("Image content is empty or invalid.", status=422, code="EMPTY_IMAGE")

        async with self.write_lock:
            entries = await self.dal.read_index()
            if origin_key:
                for existing in entries:
                    if existing.origin_key == origin_key:
                        return SaveResult(entry=existing, duplicated=True)

            filename = build_filename(ext)
            await self.dal.write_image_file(filename, data)
            entry = GalleryEntry(
                id=create_id(),
                filename=filename,
                path=build_public_path(filename),
                prompt=prompt or "",
                model=model or "",
                source=source or "",
                origin_key=origin_key or "",
                size=len(data),
                created_at=_utc_timestamp(),
            )
            try:
                await self.dal.write_index([entry, *entries])
            except Exception:
                await self._discard_orphan(filename)
                raise
            LOGGER.info("Saved gallery entry %s (%d bytes)", entry.id, entry.size)
            return SaveResult(entry=entry, duplicated=False)

    async def _discard_orphan(self, filename: str) -> None:
        try:
            await self.dal.remove_image_file(filename)
        except OSError as exc:
            LOGGER.warning("Could not remove unindexed gallery file %s: %s", filename, exc)

    async def delete(self, entry_id: str) -> bool:
        """Remove an entry and its file. Returns False when the id is unknown."""
        async with self.write_lock:
            entries = await self.dal.read_index()
            removed = next((entry for entry in entries if entry.id == entry_id), None)
            if removed is None:
                return False
            await self.dal.write_index([entry for entry in entries if entry is not removed])
            await self.dal.remove_image_file(removed.filename)
            LOGGER.info("Deleted gallery entry %s", entry_id)
            return True
